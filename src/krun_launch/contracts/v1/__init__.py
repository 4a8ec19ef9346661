from __future__ import annotations

from .launch import END_OF_MESSAGE, OK_REPLY, LaunchRequest

__all__ = [
    "END_OF_MESSAGE",
    "LaunchRequest",
    "OK_REPLY",
]
