"""Error taxonomy for launch coordination.

Protocol failures share one exception type whose ``kind`` is a closed enum, so the
retry policy branches on the kind instead of on exception subclasses or message text.
Everything else that can stop a launch has its own type and is never retried.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class LaunchErrorKind(str, Enum):
    CONNECTION = "connection"
    SERIALIZATION = "serialization"
    SERVER = "server"


class LaunchError(RuntimeError):
    """A single request to the leader failed."""

    def __init__(self, kind: LaunchErrorKind, message: str, *, port: Optional[int] = None) -> None:
        self.kind = kind
        self.message = message
        self.port = port
        super().__init__(self._render())

    @classmethod
    def connection(cls, err: BaseException, *, port: Optional[int] = None) -> "LaunchError":
        return cls(LaunchErrorKind.CONNECTION, str(err), port=port)

    @classmethod
    def serialization(cls, err: BaseException) -> "LaunchError":
        return cls(LaunchErrorKind.SERIALIZATION, str(err))

    @classmethod
    def server(cls, message: str, *, port: Optional[int] = None) -> "LaunchError":
        return cls(LaunchErrorKind.SERVER, message, port=port)

    @property
    def retryable(self) -> bool:
        return self.kind is LaunchErrorKind.CONNECTION

    def _render(self) -> str:
        if self.kind is LaunchErrorKind.CONNECTION:
            where = f" on port {self.port}" if self.port is not None else ""
            return f"could not connect to krun server{where}: {self.message}"
        if self.kind is LaunchErrorKind.SERIALIZATION:
            return f"could not serialize into JSON: {self.message}"
        return f"krun server returned an error: {self.message}"


class ConfigurationError(RuntimeError):
    """A required resource (runtime dir, variable, binary, port) is missing or invalid."""


class LeadershipAmbiguousError(RuntimeError):
    """The lock is held by a leader that published no usable port."""


class ForwardingError(RuntimeError):
    """Forwarding a launch request to the leader failed for good."""

    def __init__(self, cause: BaseException, *, attempts: int = 1) -> None:
        self.cause = cause
        self.attempts = attempts
        super().__init__(f"could not request launch to server: {cause}")
