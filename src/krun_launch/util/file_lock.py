from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO


class LockUnavailableError(RuntimeError):
    """Raised when a non-blocking lock cannot be acquired."""


def _lock(fd: int, *, blocking: bool) -> None:
    flags = fcntl.LOCK_EX
    if not blocking:
        flags |= fcntl.LOCK_NB
    fcntl.flock(fd, flags)


def _unlock(fd: int) -> None:
    fcntl.flock(fd, fcntl.LOCK_UN)


def open_lockfile(path: Path) -> IO[bytes]:
    """Open (creating if needed) a lockfile for read+write without truncating it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    # O_CREAT without O_TRUNC: a racing opener must not wipe what the holder wrote.
    fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
    return os.fdopen(fd, "r+b")


def lock_handle(f: IO[bytes], *, blocking: bool = True) -> None:
    """Take an exclusive flock on an already open handle.

    The handle is left open on failure; callers decide whether to read it or close it.
    """
    try:
        _lock(f.fileno(), blocking=blocking)
    except (BlockingIOError, PermissionError) as e:
        if not blocking:
            raise LockUnavailableError(str(e)) from e
        raise


def release_lockfile(f: IO[bytes]) -> None:
    """Unlock and close a handle locked via lock_handle (best-effort)."""
    try:
        _unlock(f.fileno())
    except Exception:
        pass
    try:
        f.close()
    except Exception:
        pass
