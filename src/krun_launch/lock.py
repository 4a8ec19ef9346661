"""Leader election through an advisory lock on ``$XDG_RUNTIME_DIR/krun.lock``.

Holding the exclusive lock means "I am the leader". The file's contents are the
decimal port the leader listens on. The contents are only meaningful while the
lock is held, so readers that lose the race validate what they read.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Literal, Optional, Union

from . import paths
from .errors import ConfigurationError
from .util.file_lock import LockUnavailableError, lock_handle, open_lockfile, release_lockfile

logger = logging.getLogger("krun_launch.lock")

# Ports in the privileged range are never trusted as a published leader port.
MIN_PUBLISHED_PORT = 1025


@dataclass(frozen=True)
class Acquired:
    lock_file: IO[bytes] = field(repr=False)
    lock_path: Path
    port: int
    kind: Literal["acquired"] = "acquired"


@dataclass(frozen=True)
class Busy:
    lock_path: Path
    port: Optional[int] = None
    kind: Literal["busy"] = "busy"


LockOutcome = Union[Acquired, Busy]


@dataclass(frozen=True)
class LeaderStatus:
    leader: bool
    port: Optional[int]
    lock_path: Path

    def to_dict(self) -> dict:
        return {"leader": self.leader, "port": self.port, "lock_path": str(self.lock_path)}


def parse_published_port(data: Union[bytes, str]) -> Optional[int]:
    """Parse lock file contents into a usable port, or None.

    Unparseable text, anything in the privileged range and anything past the
    last TCP port all mean "no usable port".
    """
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else str(data)
    text = text.strip()
    if not (text.isascii() and text.isdigit()):
        if text:
            logger.debug("ignoring malformed published port %r", text)
        return None
    port = int(text)
    if port < MIN_PUBLISHED_PORT:
        logger.debug("ignoring published port %d in the reserved range", port)
        return None
    if port > paths.MAX_PORT:
        logger.debug("ignoring published port %d past the last TCP port", port)
        return None
    return port


def read_published_port(path: Path) -> Optional[int]:
    try:
        return parse_published_port(path.read_bytes())
    except FileNotFoundError:
        return None


def publish_port(lock_file: IO[bytes], port: int) -> None:
    """Replace the lock file contents with ``port``. Caller must hold the lock."""
    lock_file.seek(0)
    lock_file.truncate(0)
    lock_file.write(str(int(port)).encode("ascii"))
    lock_file.flush()
    os.fsync(lock_file.fileno())


def acquire_or_discover(candidate_port: int, *, lock_path: Optional[Path] = None) -> LockOutcome:
    """Try to become the leader; otherwise report the current leader's port.

    On success the returned handle holds the lock and ``candidate_port`` has been
    published. Keep the handle open for as long as the server runs.
    """
    if not MIN_PUBLISHED_PORT <= int(candidate_port) <= paths.MAX_PORT:
        raise ConfigurationError(
            f"server port {candidate_port} cannot be published, expected {MIN_PUBLISHED_PORT}-{paths.MAX_PORT}"
        )
    path = lock_path or paths.lock_path()
    try:
        f = open_lockfile(path)
    except OSError as e:
        raise ConfigurationError(f"failed to open lock file {path}: {e}") from e

    try:
        lock_handle(f, blocking=False)
    except LockUnavailableError:
        try:
            data = f.read()
        except OSError as e:
            raise ConfigurationError(f"failed to read lock file {path}: {e}") from e
        finally:
            f.close()
        port = parse_published_port(data)
        logger.debug("lock %s is held, published port=%s", path, port)
        return Busy(lock_path=path, port=port)
    except OSError as e:
        f.close()
        raise ConfigurationError(f"failed to acquire exclusive lock on {path}: {e}") from e

    try:
        publish_port(f, candidate_port)
    except OSError as e:
        release_lockfile(f)
        raise ConfigurationError(f"failed to publish server port in {path}: {e}") from e

    logger.debug("acquired lock %s, published port=%d", path, candidate_port)
    return Acquired(lock_file=f, lock_path=path, port=int(candidate_port))


def inspect_leader(*, lock_path: Optional[Path] = None) -> LeaderStatus:
    """Check whether a leader is alive without taking over or rewriting the file."""
    path = lock_path or paths.lock_path()
    if not path.exists():
        return LeaderStatus(leader=False, port=None, lock_path=path)
    with path.open("rb") as f:
        try:
            lock_handle(f, blocking=False)
        except LockUnavailableError:
            return LeaderStatus(leader=True, port=parse_published_port(f.read()), lock_path=path)
    # Closing the handle dropped the lock we just took.
    return LeaderStatus(leader=False, port=None, lock_path=path)
