from __future__ import annotations

import logging
import os
import socket
from typing import Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from .contracts.v1 import OK_REPLY, LaunchRequest
from .errors import LaunchError

logger = logging.getLogger("krun_launch.client")

LOOPBACK = "127.0.0.1"
_MAX_REPLY_BYTES = 1_000_000


def build_request(
    command: Union[str, "os.PathLike[str]"],
    command_args: Sequence[str],
    env: Mapping[str, str],
) -> LaunchRequest:
    try:
        return LaunchRequest(
            command=os.fspath(command),
            command_args=[a for a in command_args],
            env={k: v for k, v in env.items()},
        )
    except (ValidationError, TypeError) as e:
        raise LaunchError.serialization(e) from e


def _recv_line(conn: socket.socket) -> bytes:
    buf = b""
    while b"\n" not in buf:
        chunk = conn.recv(65536)
        if not chunk:
            break
        buf += chunk
        if len(buf) > _MAX_REPLY_BYTES:
            break
    return buf.split(b"\n", 1)[0]


def send_request(
    port: int,
    request: LaunchRequest,
    *,
    host: str = LOOPBACK,
    timeout_s: Optional[float] = None,
) -> None:
    """One round trip: connect, write request + sentinel, read one reply line, close."""
    try:
        payload = request.to_wire()
    except (ValueError, TypeError) as e:
        raise LaunchError.serialization(e) from e

    try:
        with socket.create_connection((host, int(port)), timeout=timeout_s) as s:
            s.sendall(payload)
            line = _recv_line(s)
    except OSError as e:
        logger.debug("launch request to port %s failed: %s", port, e)
        raise LaunchError.connection(e, port=port) from e

    reply = line.decode("utf-8", errors="replace")
    if reply.endswith("\r"):
        reply = reply[:-1]
    if reply == OK_REPLY:
        return
    raise LaunchError.server(reply, port=port)


def request_launch(
    port: int,
    command: Union[str, "os.PathLike[str]"],
    command_args: Sequence[str],
    env: Mapping[str, str],
    *,
    host: str = LOOPBACK,
    timeout_s: Optional[float] = None,
) -> None:
    """Ask the leader listening on ``port`` to run ``command``.

    Raises LaunchError; only the CONNECTION kind is worth retrying.
    """
    request = build_request(command, command_args, env)
    logger.debug("requesting launch of %s on port %s", request.command, port)
    send_request(port, request, host=host, timeout_s=timeout_s)
