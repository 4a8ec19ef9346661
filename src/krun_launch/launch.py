"""Decide whether this invocation becomes the microVM server or forwards to it.

- ``KRUN_SERVER_PORT`` set: we run under the server already, forward once.
- Lock acquired: we are the leader; the caller starts serving and runs the command.
- Lock busy with a published port: forward, retrying while the leader's
  listener is not bound yet.
- Lock busy without a usable port: give up.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Union

from . import paths
from .client import request_launch
from .env import EnvOverrides, prepare_vm_env_vars
from .errors import ForwardingError, LaunchError, LeadershipAmbiguousError
from .lock import Acquired, acquire_or_discover
from .relay import RelayHandle, open_bridge, wrap_interactive
from .util.file_lock import release_lockfile

logger = logging.getLogger("krun_launch.launch")

# Initial attempt plus three retries.
MAX_CONNECT_ATTEMPTS = 4

PrepareEnv = Callable[[EnvOverrides], Dict[str, str]]
RequestFn = Callable[[int, str, Sequence[str], Mapping[str, str]], None]
OpenRelayFn = Callable[[Optional[Path]], RelayHandle]


@dataclass(frozen=True)
class LaunchRequested:
    port: int
    attempts: int = 1
    kind: Literal["launch_requested"] = "launch_requested"


@dataclass(frozen=True)
class LockAcquired:
    """We won the election. Keep this (and its lock) alive for the whole server lifetime."""

    lock_file: IO[bytes] = field(repr=False)
    lock_path: Path
    port: int
    command: str
    command_args: Tuple[str, ...]
    env: Tuple[Tuple[str, Optional[str]], ...]
    kind: Literal["lock_acquired"] = "lock_acquired"

    def release(self) -> None:
        release_lockfile(self.lock_file)

    def __enter__(self) -> "LockAcquired":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


LaunchResult = Union[LaunchRequested, LockAcquired]


def wrapped_launch(
    port: int,
    command: str,
    command_args: Sequence[str],
    env: Mapping[str, str],
    interactive: bool,
    *,
    request: RequestFn = request_launch,
    open_relay: OpenRelayFn = open_bridge,
    runtime_dir: Optional[Path] = None,
) -> None:
    """Send one launch request, tunnelling a pty through a relay when interactive.

    For interactive launches this returns only after the relay exits, i.e. when
    the session ends.
    """
    if not interactive:
        request(port, command, command_args, env)
        return

    relay = open_relay(runtime_dir)
    relay_command, relay_args = wrap_interactive(command, command_args, relay.port)
    try:
        request(port, relay_command, relay_args, env)
    except BaseException:
        # No guest will ever connect back; don't leave the relay waiting.
        relay.terminate()
        relay.wait()
        raise
    code = relay.wait()
    logger.debug("relay on vsock port %d exited with %d", relay.port, code)


def _forward_with_retry(
    port: int,
    command: str,
    command_args: List[str],
    env: Dict[str, str],
    interactive: bool,
    *,
    request: RequestFn,
    open_relay: OpenRelayFn,
    runtime_dir: Optional[Path],
    retry_delay_s: float,
) -> LaunchRequested:
    attempt = 0
    while True:
        attempt += 1
        try:
            wrapped_launch(
                port,
                command,
                command_args,
                env,
                interactive,
                request=request,
                open_relay=open_relay,
                runtime_dir=runtime_dir,
            )
        except LaunchError as e:
            if e.retryable and attempt < MAX_CONNECT_ATTEMPTS:
                logger.debug(
                    "attempt %d/%d to reach port %d failed: %s",
                    attempt,
                    MAX_CONNECT_ATTEMPTS,
                    port,
                    e,
                    extra={"op": "forward", "port": port, "attempt": attempt},
                )
                if retry_delay_s > 0:
                    time.sleep(retry_delay_s)
                continue
            raise ForwardingError(e, attempts=attempt) from e
        return LaunchRequested(port=port, attempts=attempt)


def launch_or_lock(
    server_port: int,
    command: Union[str, "os.PathLike[str]"],
    command_args: Sequence[str],
    env: EnvOverrides,
    interactive: bool,
    *,
    prepare_env: PrepareEnv = prepare_vm_env_vars,
    environ: Optional[Mapping[str, str]] = None,
    lock_path: Optional[Path] = None,
    runtime_dir: Optional[Path] = None,
    request: RequestFn = request_launch,
    open_relay: OpenRelayFn = open_bridge,
    retry_delay_s: float = 0.0,
) -> LaunchResult:
    """Forward ``command`` to a running server, or take the lock and become it.

    ``server_port`` is the port we would announce if we become the leader.
    ``env`` is a list of ``(key, value)`` overrides handed to ``prepare_env``;
    the mapping it returns is sent along with the request.
    """
    host_env = os.environ if environ is None else environ
    command = os.fspath(command)
    args = list(command_args)
    overrides = tuple(env)

    if interactive and runtime_dir is None:
        # Resolve up front so a missing XDG_RUNTIME_DIR is reported before anything is sent.
        runtime_dir = paths.runtime_dir(host_env)

    known_port = paths.server_port_from_env(host_env)
    if known_port is not None:
        env_map = prepare_env(overrides)
        try:
            wrapped_launch(
                known_port,
                command,
                args,
                env_map,
                interactive,
                request=request,
                open_relay=open_relay,
                runtime_dir=runtime_dir,
            )
        except LaunchError as e:
            raise ForwardingError(e) from e
        return LaunchRequested(port=known_port)

    outcome = acquire_or_discover(server_port, lock_path=lock_path or paths.lock_path(host_env))
    if isinstance(outcome, Acquired):
        logger.info(
            "became krun server leader on port %d",
            outcome.port,
            extra={"op": "elect", "port": outcome.port, "lock_path": str(outcome.lock_path)},
        )
        return LockAcquired(
            lock_file=outcome.lock_file,
            lock_path=outcome.lock_path,
            port=outcome.port,
            command=command,
            command_args=tuple(args),
            env=overrides,
        )

    if outcome.port is None:
        raise LeadershipAmbiguousError(
            f"krun is already running but couldn't find its server port in {outcome.lock_path}, bailing out"
        )

    logger.debug("forwarding %s to leader on port %d", command, outcome.port)
    env_map = prepare_env(overrides)
    return _forward_with_retry(
        outcome.port,
        command,
        args,
        env_map,
        interactive,
        request=request,
        open_relay=open_relay,
        runtime_dir=runtime_dir,
        retry_delay_s=retry_delay_s,
    )
