"""socat relay used to tunnel interactive sessions over vsock.

The relay listens on ``$XDG_RUNTIME_DIR/krun/socket/port-<N>``; the VM maps that
socket to vsock port N. The guest runs ``socat vsock:2:<N> exec:<cmd>,pty,...``
which connects back, so the user's terminal ends up attached to a pty in the guest.
"""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Tuple

from . import paths
from .env import find_in_path
from .errors import ConfigurationError

logger = logging.getLogger("krun_launch.relay")

DYNAMIC_PORT_RANGE = range(50000, 50200)
RELAY_BINARY = "socat"
# vsock CID of the host as seen from inside the guest.
HOST_CID = 2

_SOCAT_SPECIAL = frozenset(":,!\"'\\([{")


@dataclass
class RelayHandle:
    process: subprocess.Popen
    port: int
    socket_path: Path

    @property
    def pid(self) -> int:
        return int(self.process.pid)

    def wait(self) -> int:
        return int(self.process.wait())

    def terminate(self) -> None:
        if self.process.poll() is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass


def relay_socket_path(runtime_dir: Path, port: int) -> Path:
    return paths.relay_socket_dir(runtime_dir) / f"port-{port}"


def find_free_port(runtime_dir: Path, ports: Sequence[int] = DYNAMIC_PORT_RANGE) -> int:
    """First port in range whose socket path does not exist yet."""
    for port in ports:
        if not relay_socket_path(runtime_dir, port).exists():
            return port
    raise ConfigurationError(f"ran out of relay ports under {paths.relay_socket_dir(runtime_dir)}")


def escape_for_socat(s: str) -> str:
    return "".join("\\" + c if c in _SOCAT_SPECIAL else c for c in s)


def wrap_interactive(command: str, command_args: Sequence[str], vsock_port: int) -> Tuple[str, List[str]]:
    """Rewrite a launch so the guest runs it in a pty bridged back to our relay."""
    cmdline = " ".join([command, *command_args])
    return RELAY_BINARY, [
        f"vsock:{HOST_CID}:{vsock_port}",
        f"exec:{escape_for_socat(cmdline)},pty,setsid,stderr",
    ]


def open_bridge(
    runtime_dir: Optional[Path] = None,
    *,
    relay_binary: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RelayHandle:
    base = runtime_dir or paths.runtime_dir(environ)
    binary = relay_binary or find_in_path(RELAY_BINARY, environ=environ)
    if not binary:
        raise ConfigurationError(f"unable to find {RELAY_BINARY} in PATH")

    port = find_free_port(base)
    sock_path = relay_socket_path(base, port)
    sock_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        proc = subprocess.Popen([str(binary), f"unix-l:{sock_path}", "-,raw,echo=0"])
    except OSError as e:
        raise ConfigurationError(f"failed to start relay {binary}: {e}") from e
    logger.debug("relay pid=%s listening on %s", proc.pid, sock_path)
    return RelayHandle(process=proc, port=port, socket_path=sock_path)
