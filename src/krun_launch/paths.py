from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError

RUNTIME_DIR_VAR = "XDG_RUNTIME_DIR"
SERVER_PORT_VAR = "KRUN_SERVER_PORT"
LOCK_FILE_NAME = "krun.lock"
MAX_PORT = 65535


def runtime_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    raw = str(env.get(RUNTIME_DIR_VAR, "") or "").strip()
    if not raw:
        raise ConfigurationError(f"unable to get {RUNTIME_DIR_VAR}: variable is not set")
    return Path(raw).expanduser()


def lock_path(environ: Optional[Mapping[str, str]] = None) -> Path:
    return runtime_dir(environ) / LOCK_FILE_NAME


def relay_socket_dir(base: Path) -> Path:
    return base / "krun" / "socket"


def server_port_from_env(environ: Optional[Mapping[str, str]] = None) -> Optional[int]:
    """Port of an already running server announced to us, or None."""
    env = os.environ if environ is None else environ
    raw = env.get(SERVER_PORT_VAR)
    if raw is None:
        return None
    try:
        port = int(str(raw).strip())
    except ValueError:
        raise ConfigurationError(f"{SERVER_PORT_VAR} is not a valid port: {raw!r}") from None
    if port < 0 or port > MAX_PORT:
        raise ConfigurationError(f"{SERVER_PORT_VAR} is not a valid port: {raw!r}")
    return port
