"""Environment handed to commands launched in (or next to) the microVM."""
from __future__ import annotations

import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

from .errors import ConfigurationError

logger = logging.getLogger("krun_launch.env")

EnvOverrides = Sequence[Tuple[str, Optional[str]]]

# Passed to the microVM when set on the host.
WELL_KNOWN_ENV_VARS = (
    "LD_LIBRARY_PATH",
    "LIBGL_DRIVERS_PATH",
    "MESA_LOADER_DRIVER_OVERRIDE",  # needed for asahi
    "PATH",  # needed by the guest agent
    "RUST_LOG",
)

# See https://github.com/AsahiLinux/docs/wiki/Devices
ASAHI_SOC_COMPAT_IDS = ("apple,arm-platform",)
DEVICE_TREE_COMPATIBLE = Path("/proc/device-tree/compatible")

# Host session state that must not leak into a locally run server process.
DROP_ENV_VARS = (
    "DBUS_SESSION_BUS_ADDRESS",
    "DISPLAY",
    "ICEAUTHORITY",
    "KONSOLE_DBUS_SERVICE",
    "KONSOLE_DBUS_SESSION",
    "KONSOLE_DBUS_WINDOW",
    "MANAGERPID",
    "PAM_KWALLET5_LOGIN",
    "SESSION_MANAGER",
    "SYSTEMD_EXEC_PID",
    "WAYLAND_DISPLAY",
    "XAUTHORITY",
    "XDG_RUNTIME_DIR",
    "XDG_SEAT",
    "XDG_SEAT_PATH",
    "XDG_SESSION_PATH",
    "XDG_VTNR",
)


def _is_asahi(compatible_path: Path) -> bool:
    try:
        compatible = compatible_path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return False
    except OSError as e:
        raise ConfigurationError(f"failed to read `{compatible_path}`: {e}") from e
    return any(compat_id in ASAHI_SOC_COMPAT_IDS for compat_id in compatible.split("\0"))


def prepare_vm_env_vars(
    overrides: EnvOverrides,
    *,
    environ: Optional[Mapping[str, str]] = None,
    compatible_path: Path = DEVICE_TREE_COMPATIBLE,
) -> Dict[str, str]:
    """Build the env mapping sent with a launch request.

    An override with value None takes the value from the host environment and
    fails if the host does not have it.
    """
    host = os.environ if environ is None else environ
    env_map: Dict[str, str] = {}

    for key in WELL_KNOWN_ENV_VARS:
        value = host.get(key)
        if value is not None:
            env_map[key] = value
        elif key == "MESA_LOADER_DRIVER_OVERRIDE" and _is_asahi(compatible_path):
            env_map[key] = "asahi"

    for key, value in overrides:
        if value is None:
            value = host.get(key)
            if value is None:
                raise ConfigurationError(f"failed to get `{key}` env var")
        env_map[key] = value

    # The guest agent sets up xauth for HOST_DISPLAY and points DISPLAY at the forwarded one.
    display = host.get("DISPLAY")
    if display is not None:
        env_map["HOST_DISPLAY"] = display
        xauthority = host.get("XAUTHORITY")
        if xauthority is not None:
            env_map["XAUTHORITY"] = xauthority

    logger.debug("vm env vars: %s", sorted(env_map))
    return env_map


def prepare_proc_env_vars(
    overrides: EnvOverrides,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Host environment plus overrides, minus host session variables."""
    host = os.environ if environ is None else environ
    env_map = {str(k): str(v) for k, v in host.items()}
    for key, value in overrides:
        if value is not None:
            env_map[key] = value
    for key in DROP_ENV_VARS:
        env_map.pop(key, None)
    return env_map


def find_in_path(program: str, *, environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    host = os.environ if environ is None else environ
    return shutil.which(program, path=host.get("PATH"))


def find_krun_exec(program: str, *, environ: Optional[Mapping[str, str]] = None) -> Path:
    """Locate a companion executable: PATH first, then next to the running entry point.

    Public helper for the server side, which starts the VM runtime and guest
    agent binaries. Nothing in the launch path calls it: the relay needs socat
    from PATH only, and a sibling of our own script is never a valid socat.
    """
    found = find_in_path(program, environ=environ)
    if found:
        return Path(found)
    try:
        current = Path(sys.argv[0] or sys.executable).resolve()
    except OSError as e:
        raise ConfigurationError(f"failed to get path of current running executable: {e}") from e
    return current.with_name(program)
