from __future__ import annotations

import argparse
import json
import subprocess
import sys
from typing import Any, List, Optional, Tuple

from . import __version__
from .env import prepare_proc_env_vars
from .errors import ConfigurationError, ForwardingError, LeadershipAmbiguousError
from .launch import LockAcquired, launch_or_lock
from .lock import MIN_PUBLISHED_PORT, inspect_leader
from .paths import MAX_PORT, SERVER_PORT_VAR
from .util.obslog import level_from_env, setup_logging

DEFAULT_SERVER_PORT = 3333


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _parse_env_override(raw: str) -> Tuple[str, Optional[str]]:
    key, sep, value = raw.partition("=")
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError(f"invalid env override: {raw!r}")
    return key, (value if sep else None)


def _server_port(raw: str) -> int:
    try:
        port = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port: {raw!r}") from None
    if not MIN_PUBLISHED_PORT <= port <= MAX_PORT:
        raise argparse.ArgumentTypeError(f"port must be in {MIN_PUBLISHED_PORT}-{MAX_PORT}, got {port}")
    return port


def _run_as_leader(result: LockAcquired) -> int:
    """Run the command locally while holding the lock; children see the published port."""
    env = prepare_proc_env_vars(result.env)
    env[SERVER_PORT_VAR] = str(result.port)
    with result:
        try:
            proc = subprocess.run([result.command, *result.command_args], env=env, check=False)
        except FileNotFoundError:
            print(f"krun-launch: command not found: {result.command}", file=sys.stderr)
            return 127
    return int(proc.returncode)


def cmd_launch(args: argparse.Namespace) -> int:
    command: List[str] = list(args.command or [])
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("krun-launch: missing command", file=sys.stderr)
        return 2
    try:
        result = launch_or_lock(
            int(args.port),
            command[0],
            command[1:],
            list(args.env or []),
            bool(args.interactive),
            retry_delay_s=float(args.retry_delay),
        )
    except (ConfigurationError, LeadershipAmbiguousError, ForwardingError) as e:
        print(f"krun-launch: {e}", file=sys.stderr)
        return 1
    if isinstance(result, LockAcquired):
        return _run_as_leader(result)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    try:
        status = inspect_leader()
    except ConfigurationError as e:
        print(f"krun-launch: {e}", file=sys.stderr)
        return 2
    _print_json(status.to_dict())
    return 0 if status.leader else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="krun-launch", description="Run commands in a shared krun microVM")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_launch = sub.add_parser("launch", help="Forward a command to the running server, or become the server")
    p_launch.add_argument(
        "--port",
        type=_server_port,
        default=DEFAULT_SERVER_PORT,
        help=f"Port to announce if this invocation becomes the server (default: {DEFAULT_SERVER_PORT})",
    )
    p_launch.add_argument("-i", "--interactive", action="store_true", help="Attach the command to a terminal")
    p_launch.add_argument(
        "-e",
        "--env",
        action="append",
        type=_parse_env_override,
        metavar="KEY[=VALUE]",
        help="Pass an env var to the command (no value: take it from this environment)",
    )
    p_launch.add_argument(
        "--retry-delay",
        type=float,
        default=0.0,
        help="Seconds to wait between attempts to reach a starting server (default: 0)",
    )
    p_launch.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments")
    p_launch.set_defaults(func=cmd_launch)

    p_status = sub.add_parser("status", help="Show whether a server holds the lock and its port")
    p_status.set_defaults(func=cmd_status)

    return p


def main(argv: list[str] | None = None) -> int:
    setup_logging(level_from_env())
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
