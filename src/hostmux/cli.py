"""CLI entry point for hostmux."""

import argparse
import json
import os
import sys

from .config import HostmuxConfig, config_to_yaml, load_config, merge_cli_args
from .errors import HostmuxError
from .launcher import normalize_hostname, run_app
from .proxy import serve_proxy, stop_proxy


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add config flags shared by all subcommands."""
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument(
        "--state-dir", type=str, dest="state_dir",
        help="Directory holding routes.json (default: $HOSTMUX_STATE_DIR or ~/.hostmux)",
    )
    parser.add_argument(
        "--proxy-port", type=int, dest="proxy_port",
        help="Port the proxy listens on (default: 80)",
    )
    parser.add_argument(
        "--proxy-host", type=str, dest="proxy_host",
        help="Address the proxy binds to (default: 127.0.0.1)",
    )


def _build_config(args) -> HostmuxConfig:
    """Build a HostmuxConfig from a config file + CLI overrides."""
    if args.config:
        config = load_config(args.config)
    else:
        config = HostmuxConfig()
    merge_cli_args(config, args)
    return config


# ---------------------------------------------------------------------------
# hostmux proxy
# ---------------------------------------------------------------------------

def cmd_proxy_start(args) -> None:
    config = _build_config(args)
    try:
        serve_proxy(config)
    except PermissionError:
        print(
            f"Error: permission denied binding port {config.proxy_port}."
            " Use sudo or pass --proxy-port with a port above 1023.",
            file=sys.stderr,
        )
        sys.exit(1)


def cmd_proxy_stop(args) -> None:
    config = _build_config(args)
    if stop_proxy(config):
        print("Proxy stopped.", file=sys.stderr)
    else:
        print("Proxy is not running.", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# hostmux run
# ---------------------------------------------------------------------------

def cmd_run(args) -> None:
    config = _build_config(args)
    command = args.command_args
    # Strip leading '--' separator that REMAINDER captures
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        print("Error: a command to run is required.", file=sys.stderr)
        sys.exit(1)

    code = run_app(config, args.name, command)
    sys.exit(code if code >= 0 else 128 - code)


# ---------------------------------------------------------------------------
# hostmux routes
# ---------------------------------------------------------------------------

def _format_routes(routes, fmt: str) -> str:
    """Format a list of Route objects for output."""
    if fmt == "json":
        return json.dumps([r.to_dict() for r in routes], indent=2)
    lines = []
    for r in routes:
        lines.append(f"{r.hostname}  127.0.0.1:{r.port}  pid={r.pid}")
    return "\n".join(lines) if lines else "(no routes)"


def cmd_routes_list(args) -> None:
    store = _build_config(args).route_store()
    print(_format_routes(store.load_routes(), args.format))


def cmd_routes_add(args) -> None:
    store = _build_config(args).route_store()
    hostname = normalize_hostname(args.hostname)
    pid = args.pid if args.pid is not None else os.getppid()
    store.add_route(hostname, args.port, pid)
    print(f"Added {hostname} -> 127.0.0.1:{args.port} (pid {pid})", file=sys.stderr)


def cmd_routes_remove(args) -> None:
    store = _build_config(args).route_store()
    hostname = normalize_hostname(args.hostname)
    store.remove_route(hostname)
    print(f"Removed {hostname}", file=sys.stderr)


def cmd_config_show(args) -> None:
    print(config_to_yaml(_build_config(args)), end="")


def _port(value: str) -> int:
    port = int(value)
    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"port out of range: {value}")
    return port


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="hostmux",
        description="hostmux: reach local apps by name through one shared proxy",
    )
    subparsers = parser.add_subparsers(dest="command")

    # proxy
    proxy_parser = subparsers.add_parser("proxy", help="Start or stop the shared proxy")
    proxy_sub = proxy_parser.add_subparsers(dest="proxy_command")

    proxy_start = proxy_sub.add_parser("start", help="Run the proxy in the foreground")
    _add_common_args(proxy_start)
    proxy_start.set_defaults(func=cmd_proxy_start)

    proxy_stop = proxy_sub.add_parser("stop", help="Stop a running proxy")
    _add_common_args(proxy_stop)
    proxy_stop.set_defaults(func=cmd_proxy_stop)

    # run
    run_parser = subparsers.add_parser(
        "run", help="Run a command and route <name>.localhost to it",
    )
    _add_common_args(run_parser)
    run_parser.add_argument("name", type=str, help="App name or full hostname")
    run_parser.add_argument(
        "command_args", nargs=argparse.REMAINDER,
        help="Command to run; it receives its port in $PORT",
    )
    run_parser.set_defaults(func=cmd_run)

    # routes
    routes_parser = subparsers.add_parser("routes", help="Inspect or edit the route table")
    routes_sub = routes_parser.add_subparsers(dest="routes_command")

    routes_list = routes_sub.add_parser("list", help="List active routes")
    _add_common_args(routes_list)
    routes_list.add_argument(
        "--format", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    routes_list.set_defaults(func=cmd_routes_list)

    routes_add = routes_sub.add_parser("add", help="Register a route by hand")
    _add_common_args(routes_add)
    routes_add.add_argument("hostname", type=str, help="App name or full hostname")
    routes_add.add_argument("port", type=_port, help="Backend port on 127.0.0.1")
    routes_add.add_argument(
        "--pid", type=int, default=None,
        help="Owning process; the route disappears when it exits (default: parent shell)",
    )
    routes_add.set_defaults(func=cmd_routes_add)

    routes_remove = routes_sub.add_parser("remove", help="Remove a route")
    _add_common_args(routes_remove)
    routes_remove.add_argument("hostname", type=str, help="App name or full hostname")
    routes_remove.set_defaults(func=cmd_routes_remove)

    # config
    config_parser = subparsers.add_parser("config", help="Show the effective configuration")
    _add_common_args(config_parser)
    config_parser.set_defaults(func=cmd_config_show)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "proxy" and not args.proxy_command:
        proxy_parser.print_help()
        sys.exit(1)

    if args.command == "routes" and not args.routes_command:
        routes_parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except HostmuxError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
