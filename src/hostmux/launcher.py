"""Run an app behind the proxy: allocate a port, register, supervise, deregister."""

import os
import signal
import subprocess
import sys

from .config import HostmuxConfig
from .errors import HostmuxError
from .net_utils import find_free_port, is_address_listening


def normalize_hostname(name: str) -> str:
    """``myapp`` -> ``myapp.localhost``; names that already contain a dot are kept."""
    name = name.strip()
    if "." in name:
        return name
    return f"{name}.localhost"


def run_app(config: HostmuxConfig, name: str, command: list[str]) -> int:
    """Start *command* with PORT set and route ``<name>.localhost`` to it.

    The route is owned by this process, which stays alive for as long as
    the child runs, and is removed when the child exits. Returns the
    child's exit code.
    """
    hostname = normalize_hostname(name)
    store = config.route_store()

    if not is_address_listening(config.proxy_port, config.proxy_host):
        print(
            f"Warning: no proxy is listening on {config.proxy_host}:{config.proxy_port}."
            " Start one with: hostmux proxy start",
            file=sys.stderr,
        )

    port = find_free_port(config.port_min, config.port_max)
    store.add_route(hostname, port, os.getpid())
    print(f"Routing http://{hostname} -> 127.0.0.1:{port}", file=sys.stderr)

    env = os.environ.copy()
    env["PORT"] = str(port)
    env["HOST"] = "127.0.0.1"

    try:
        try:
            proc = subprocess.Popen(command, env=env)
        except FileNotFoundError:
            print(f"Error: command not found: {command[0]}", file=sys.stderr)
            return 127

        def _forward(signum, frame):
            proc.send_signal(signum)

        previous = {
            sig: signal.signal(sig, _forward)
            for sig in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            return proc.wait()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
    finally:
        try:
            store.remove_route(hostname)
        except HostmuxError as exc:
            # Left behind; pruned once this process is gone
            print(f"Warning: could not remove route {hostname}: {exc}", file=sys.stderr)
