"""Host-header dispatcher in front of locally registered apps."""

import os
import signal
import socket
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Iterable, List, Optional

from jinja2 import Environment, PackageLoader

from . import __version__
from .config import HostmuxConfig
from .errors import AlreadyRunning, BackendUnreachable
from .forwarding import forward_request, forward_upgrade, is_upgrade_request
from .net_utils import is_address_listening
from .registry import Route


RouteAccessor = Callable[[], List[Route]]

MSG_MISSING_HOST = "Missing Host header"
MSG_BACKEND_REFUSED = "Bad Gateway: the target app is not responding. It may have crashed."
MSG_BACKEND_DOWN = "Bad Gateway: the target app may not be running."


def _get_template_env() -> Environment:
    return Environment(
        loader=PackageLoader("hostmux", "templates"),
        autoescape=True,
        keep_trailing_newline=True,
    )


def _stderr_error(message: str) -> None:
    print(f"[proxy] {message}", file=sys.stderr)


def parse_host(value: Optional[str]) -> str:
    """Strip the port from a Host header value."""
    value = (value or "").strip()
    if value.startswith("["):
        end = value.find("]")
        return value[:end + 1] if end != -1 else value
    return value.split(":", 1)[0]


def find_route(routes: Iterable[Route], host: str) -> Optional[Route]:
    for route in routes:
        if route.hostname == host:
            return route
    return None


def render_not_found(host: str, routes: List[Route]) -> str:
    template = _get_template_env().get_template("not_found.html.j2")
    return template.render(
        host=host,
        routes=routes,
        name=host.replace(".localhost", "", 1),
    )


def _make_handler(
    get_routes: RouteAccessor,
    on_error: Callable[[str], None],
    forward_timeout: float,
):
    """Create a handler class bound to the given route accessor."""

    class ProxyHTTPHandler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"
        server_version = f"hostmux/{__version__}"

        def log_message(self, format, *args):
            # Silence default stderr logging
            pass

        def _send_body(self, status: int, body: str, content_type: str):
            data = body.encode("utf-8")
            if self.headers.get("Content-Length") or self.headers.get("Transfer-Encoding"):
                # The unread request body would be parsed as the next request
                self.close_connection = True
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(data)))
            if self.close_connection:
                self.send_header("Connection", "close")
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(data)

        def _send_text(self, status: int, body: str):
            self._send_body(status, body, "text/plain")

        def _abort(self):
            self.close_connection = True
            try:
                self.connection.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

        def _dispatch(self):
            if is_upgrade_request(self):
                self._handle_upgrade()
            else:
                self._handle_request()

        def _handle_request(self):
            host = parse_host(self.headers.get("Host"))
            if not host:
                self._send_text(400, MSG_MISSING_HOST)
                return

            routes = get_routes()
            route = find_route(routes, host)
            if route is None:
                self._send_body(404, render_not_found(host, routes), "text/html")
                return

            try:
                forward_request(self, route.port, forward_timeout)
            except ValueError:
                self.close_connection = True
                self._send_text(400, "Malformed request body")
            except BackendUnreachable as exc:
                on_error(f"Proxy error for {host}: {exc}")
                if exc.headers_sent:
                    self._abort()
                    return
                self._send_text(502, MSG_BACKEND_REFUSED if exc.refused else MSG_BACKEND_DOWN)

        def _handle_upgrade(self):
            # No HTTP response can be written mid-handshake: failures just drop the socket
            host = parse_host(self.headers.get("Host"))
            route = find_route(get_routes(), host) if host else None
            if route is None:
                self._abort()
                return
            try:
                forward_upgrade(self, route.port, forward_timeout)
            except BackendUnreachable as exc:
                on_error(f"Proxy error for {host}: {exc}")
            finally:
                self._abort()

        do_GET = _dispatch
        do_HEAD = _dispatch
        do_POST = _dispatch
        do_PUT = _dispatch
        do_PATCH = _dispatch
        do_DELETE = _dispatch
        do_OPTIONS = _dispatch
        do_TRACE = _dispatch

    return ProxyHTTPHandler


def create_proxy_server(
    get_routes: RouteAccessor,
    host: str = "127.0.0.1",
    port: int = 80,
    on_error: Optional[Callable[[str], None]] = None,
    forward_timeout: float = 30.0,
) -> ThreadingHTTPServer:
    """Bind a proxy server that consults *get_routes* on every request."""
    handler = _make_handler(get_routes, on_error or _stderr_error, forward_timeout)
    return ThreadingHTTPServer((host, port), handler)


def start_proxy_server(
    get_routes: RouteAccessor,
    host: str = "127.0.0.1",
    port: int = 80,
    on_error: Optional[Callable[[str], None]] = None,
    forward_timeout: float = 30.0,
) -> ThreadingHTTPServer:
    """Start the proxy in a daemon thread and return the server."""
    server = create_proxy_server(get_routes, host, port, on_error, forward_timeout)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


# ---------------------------------------------------------------------------
# Foreground proxy process (hostmux proxy start / stop)
# ---------------------------------------------------------------------------

def _interrupt(signum, frame):
    raise KeyboardInterrupt


def serve_proxy(config: HostmuxConfig) -> None:
    """Run the proxy in the foreground until interrupted or sent SIGTERM."""
    if is_address_listening(config.proxy_port, config.proxy_host):
        raise AlreadyRunning(
            f"Something is already listening on {config.proxy_host}:{config.proxy_port}"
        )

    store = config.route_store()
    store.ensure_dir()
    server = create_proxy_server(
        lambda: store.load_routes(cleanup_stale=False),
        host=config.proxy_host,
        port=config.proxy_port,
        forward_timeout=config.forward_timeout,
    )
    store.pid_path.write_text(f"{os.getpid()}\n")
    signal.signal(signal.SIGTERM, _interrupt)
    print(
        f"[proxy] listening on http://{config.proxy_host}:{config.proxy_port}"
        f" (routes: {store.routes_path})",
        file=sys.stderr,
    )
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("[proxy] shutting down", file=sys.stderr)
    finally:
        server.server_close()
        store.pid_path.unlink(missing_ok=True)


def stop_proxy(config: HostmuxConfig) -> bool:
    """Send SIGTERM to the proxy recorded in proxy.pid. Returns False if none is running."""
    store = config.route_store()
    try:
        pid = int(store.pid_path.read_text().strip())
    except (OSError, ValueError):
        return False
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        store.pid_path.unlink(missing_ok=True)
        return False
    return True
