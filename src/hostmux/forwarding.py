"""Relay HTTP requests and upgraded connections to a local backend."""

import http.client
import socket
import threading
from http.server import BaseHTTPRequestHandler
from typing import List, Optional, Tuple

from .errors import BackendUnreachable


BACKEND_HOST = "127.0.0.1"
CHUNK_SIZE = 64 * 1024

HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


def is_upgrade_request(handler: BaseHTTPRequestHandler) -> bool:
    connection = handler.headers.get("Connection", "")
    tokens = {t.strip().lower() for t in connection.split(",")}
    return "upgrade" in tokens and bool(handler.headers.get("Upgrade"))


def _read_chunked(rfile) -> bytes:
    body = bytearray()
    while True:
        line = rfile.readline(65537)
        if not line:
            raise ValueError("truncated chunked body")
        size = int(line.split(b";", 1)[0].strip(), 16)
        if size == 0:
            # Trailer section ends with an empty line
            while rfile.readline(65537) not in (b"\r\n", b"\n", b""):
                pass
            return bytes(body)
        body += rfile.read(size)
        rfile.readline(65537)


def read_request_body(handler: BaseHTTPRequestHandler) -> Optional[bytes]:
    """Read the request body, if any. Raises ValueError on malformed framing."""
    if "chunked" in handler.headers.get("Transfer-Encoding", "").lower():
        return _read_chunked(handler.rfile)
    length = handler.headers.get("Content-Length")
    if length is None:
        return None
    length = int(length)
    if length < 0:
        raise ValueError("negative Content-Length")
    return handler.rfile.read(length)


def forwarded_headers(handler: BaseHTTPRequestHandler, proto: str) -> List[Tuple[str, str]]:
    """X-Forwarded-* headers for *handler*'s request, appended to any existing chain."""
    host_header = handler.headers.get("Host", "")
    _, sep, port = host_header.rpartition(":")
    if not sep or not port.isdigit():
        port = str(handler.server.server_address[1])
    values = {
        "For": handler.client_address[0],
        "Port": port,
        "Proto": proto,
        "Host": host_header,
    }
    result = []
    for name, value in values.items():
        header = f"X-Forwarded-{name}"
        existing = ",".join(handler.headers.get_all(header, []))
        result.append((header, f"{existing},{value}" if existing else value))
    return result


def _request_headers(handler: BaseHTTPRequestHandler, upgrade: bool) -> List[Tuple[str, str]]:
    xfwd = forwarded_headers(handler, "ws" if upgrade else "http")
    replaced = {name.lower() for name, _ in xfwd}
    headers = []
    for name, value in handler.headers.items():
        lname = name.lower()
        if lname in replaced:
            continue
        if not upgrade and (lname in HOP_BY_HOP or lname == "content-length"):
            continue
        headers.append((name, value))
    return headers + xfwd


def forward_request(handler: BaseHTTPRequestHandler, port: int, timeout: float = 30.0) -> None:
    """Relay *handler*'s request to the backend on *port* and stream the response back.

    Raises BackendUnreachable if the backend cannot be reached or the
    exchange breaks part way.
    """
    body = read_request_body(handler)
    conn = http.client.HTTPConnection(BACKEND_HOST, port, timeout=timeout)
    headers_sent = False
    try:
        conn.putrequest(handler.command, handler.path,
                        skip_host=True, skip_accept_encoding=True)
        for name, value in _request_headers(handler, upgrade=False):
            conn.putheader(name, value)
        if body is not None:
            conn.putheader("Content-Length", str(len(body)))
        conn.endheaders(body)
        resp = conn.getresponse()

        bodyless = (
            handler.command == "HEAD"
            or resp.status in (204, 304)
            or 100 <= resp.status < 200
        )
        length = resp.getheader("Content-Length")

        handler.send_response_only(resp.status, resp.reason)
        for name, value in resp.getheaders():
            lname = name.lower()
            if lname in HOP_BY_HOP or lname == "content-length":
                continue
            handler.send_header(name, value)
        if length is not None and not resp.chunked:
            handler.send_header("Content-Length", length)
        elif not bodyless:
            # No length to announce: delimit the body by closing
            handler.close_connection = True
            handler.send_header("Connection", "close")
        handler.end_headers()
        headers_sent = True

        if not bodyless:
            while True:
                chunk = resp.read(CHUNK_SIZE)
                if not chunk:
                    break
                handler.wfile.write(chunk)
            # read(amt) reports a short Content-Length body as plain EOF
            if resp.length:
                raise http.client.IncompleteRead(b"", resp.length)
        handler.wfile.flush()
    except ConnectionRefusedError as exc:
        raise BackendUnreachable(str(exc), refused=True, headers_sent=headers_sent) from exc
    except (OSError, http.client.HTTPException) as exc:
        raise BackendUnreachable(
            str(exc) or type(exc).__name__, headers_sent=headers_sent,
        ) from exc
    finally:
        conn.close()


def _pump_client_to_backend(rfile, backend: socket.socket) -> None:
    # read1 hands over bytes already buffered behind the request head first
    try:
        while True:
            data = rfile.read1(CHUNK_SIZE)
            if not data:
                break
            backend.sendall(data)
        backend.shutdown(socket.SHUT_WR)
    except OSError:
        pass


def forward_upgrade(handler: BaseHTTPRequestHandler, port: int, timeout: float = 30.0) -> None:
    """Splice an upgrade connection onto the backend on *port*.

    The request head is replayed with X-Forwarded-* headers added, then
    bytes are copied both ways until the backend closes. The backend's
    handshake response is relayed verbatim.
    """
    try:
        backend = socket.create_connection((BACKEND_HOST, port), timeout=timeout)
    except ConnectionRefusedError as exc:
        raise BackendUnreachable(str(exc), refused=True) from exc
    except OSError as exc:
        raise BackendUnreachable(str(exc) or type(exc).__name__) from exc

    client = handler.connection
    with backend:
        head = [f"{handler.command} {handler.path} HTTP/1.1"]
        head += [f"{name}: {value}" for name, value in _request_headers(handler, upgrade=True)]
        try:
            backend.sendall(("\r\n".join(head) + "\r\n\r\n").encode("latin-1"))
        except OSError as exc:
            raise BackendUnreachable(str(exc) or type(exc).__name__) from exc
        backend.settimeout(None)

        pump = threading.Thread(
            target=_pump_client_to_backend, args=(handler.rfile, backend), daemon=True,
        )
        pump.start()
        try:
            while True:
                data = backend.recv(CHUNK_SIZE)
                if not data:
                    break
                client.sendall(data)
        except OSError:
            pass
        finally:
            try:
                client.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            pump.join(timeout)
