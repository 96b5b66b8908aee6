"""Port allocation and listener probing."""

import random
import socket

from .errors import NoFreePort


def _can_bind(port: int, host: str = "") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_free_port(min_port: int = 4000, max_port: int = 4999) -> int:
    """Find a bindable port in [min_port, max_port].

    Tries random ports first, then falls back to a sequential scan.
    """
    for _ in range(50):
        port = random.randint(min_port, max_port)
        if _can_bind(port):
            return port

    for port in range(min_port, max_port + 1):
        if _can_bind(port):
            return port

    raise NoFreePort(f"No free port found in range {min_port}-{max_port}")


def is_address_listening(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """Return True if a TCP connect to host:port succeeds within *timeout*."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()
