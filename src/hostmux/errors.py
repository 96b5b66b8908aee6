"""Exceptions raised by hostmux."""


class HostmuxError(Exception):
    """Base class for hostmux errors."""


class LockTimeout(HostmuxError):
    """The route lock could not be acquired within the retry budget."""


class CorruptRegistryFile(HostmuxError):
    """The routes file could not be parsed or has the wrong shape."""


class RegistryWriteFailure(HostmuxError):
    """Persisting the route table failed."""


class BackendUnreachable(HostmuxError):
    """Forwarding to a backend failed.

    ``refused`` is set when the backend actively refused the connection;
    ``headers_sent`` when part of the response already reached the client.
    """

    def __init__(self, message: str, refused: bool = False, headers_sent: bool = False):
        super().__init__(message)
        self.refused = refused
        self.headers_sent = headers_sent


class NoFreePort(HostmuxError):
    """No bindable port was found in the requested range."""


class AlreadyRunning(HostmuxError):
    """Something is already listening where the proxy wants to bind."""
