#!/usr/bin/env python3
"""
File-backed Route Registry

Routes live in ``routes.json`` inside a state directory shared by every
hostmux process on the machine. There is no daemon holding the table in
memory: each reader parses the file, each writer takes the directory lock,
rewrites the file and lets go.

This module provides:
- Route: a (hostname, port, pid) binding
- RouteStore: load / add / remove on top of DirectoryLock
"""

import json
import os
import sys
import tempfile
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import CorruptRegistryFile, LockTimeout, RegistryWriteFailure
from .lock import DirectoryLock


ROUTES_FILE = "routes.json"
LOCK_DIR = "routes.lock"
PID_FILE = "proxy.pid"

# pid_t is a signed 32-bit integer on the platforms hostmux targets
MAX_PID = 2**31 - 1


@dataclass
class Route:
    """A hostname bound to a local backend port, owned by a process."""
    hostname: str
    port: int
    pid: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serialisable dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Optional['Route']:
        """Build a Route from a parsed JSON element, or None if it is malformed."""
        if not isinstance(data, dict):
            return None
        hostname = data.get("hostname")
        port = data.get("port")
        pid = data.get("pid")
        if not isinstance(hostname, str) or not hostname:
            return None
        if not _is_int(port) or not 1 <= port <= 65535:
            return None
        if not _is_int(pid) or pid > MAX_PID:
            return None
        return cls(hostname=hostname, port=port, pid=pid)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def is_process_alive(pid: int) -> bool:
    """Return True if *pid* names a process that still exists.

    Signal 0 performs the permission and existence checks without
    delivering anything. A PermissionError means the process exists but
    belongs to someone else, so it counts as alive.
    """
    if not 0 < pid <= MAX_PID:
        return False
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, OverflowError):
        return False
    except OSError:
        return True
    return True


def _stderr_warning(message: str) -> None:
    print(f"[routes] {message}", file=sys.stderr)


def parse_routes(raw: bytes | str, source: str = ROUTES_FILE) -> List[Route]:
    """Parse the routes document, skipping elements that fail validation.

    Raises CorruptRegistryFile if the document is not a UTF-8 JSON array.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CorruptRegistryFile(f"Corrupted routes file (not UTF-8): {source}") from exc
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise CorruptRegistryFile(f"Corrupted routes file (invalid JSON): {source}") from exc
    if not isinstance(data, list):
        raise CorruptRegistryFile(f"Corrupted routes file (expected array): {source}")
    routes = []
    for entry in data:
        route = Route.from_dict(entry)
        if route is not None:
            routes.append(route)
    return routes


def dump_routes(routes: List[Route]) -> str:
    return json.dumps([r.to_dict() for r in routes], indent=2) + "\n"


class RouteStore:
    """Durable hostname -> backend table shared between processes."""

    def __init__(
        self,
        state_dir: str | Path,
        on_warning: Optional[Callable[[str], None]] = None,
        lock_max_attempts: int = 20,
        lock_retry_delay: float = 0.05,
    ):
        self.state_dir = Path(state_dir)
        self.routes_path = self.state_dir / ROUTES_FILE
        self.lock_path = self.state_dir / LOCK_DIR
        self.pid_path = self.state_dir / PID_FILE
        self.lock = DirectoryLock(self.lock_path)
        self.lock_max_attempts = lock_max_attempts
        self.lock_retry_delay = lock_retry_delay
        self._on_warning = on_warning or _stderr_warning

    def ensure_dir(self) -> None:
        self.state_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        try:
            os.chmod(self.state_dir, 0o755)
        except OSError:
            # Directory may be owned by another user (e.g. root)
            pass

    # -- Locking --------------------------------------------------------------

    def acquire_lock(self) -> bool:
        return self.lock.acquire(self.lock_max_attempts, self.lock_retry_delay)

    def release_lock(self) -> None:
        self.lock.release()

    # -- Route I/O ------------------------------------------------------------

    def load_routes(self, cleanup_stale: bool = False) -> List[Route]:
        """Load routes from disk, dropping those whose owning process is gone.

        Never raises: a missing file is an empty table, an unreadable or
        malformed one is an empty table plus a warning.

        ``cleanup_stale=True`` writes the pruned table back and must only
        be passed by a caller holding the lock (add_route/remove_route).
        Read-only callers such as the proxy pass False and may briefly see
        routes of processes that died since the last write.
        """
        try:
            raw = self.routes_path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            self._on_warning(f"Cannot read routes file {self.routes_path}: {exc}")
            return []

        try:
            routes = parse_routes(raw, source=str(self.routes_path))
        except CorruptRegistryFile as exc:
            self._on_warning(str(exc))
            return []

        alive = [r for r in routes if is_process_alive(r.pid)]
        if cleanup_stale and len(alive) != len(routes):
            try:
                self._write_routes(alive)
            except OSError:
                # Stale entries will be pruned by the next writer
                pass
        return alive

    def _write_routes(self, routes: List[Route]) -> None:
        fd, tmp_name = tempfile.mkstemp(
            prefix=".routes-", suffix=".tmp", dir=self.state_dir,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(dump_routes(routes))
            os.replace(tmp_name, self.routes_path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        try:
            os.chmod(self.routes_path, 0o644)
        except OSError:
            pass

    def _save_routes(self, routes: List[Route]) -> None:
        self.ensure_dir()
        try:
            self._write_routes(routes)
        except OSError as exc:
            raise RegistryWriteFailure(
                f"Failed to write routes file {self.routes_path}: {exc}"
            ) from exc

    def _locked_update(self, update: Callable[[List[Route]], List[Route]]) -> None:
        self.ensure_dir()
        if not self.acquire_lock():
            raise LockTimeout(f"Failed to acquire route lock: {self.lock_path}")
        try:
            routes = update(self.load_routes(cleanup_stale=True))
            self._save_routes(routes)
        finally:
            self.release_lock()

    def add_route(self, hostname: str, port: int, pid: int) -> None:
        """Register *hostname*, replacing any existing entry for it."""
        def update(routes: List[Route]) -> List[Route]:
            routes = [r for r in routes if r.hostname != hostname]
            routes.append(Route(hostname=hostname, port=port, pid=pid))
            return routes

        self._locked_update(update)

    def remove_route(self, hostname: str) -> None:
        self._locked_update(
            lambda routes: [r for r in routes if r.hostname != hostname]
        )
