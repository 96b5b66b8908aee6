"""
File-backed Route Registry

This package provides:
1. DirectoryLock — cross-process lock using an atomically created directory
2. RouteStore — durable hostname -> port table in routes.json
3. Route — a single (hostname, port, pid) binding
"""

from .lock import DirectoryLock, STALE_LOCK_SECONDS
from .route_store import (
    Route,
    RouteStore,
    is_process_alive,
    parse_routes,
)

__all__ = [
    'DirectoryLock',
    'STALE_LOCK_SECONDS',
    'Route',
    'RouteStore',
    'is_process_alive',
    'parse_routes',
]
