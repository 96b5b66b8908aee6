"""Cross-process mutual exclusion backed by atomic directory creation."""

import os
import shutil
import time
from pathlib import Path


STALE_LOCK_SECONDS = 10.0


class DirectoryLock:
    """A lock whose marker is a directory on the local filesystem.

    ``os.mkdir`` either creates the directory or fails with
    ``FileExistsError``, atomically, for every process on the machine.
    A marker older than *stale_after* seconds is assumed to belong to a
    holder that crashed and is removed.
    """

    def __init__(self, path: str | Path, stale_after: float = STALE_LOCK_SECONDS):
        self.path = Path(path)
        self.stale_after = stale_after

    def acquire(self, max_attempts: int = 20, retry_delay: float = 0.05) -> bool:
        """Try to take the lock. Returns False once *max_attempts* are used up."""
        for _ in range(max_attempts):
            try:
                os.mkdir(self.path)
                return True
            except FileExistsError:
                pass
            except OSError:
                # e.g. missing parent directory; retrying will not help
                return False

            try:
                age = time.time() - self.path.stat().st_mtime
            except OSError:
                # Released between mkdir and stat, or not stat-able yet
                continue

            if age > self.stale_after:
                self._remove_marker()
                continue

            time.sleep(retry_delay)

        return False

    def release(self) -> None:
        self._remove_marker()

    def _remove_marker(self) -> None:
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
