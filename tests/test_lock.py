"""Tests for hostmux.registry.lock — directory-based cross-process lock."""

import os
import time
from pathlib import Path

from hostmux.registry import DirectoryLock


class TestDirectoryLock:
    def test_acquire_creates_marker(self, tmp_path) -> None:
        lock = DirectoryLock(tmp_path / "routes.lock")

        assert lock.acquire() is True
        assert (tmp_path / "routes.lock").is_dir()

    def test_release_removes_marker(self, tmp_path) -> None:
        lock = DirectoryLock(tmp_path / "routes.lock")
        lock.acquire()

        lock.release()

        assert not (tmp_path / "routes.lock").exists()

    def test_release_is_idempotent(self, tmp_path) -> None:
        lock = DirectoryLock(tmp_path / "routes.lock")
        lock.acquire()
        lock.release()
        lock.release()

    def test_held_lock_times_out(self, tmp_path) -> None:
        holder = DirectoryLock(tmp_path / "routes.lock")
        contender = DirectoryLock(tmp_path / "routes.lock")
        assert holder.acquire()

        start = time.monotonic()
        assert contender.acquire(max_attempts=3, retry_delay=0.02) is False
        assert time.monotonic() - start >= 0.05

    def test_reacquire_after_release(self, tmp_path) -> None:
        first = DirectoryLock(tmp_path / "routes.lock")
        second = DirectoryLock(tmp_path / "routes.lock")
        first.acquire()
        first.release()

        assert second.acquire(max_attempts=1) is True

    def test_stale_marker_is_broken_without_waiting(self, tmp_path) -> None:
        marker = tmp_path / "routes.lock"
        marker.mkdir()
        old = time.time() - 60
        os.utime(marker, (old, old))

        start = time.monotonic()
        assert DirectoryLock(marker).acquire(max_attempts=5, retry_delay=1.0) is True
        assert time.monotonic() - start < 1.0

    def test_stale_marker_with_contents_is_broken(self, tmp_path) -> None:
        marker = tmp_path / "routes.lock"
        marker.mkdir()
        (marker / "leftover").write_text("x")
        old = time.time() - 60
        os.utime(marker, (old, old))

        assert DirectoryLock(marker).acquire(max_attempts=2, retry_delay=1.0) is True

    def test_custom_stale_threshold(self, tmp_path) -> None:
        marker = tmp_path / "routes.lock"
        marker.mkdir()
        old = time.time() - 5
        os.utime(marker, (old, old))

        assert DirectoryLock(marker).acquire(max_attempts=2, retry_delay=0.01) is False
        assert DirectoryLock(marker, stale_after=1.0).acquire(max_attempts=2) is True

    def test_missing_parent_fails_immediately(self, tmp_path) -> None:
        lock = DirectoryLock(tmp_path / "missing" / "routes.lock")

        start = time.monotonic()
        assert lock.acquire(max_attempts=10, retry_delay=0.5) is False
        assert time.monotonic() - start < 0.5

    def test_stat_error_is_retried(self, tmp_path, monkeypatch) -> None:
        marker = tmp_path / "routes.lock"
        marker.mkdir()
        old = time.time() - 60
        os.utime(marker, (old, old))

        real_stat = Path.stat
        failures = []

        def flaky_stat(self, *args, **kwargs):
            if self == marker and not failures:
                failures.append(self)
                raise PermissionError(13, "Permission denied")
            return real_stat(self, *args, **kwargs)

        monkeypatch.setattr(Path, "stat", flaky_stat)

        assert DirectoryLock(marker).acquire(max_attempts=3, retry_delay=1.0) is True
        assert failures == [marker]
