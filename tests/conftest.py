import subprocess
import sys

import pytest

from hostmux.registry import RouteStore


@pytest.fixture
def store(tmp_path) -> RouteStore:
    warnings: list[str] = []
    s = RouteStore(tmp_path / "state", on_warning=warnings.append)
    s.warnings = warnings
    return s


@pytest.fixture
def dead_pid() -> int:
    """Pid of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid
