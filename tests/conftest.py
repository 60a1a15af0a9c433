import asyncio
import itertools
import os
import sys
import time

import pytest

# Ensure project root is importable (so `import examples...` works reliably across environments)
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from rainbowd.backend import Backend, BackendState  # noqa: E402
from rainbowd.config import AppConfig  # noqa: E402
from rainbowd.cutover import CutoverAttempt, CutoverStrategy  # noqa: E402
from rainbowd.events import clear_events  # noqa: E402


class FakeSupervisor:
    """Stands in for ProcessSupervisor: no processes, exits are triggered by the test."""

    def __init__(self):
        self._ports = itertools.count(9100)
        self.spawned: list[Backend] = []
        self.shutdowns: list[tuple[Backend, float]] = []
        self._on_exit = {}
        self.killed_all = False
        self.exit_on_shutdown = True

    def spawn(self, app, port=None, on_exit=None):
        backend = Backend(app=app.name, port=port or next(self._ports))
        self.spawned.append(backend)
        self._on_exit[backend.id] = on_exit
        return backend

    def exit(self, backend, returncode=1):
        """Simulate the backend process exiting."""
        backend.returncode = returncode
        backend.transition(BackendState.DEAD)
        cb = self._on_exit.pop(backend.id, None)
        if cb is not None:
            cb(backend)

    async def shutdown(self, backend, sig=None):
        self.shutdowns.append((backend, time.monotonic()))
        if self.exit_on_shutdown and backend.alive:
            self.exit(backend, returncode=-15)
        return True

    def kill_all(self):
        self.killed_all = True

    async def wait_closed(self, timeout_s=5.0):
        return None


class ManualCutover(CutoverStrategy):
    """Cutover strategy the test resolves by hand."""

    waiting_state = BackendState.WARMING

    def __init__(self):
        self.attempts: list[CutoverAttempt] = []

    def begin_cutover(self, port):
        attempt = CutoverAttempt(port)
        self.attempts.append(attempt)
        return attempt


def make_app(**overrides) -> AppConfig:
    data = {
        "name": "web",
        "command": ["python", "server.py"],
        "port": 7000,
        "drainDelayMs": 0,
        "cutover": {"type": "WarmupTimer", "durationMs": 10},
    }
    data.update(overrides)
    return AppConfig.model_validate(data)


async def settle(rounds: int = 5) -> None:
    """Let callbacks and freshly created tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture(autouse=True)
def _fresh_events():
    clear_events()
    yield
    clear_events()


@pytest.fixture
def fake_supervisor():
    return FakeSupervisor()


@pytest.fixture
def manual_cutover():
    return ManualCutover()
