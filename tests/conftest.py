from datetime import datetime, timedelta
from typing import Optional

import pytest

from session_manager.config import Settings
from session_manager.errors import InvalidRequest
from session_manager.orchestrator import NAVIGATION_KEYS
from session_manager.profiles import ProfileStore
from session_manager.sessions import SessionRegistry


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeOrchestrator:
    """In-memory stand-in for DockerOrchestrator."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.containers: dict[str, dict] = {}
        self.failures: dict[tuple, Exception] = {}
        self.runtimes = []
        self.next_port = 40000

    def fail(self, op: str, exc: Exception, handle: Optional[str] = None) -> None:
        self.failures[(op, handle)] = exc

    def _record(self, op: str, handle: str, *extra) -> None:
        self.calls.append((op, handle, *extra))
        exc = self.failures.get((op, handle)) or self.failures.get((op, None))
        if exc is not None:
            raise exc

    def ops(self, op: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == op]

    async def open(self):
        pass

    async def close(self):
        pass

    async def launch(self, session_id, start_url, profile_path, user_key=None):
        handle = f"browser-session-{session_id}"
        self._record("launch", handle, start_url)
        self.containers[handle] = {
            "paused": False,
            "start_url": start_url,
            "profile_path": profile_path,
            "user_key": user_key,
        }
        return handle

    async def resolve_port(self, handle):
        self._record("resolve_port", handle)
        self.next_port += 1
        return self.next_port

    async def pause(self, handle):
        self._record("pause", handle)
        self.containers[handle]["paused"] = True

    async def resume(self, handle):
        self._record("resume", handle)
        self.containers[handle]["paused"] = False

    async def stop(self, handle):
        self._record("stop", handle)
        self.containers.pop(handle, None)

    async def force_destroy(self, handle):
        self._record("force_destroy", handle)
        self.containers.pop(handle, None)

    async def send_input_command(self, handle, action, payload=None):
        if action not in NAVIGATION_KEYS:
            raise InvalidRequest(f"Unknown action: {action}")
        self._record("send_input_command", handle, action, payload)

    async def list_runtimes(self):
        return list(self.runtimes)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_orchestrator():
    return FakeOrchestrator()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path / "data",
        public_base_url="http://sessions.test",
        idle_timeout_seconds=60,
        grace_timeout_seconds=600,
        sweep_interval_seconds=3600,
    )


@pytest.fixture
def profiles(settings, clock):
    return ProfileStore(settings.profiles_dir, settings.profile_index_path, clock=clock)


@pytest.fixture
def registry(fake_orchestrator, profiles, settings, clock):
    return SessionRegistry(fake_orchestrator, profiles, settings, clock=clock)
