"""Shared fixtures: a small catalog, stores, a controllable clock and remote service."""

import asyncio

import pytest

from hackprogress.config import EngineSettings
from hackprogress.engine.catalog import catalog_from_dict
from hackprogress.engine.retry import RetryPolicy
from hackprogress.engine.stores import InMemoryRemoteService, MemoryKeyValueStore
from hackprogress.engine.tracker import ProgressTracker


CATALOG_DATA = {
    "levels": [
        {"id": "foundation", "name": "Foundation"},
        {"id": "intermediate", "name": "Intermediate", "prerequisites": ["foundation"]},
        {"id": "advanced", "name": "Advanced", "prerequisites": ["intermediate"]},
    ],
    "hacks": [
        {"id": "f1", "level": "foundation"},
        {"id": "f2", "level": "foundation", "prerequisites": ["f1"]},
        {"id": "f3", "level": "foundation", "prerequisites": ["f1"]},
        {"id": "f4", "level": "foundation", "required": False},
        {"id": "i1", "level": "intermediate", "prerequisites": ["f1"]},
        {"id": "i2", "level": "intermediate", "prerequisites": ["i1"]},
        {"id": "a1", "level": "advanced"},
        {"id": "loose", "name": "No level"},
    ],
    "routines": [
        {"id": "morning", "name": "Morning", "steps": ["f1", "f2", "f3", "i1", "i2"]},
        {"id": "short", "steps": ["f1", "f4"]},
    ],
}


class RecordingSleep:
    """Sleep that returns immediately and records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class ManualClock:
    """Sleep that only returns when the test advances the clock."""

    def __init__(self):
        self.pending: list[asyncio.Future] = []
        self.delays: list[float] = []

    async def sleep(self, delay: float):
        self.delays.append(delay)
        future = asyncio.get_running_loop().create_future()
        self.pending.append(future)
        await future

    async def advance(self, ticks: int = 1):
        for _ in range(ticks):
            await settle()
            if self.pending:
                future = self.pending.pop(0)
                if not future.done():
                    future.set_result(None)
            await settle()


async def settle(rounds: int = 5):
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FlakyRemoteService(InMemoryRemoteService):
    """In-memory remote that fails chosen operations a number of times."""

    def __init__(self):
        super().__init__()
        self.failures: dict[str, int] = {}
        self.attempts: list[str] = []

    def fail(self, operation: str, times: int = 1_000_000):
        self.failures[operation] = times

    def heal(self):
        self.failures.clear()

    def _maybe_fail(self, operation: str):
        self.attempts.append(operation)
        remaining = self.failures.get(operation, 0)
        if remaining > 0:
            self.failures[operation] = remaining - 1
            raise ConnectionError(f"{operation} unavailable")

    async def fetch_completion_set(self, identity):
        self._maybe_fail("fetch_completion_set")
        return await super().fetch_completion_set(identity)

    async def upsert_completion(self, identity, node_id, completed_at=None, completion_count=1):
        self._maybe_fail("upsert_completion")
        await super().upsert_completion(identity, node_id, completed_at, completion_count)

    async def fetch_completion_counts(self, identity):
        self._maybe_fail("fetch_completion_counts")
        return await super().fetch_completion_counts(identity)

    async def fetch_routine_position(self, identity, routine_id):
        self._maybe_fail("fetch_routine_position")
        return await super().fetch_routine_position(identity, routine_id)

    async def upsert_routine_position(self, identity, routine_id, position, progress):
        self._maybe_fail("upsert_routine_position")
        await super().upsert_routine_position(identity, routine_id, position, progress)


@pytest.fixture
def catalog():
    return catalog_from_dict(CATALOG_DATA)


@pytest.fixture
def settings():
    return EngineSettings()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def retry_policy(recording_sleep):
    return RetryPolicy(max_attempts=2, delay_seconds=1.0, sleep=recording_sleep)


@pytest.fixture
def local_store():
    return MemoryKeyValueStore()


@pytest.fixture
def remote():
    return FlakyRemoteService()


@pytest.fixture
def tracker(local_store, remote, settings, retry_policy):
    return ProgressTracker(local_store, remote, "device-1", settings=settings, retry_policy=retry_policy)
