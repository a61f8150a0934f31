"""
Pytest configuration and fixtures for tracklink tests.
"""
import asyncio
import os
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from tracklink.config import Settings
from tracklink.errors import SensorUnavailable
from tracklink.models import DeliveryOutcome, RequestDescriptor
from tracklink.services.queue import SqliteRequestQueue

# Keep developer environment out of the settings under test
for _key in list(os.environ):
    if _key.startswith("TRACKLINK_"):
        del os.environ[_key]


class FakeTransport:
    """
    Scriptable transport.

    outcomes: consumed in order; when exhausted, `default` is returned.
    gate: when set, every send waits for the event before completing.
    """

    def __init__(self, outcomes: Optional[List[DeliveryOutcome]] = None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default or DeliveryOutcome.success(200)
        self.sent: List[str] = []
        self.completed: List[str] = []
        self.outstanding = 0
        self.max_outstanding = 0
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    async def send(self, descriptor: RequestDescriptor) -> DeliveryOutcome:
        self.sent.append(descriptor.url)
        self.outstanding += 1
        self.max_outstanding = max(self.max_outstanding, self.outstanding)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            return self.outcomes.pop(0) if self.outcomes else self.default
        finally:
            self.outstanding -= 1
            self.completed.append(descriptor.url)

    async def close(self) -> None:
        self.closed = True


class FakeFixFeed:
    """In-memory fix feed fed with push()."""

    def __init__(self, unavailable: bool = False):
        self.unavailable = unavailable
        self._fixes: asyncio.Queue = asyncio.Queue()
        self.opened = False
        self.closed = False
        self.open_count = 0

    def push(self, **fix) -> None:
        self._fixes.put_nowait(fix)

    async def open(self) -> None:
        if self.unavailable:
            raise SensorUnavailable("Location permission denied")
        self.opened = True
        self.closed = False
        self.open_count += 1

    async def receive(self, timeout_s: float) -> Optional[Dict]:
        try:
            return await asyncio.wait_for(self._fixes.get(), timeout=timeout_s)
        except asyncio.TimeoutError:
            return None

    async def close(self) -> None:
        self.closed = True


class RecordingObserver:
    """PositionObserver that keeps everything it receives."""

    def __init__(self):
        self.samples = []
        self.errors = []

    async def on_position(self, sample) -> None:
        self.samples.append(sample)

    def on_error(self, error: Exception) -> None:
        self.errors.append(error)


async def _wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    """Poll a predicate until it is true or the timeout expires."""
    return _wait_until


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "queue.db")


@pytest_asyncio.fixture
async def queue(db_path):
    """Initialized SQLite queue in a temp directory."""
    q = SqliteRequestQueue(db_path)
    await q.initialize()
    yield q
    await q.close()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def settings(db_path) -> Settings:
    """Fast-retry settings pointing at example.com."""
    return Settings(
        device_id="123456",
        server_url="https://example.com/report",
        interval_s=30,
        distance_m=0,
        retry_base_s=0.01,
        retry_max_s=0.08,
        idle_poll_s=0.05,
        queue_db_path=db_path,
    )
