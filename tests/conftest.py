"""
Pytest fixtures and test configuration for fieldsync tests.
"""

from typing import Any, Dict, List, Optional

import pytest

from fieldsync.audit import AuditChain
from fieldsync.config import Settings
from fieldsync.core import FieldSync
from fieldsync.records import apply_local_edit
from fieldsync.security.encryption import EncryptionGate, generate_salt
from fieldsync.storage.layered import LayeredStore
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.queue import SyncQueue
from fieldsync.sync.transport import InMemoryTransport

# Low iteration count keeps key derivation fast in tests
TEST_ITERATIONS = 1000


class FakeTimer:
    """Stand-in for threading.Timer that only fires when told to."""

    def __init__(self, interval: float, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.function()


class TimerRecorder:
    """Timer factory that records every timer it creates."""

    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, interval, function):
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    def live(self, name: str) -> List[FakeTimer]:
        """Pending timers (started, not cancelled, not fired) whose callback is ``name``."""
        return [
            t
            for t in self.timers
            if t.started and not t.cancelled and not t.fired and t.function.__name__ == name
        ]


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def store(tmp_path):
    """A layered store rooted in a temporary directory."""
    return LayeredStore.open(tmp_path / "data")


@pytest.fixture
def queue(store):
    return SyncQueue(store.primary)


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def audit(store):
    return AuditChain(store)


@pytest.fixture
def gate():
    return EncryptionGate(generate_salt(), iterations=TEST_ITERATIONS)


@pytest.fixture
def engine(store, queue, transport, audit):
    """Sync engine for device dev-A with connectivity checked on every cycle."""
    return SyncEngine(
        store,
        queue,
        transport,
        device_id="dev-A",
        audit=audit,
        connectivity_ttl=0.0,
    )


@pytest.fixture
def local_write(store, queue):
    """Apply a local edit the way the application does and queue it."""

    def _write(
        table: str,
        values: Dict[str, Any],
        device_id: str = "dev-A",
        now: Optional[int] = None,
    ) -> Dict[str, Any]:
        existing = None
        if "id" in values:
            read = store.read_with_fallback(table, values["id"])
            existing = read.data if read.success else None
        record = apply_local_edit(existing, values, device_id, table, now=now)
        store.write_atomic(record, table, record["id"])
        queue.enqueue(table, record["id"], "create" if existing is None else "update")
        return record

    return _write


@pytest.fixture
def timers():
    return TimerRecorder()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(home=tmp_path, pbkdf2_iterations=TEST_ITERATIONS)


@pytest.fixture
def fs(settings, timers):
    """A FieldSync instance backed by an in-memory loopback backend."""
    instance = FieldSync(settings, transport=InMemoryTransport(), timer_factory=timers)
    instance.engine.connectivity_ttl = 0.0
    yield instance
    instance.close()
