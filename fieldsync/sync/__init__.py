"""Synchronization: outbox, conflict resolution, transport, engine, scheduler."""

from fieldsync.sync.conflicts import ConflictResolver
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.queue import SyncQueue
from fieldsync.sync.scheduler import SyncScheduler
from fieldsync.sync.transport import (
    HttpTransport,
    IdentityProvider,
    InMemoryTransport,
    StaticIdentityProvider,
    SyncTransport,
)

__all__ = [
    "ConflictResolver",
    "HttpTransport",
    "IdentityProvider",
    "InMemoryTransport",
    "StaticIdentityProvider",
    "SyncEngine",
    "SyncQueue",
    "SyncScheduler",
    "SyncTransport",
]
