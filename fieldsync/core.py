"""
FieldSync: the offline-first data layer behind a field-operations app.

Wires the layered store, outbox, sync engine, scheduler, audit chain and
encryption gate together and exposes the operations the application
calls. Every local mutation:

1. applies local versioning (version vector, field versions, checksum)
2. encrypts sensitive fields
3. writes through the layered store under the record's lock
4. enqueues an outbox entry
5. appends an audit event for disbursements and payments
"""

import base64
import logging
from typing import Any, Callable, Dict, List, Optional

from fieldsync.audit import AuditChain
from fieldsync.config import Settings
from fieldsync.errors import EncryptionKeyNotInitialized, RecordNotFound
from fieldsync.records import apply_local_edit, require_checksum, verify_checksum
from fieldsync.security.encryption import EncryptionGate, generate_salt
from fieldsync.storage.layered import LayeredStore
from fieldsync.storage.schema import SYNCED_TABLES
from fieldsync.sync.engine import SyncEngine
from fieldsync.sync.queue import SyncQueue
from fieldsync.sync.scheduler import SyncScheduler
from fieldsync.sync.transport import (
    HttpTransport,
    IdentityProvider,
    StaticIdentityProvider,
    SyncTransport,
)
from fieldsync.types import (
    AuditEvent,
    ChainVerification,
    IntegrityIssue,
    IntegrityReport,
    QueueOperation,
    QueueStats,
    ReviewItem,
    StorageStats,
    SyncQueueEntry,
    SyncResult,
)
from fieldsync.utils import new_id

logger = logging.getLogger(__name__)

DEVICE_META_KEY = "device_id"
SALT_META_KEY = "encryption_salt"

# Local mutations on these tables are recorded in the audit chain
AUDITED_TABLES = frozenset({"creditos", "pagos"})

NO_BACKEND_MESSAGE = "No backend configured"


class FieldSync:
    """Offline-first record store with background sync.

    Args:
        settings: Resolved settings (default ``Settings.load()``).
        transport: Backend transport. Defaults to HttpTransport when a
            backend URL is configured; without one, sync is disabled.
        identity: Identity and credential source.
        timer_factory: Timer factory for the scheduler (tests inject a fake).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[SyncTransport] = None,
        identity: Optional[IdentityProvider] = None,
        timer_factory: Optional[Callable] = None,
    ):
        self.settings = settings or Settings.load()
        s = self.settings

        self.store = LayeredStore.open(s.data_dir, backup_max_bytes=s.backup_max_bytes)
        self.device_id = self._resolve_device_id()
        self.gate = EncryptionGate(self._resolve_salt(), iterations=s.pbkdf2_iterations)
        self.audit = AuditChain(self.store)
        self.queue = SyncQueue(
            self.store.primary,
            base_delay_ms=s.retry_base_delay_ms,
            multiplier=s.backoff_multiplier,
            max_delay_ms=s.max_backoff_ms,
            max_retries=s.max_retries,
        )
        self.identity = identity or StaticIdentityProvider(
            device_id=self.device_id, user_id=s.user_id, token=s.auth_token
        )
        if transport is None and s.backend_url:
            transport = HttpTransport(s.backend_url, self.identity, timeout=s.network_timeout)
        self.transport = transport

        self.engine: Optional[SyncEngine] = None
        self.scheduler: Optional[SyncScheduler] = None
        if transport is not None:
            self.engine = SyncEngine(
                self.store,
                self.queue,
                transport,
                device_id=self.device_id,
                audit=self.audit,
                gate=self.gate,
                batch_size=s.batch_size,
                breaker_threshold=s.breaker_threshold,
                connectivity_ttl=s.connectivity_ttl,
            )
            scheduler_kwargs = {}
            if timer_factory is not None:
                scheduler_kwargs["timer_factory"] = timer_factory
            self.scheduler = SyncScheduler(
                self.engine,
                inactivity_delay=s.inactivity_delay,
                periodic_interval=s.periodic_interval,
                min_interval=s.min_sync_interval,
                max_interval=s.max_sync_interval,
                startup_delay=s.startup_delay,
                **scheduler_kwargs,
            )
        else:
            logger.info("No backend configured; running local-only")

    def _resolve_device_id(self) -> str:
        stored = self.store.get_meta(DEVICE_META_KEY)
        device_id = self.settings.device_id or stored or new_id()
        if device_id != stored:
            self.store.set_meta(DEVICE_META_KEY, device_id)
        return device_id

    def _resolve_salt(self) -> bytes:
        stored = self.store.get_meta(SALT_META_KEY)
        if stored:
            return base64.b64decode(stored)
        salt = generate_salt()
        self.store.set_meta(SALT_META_KEY, base64.b64encode(salt).decode("ascii"))
        return salt

    def _actor(self, actor: Optional[str]) -> str:
        return actor or self.identity.user_id or f"device:{self.device_id}"

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in SYNCED_TABLES:
            raise RecordNotFound(table, message=f"Unknown table: {table}")

    # === Records ===

    def save_record(
        self, table: str, values: Dict[str, Any], actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create or update a record and queue it for sync.

        Returns:
            The stored record, with sensitive fields in plaintext.

        Raises:
            EncryptionKeyNotInitialized: the record holds sensitive values
                and no PIN has been supplied.
            ValueError: immutable field change or update of an append-only record.
            StorageLayerUnavailable: the primary layer rejected the write.
        """
        self._check_table(table)
        values = dict(values)
        record_id = str(values.setdefault("id", new_id()))

        with self.store.record_lock(table, record_id):
            read = self.store.read_with_fallback(table, record_id)
            existing = self.gate.open_record(read.data, table) if read.success else None
            record = apply_local_edit(existing, values, self.device_id, table)
            if existing is not None and record == existing:
                return record
            self.store.write_atomic(self.gate.seal(record, table), table, record_id)
            operation = QueueOperation.CREATE if existing is None else QueueOperation.UPDATE
            self.queue.enqueue(table, record_id, operation.value)

            if table in AUDITED_TABLES:
                changed = {
                    k: v
                    for k, v in record.items()
                    if k in values and (existing is None or existing.get(k) != v)
                }
                self.audit.append(
                    actor=self._actor(actor),
                    action=f"{table}.{operation.value}",
                    entity_type=table,
                    entity_id=record_id,
                    payload=changed,
                )
        logger.debug(f"Saved {table}/{record_id} ({operation.value})")
        return record

    def delete_record(self, table: str, record_id: str, actor: Optional[str] = None) -> None:
        """Tombstone a record (``deleted=True``) and queue the delete.

        Raises:
            RecordNotFound: no layer holds the record.
            ValueError: the table is append-only.
        """
        self._check_table(table)
        record_id = str(record_id)
        with self.store.record_lock(table, record_id):
            read = self.store.read_with_fallback(table, record_id)
            if not read.success:
                raise RecordNotFound(table, record_id)
            existing = self.gate.open_record(read.data, table)
            record = apply_local_edit(existing, {"deleted": True}, self.device_id, table)
            self.store.write_atomic(self.gate.seal(record, table), table, record_id)
            self.queue.enqueue(table, record_id, QueueOperation.DELETE.value)
            if table in AUDITED_TABLES:
                self.audit.append(
                    actor=self._actor(actor),
                    action=f"{table}.delete",
                    entity_type=table,
                    entity_id=record_id,
                )

    def get_record(self, table: str, record_id: str, decrypt: bool = True) -> Dict[str, Any]:
        """Read a record through the layer fallback chain.

        Raises:
            RecordNotFound: no layer holds the record.
            ChecksumMismatch: the stored record is corrupted.
            EncryptionKeyNotInitialized: encrypted record and no PIN.
        """
        self._check_table(table)
        read = self.store.read_with_fallback(table, str(record_id))
        if not read.success:
            raise RecordNotFound(table, str(record_id))
        if not decrypt:
            return read.data
        record = self.gate.open_record(read.data, table)
        require_checksum(record, table)
        return record

    def query(
        self, table: str, include_deleted: bool = False, **filters: Any
    ) -> List[Dict[str, Any]]:
        """Equality query over indexed columns; decrypts when the gate is open."""
        self._check_table(table)
        rows = self.store.query(table, **filters)
        if not include_deleted:
            rows = [r for r in rows if not r.get("deleted")]
        if self.gate.is_initialized():
            rows = [self.gate.open_record(r, table) for r in rows]
        return rows

    def verify_integrity(self, table: Optional[str] = None) -> IntegrityReport:
        """Recompute checksums of every primary-layer record. Reports, never repairs."""
        tables = [table] if table else sorted(SYNCED_TABLES)
        report = IntegrityReport()
        for name in tables:
            self._check_table(name)
            for record_id in self.store.list_ids(name):
                data = self.store.primary.get(name, record_id)
                if data is None:
                    continue
                try:
                    record = self.gate.open_record(data, name)
                except EncryptionKeyNotInitialized:
                    logger.debug(f"Skipping encrypted {name}/{record_id}; gate locked")
                    continue
                report.checked += 1
                if not record.get("checksum"):
                    report.issues.append(IntegrityIssue(name, record_id, "missing checksum"))
                elif not verify_checksum(record):
                    report.issues.append(IntegrityIssue(name, record_id, "checksum mismatch"))
        if report.issues:
            logger.warning(f"Integrity check found {len(report.issues)} issue(s)")
        return report

    # === Sync ===

    def sync(self, force: bool = False) -> SyncResult:
        if self.engine is None:
            return SyncResult(skipped=NO_BACKEND_MESSAGE)
        return self.engine.sync(force=force)

    def perform_sync(self) -> Dict[str, Any]:
        if self.engine is None:
            return {"success": False, "uploaded": 0, "downloaded": 0, "error": NO_BACKEND_MESSAGE}
        return self.engine.perform_sync()

    def handle_message(self, message: Dict[str, Any], reply: Optional[Callable] = None):
        if self.engine is None:
            payload = self.perform_sync()
            if reply is not None and (message or {}).get("type") == "PERFORM_SYNC":
                reply(payload)
            return payload
        return self.engine.handle_message(message, reply)

    def is_currently_syncing(self) -> bool:
        return self.engine is not None and self.engine.is_currently_syncing()

    def get_queue_size(self) -> int:
        return self.queue.get_queue_size()

    def get_queue_stats(self) -> QueueStats:
        return self.queue.get_stats()

    def get_failed_entries(self) -> List[SyncQueueEntry]:
        return self.queue.get_failed_entries()

    def requeue_failed(self, ids: Optional[List[int]] = None) -> int:
        return self.queue.requeue_failed(ids)

    def prune_synced(self, older_than_days: int = 7) -> int:
        return self.queue.prune_synced(older_than_days)

    def get_conflicts(self) -> List[ReviewItem]:
        return self.queue.get_conflicts()

    # === Storage ===

    def get_storage_stats(self) -> StorageStats:
        return self.store.get_storage_stats()

    def clear_backups(self) -> int:
        return self.store.clear_backups()

    # === Encryption ===

    def initialize_encryption(self, pin: str, actor: Optional[str] = None) -> None:
        self.gate.initialize_with_pin(pin)
        self.audit.append(
            actor=self._actor(actor),
            action="auth.unlock",
            entity_type="device",
            entity_id=self.device_id,
        )

    def clear_encryption(self, actor: Optional[str] = None) -> None:
        self.gate.clear_encryption_key()
        self.audit.append(
            actor=self._actor(actor),
            action="auth.lock",
            entity_type="device",
            entity_id=self.device_id,
        )

    # === Audit ===

    def append_audit(
        self,
        action: str,
        entity_type: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
        actor: Optional[str] = None,
    ) -> AuditEvent:
        return self.audit.append(self._actor(actor), action, entity_type, entity_id, payload)

    def verify_audit_chain(self) -> ChainVerification:
        return self.audit.verify_chain()

    # === Scheduling ===

    def start_scheduler(self) -> None:
        if self.scheduler is not None:
            self.scheduler.start()

    def stop_scheduler(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()

    def record_activity(self) -> None:
        if self.scheduler is not None:
            self.scheduler.record_activity()

    def on_connectivity_change(self, online: bool) -> Optional[SyncResult]:
        if self.scheduler is None:
            return None
        return self.scheduler.on_connectivity_change(online)

    def close(self) -> None:
        self.stop_scheduler()
        self.gate.clear_encryption_key()
        if isinstance(self.transport, HttpTransport):
            self.transport.close()
