"""Sync engine: drain the outbox, pull remote deltas, merge.

One cycle runs ``DRAINING -> PULLING -> MERGING -> IDLE``. Only one cycle
runs at a time; a caller arriving mid-cycle waits for it and shares its
result. Repeated network or storage failures open a circuit breaker (``PAUSED``)
that only a successful forced cycle closes.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from fieldsync.audit import AuditChain
from fieldsync.errors import (
    ChecksumMismatch,
    EncryptionKeyNotInitialized,
    RetryBudgetExhausted,
    StorageLayerUnavailable,
    SyncAuthorizationError,
    SyncNetworkError,
)
from fieldsync.records import stamp, verify_checksum
from fieldsync.security.encryption import EncryptionGate
from fieldsync.storage.layered import LayeredStore
from fieldsync.storage.schema import SYNCED_TABLES
from fieldsync.types import (
    SYNC_DEAD_LETTER,
    MergeStrategy,
    QueueOperation,
    SyncQueueEntry,
    SyncResult,
    SyncState,
)
from fieldsync.utils import now_ms

from .conflicts import ConflictResolver
from .queue import SyncQueue
from .transport import RemoteChange, SyncOperation, SyncTransport

logger = logging.getLogger(__name__)

CHECKPOINT_META_KEY = "sync_checkpoint"
LAST_SYNC_META_KEY = "last_sync_at"

# Remote changes to these tables are recorded in the audit chain
AUDITED_TABLES = frozenset({"creditos", "pagos"})

PERFORM_SYNC = "PERFORM_SYNC"
BACKGROUND_SYNC = "BACKGROUND_SYNC"

OFFLINE_MESSAGE = "Offline - changes queued"


class SyncEngine:
    """Moves changes between the local layered store and the backend.

    Args:
        store: Local layered store.
        queue: Outbox of local mutations.
        transport: Backend transport.
        device_id: This installation's device identifier.
        resolver: Conflict resolver (default ConflictResolver()).
        audit: Audit chain for remote changes to audited tables.
        gate: Encryption gate for sensitive fields at rest.
    """

    def __init__(
        self,
        store: LayeredStore,
        queue: SyncQueue,
        transport: SyncTransport,
        device_id: str,
        resolver: Optional[ConflictResolver] = None,
        audit: Optional[AuditChain] = None,
        gate: Optional[EncryptionGate] = None,
        batch_size: int = 50,
        breaker_threshold: int = 5,
        connectivity_ttl: float = 30.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.queue = queue
        self.transport = transport
        self.device_id = device_id
        self.resolver = resolver or ConflictResolver()
        self.audit = audit
        self.gate = gate
        self.batch_size = batch_size
        self.breaker_threshold = breaker_threshold
        self.connectivity_ttl = connectivity_ttl
        self._clock = clock

        self._state = SyncState.IDLE
        self._cond = threading.Condition()
        self._in_flight = False
        self._generation = 0
        self._last_result: Optional[SyncResult] = None
        self._consecutive_failures = 0

        self._online_cache: Optional[bool] = None
        self._last_connectivity_check: Optional[float] = None

    # === State ===

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    @property
    def last_sync_at(self) -> Optional[int]:
        value = self.store.get_meta(LAST_SYNC_META_KEY)
        return int(value) if value else None

    def is_currently_syncing(self) -> bool:
        return self._in_flight

    def get_queue_size(self) -> int:
        return self.queue.get_queue_size()

    def _set_state(self, state: SyncState) -> None:
        if self._state != state:
            logger.debug(f"Sync state {self._state.value} -> {state.value}")
        self._state = state

    # === Connectivity ===

    def is_online(self) -> bool:
        """Check the backend is reachable, caching the answer for ``connectivity_ttl`` seconds."""
        now = time.monotonic()
        if (
            self._online_cache is not None
            and self._last_connectivity_check is not None
            and now - self._last_connectivity_check < self.connectivity_ttl
        ):
            return self._online_cache
        try:
            online = bool(self.transport.ping())
        except SyncNetworkError as e:
            logger.debug(f"Connectivity check failed: {e}")
            online = False
        self._online_cache = online
        self._last_connectivity_check = now
        return online

    def notify_connectivity(self, online: bool) -> None:
        """Record a connectivity change reported by the platform."""
        self._online_cache = online
        self._last_connectivity_check = time.monotonic()

    # === Cycle ===

    def sync(self, force: bool = False) -> SyncResult:
        """Run one sync cycle (or join the one already running).

        Args:
            force: Run even while the circuit breaker is open. A successful
                forced cycle closes the breaker.
        """
        with self._cond:
            if self._in_flight:
                generation = self._generation
                logger.debug("Sync already in progress; waiting for it")
                while self._in_flight and self._generation == generation:
                    self._cond.wait()
                return self._last_result
            if self._state == SyncState.PAUSED and not force:
                logger.info("Sync paused after repeated failures; skipping automatic cycle")
                return SyncResult(skipped="paused", timestamp=self._clock())
            self._in_flight = True

        result = SyncResult(timestamp=self._clock())
        try:
            self._run_cycle(result)
        finally:
            with self._cond:
                self._in_flight = False
                self._generation += 1
                self._last_result = result
                self._cond.notify_all()
        return result

    def _run_cycle(self, result: SyncResult) -> None:
        paused = self._state == SyncState.PAUSED
        if not self.is_online():
            result.skipped = OFFLINE_MESSAGE
            logger.info(f"Sync skipped: {OFFLINE_MESSAGE} ({self.get_queue_size()} pending)")
            return

        failed = False
        try:
            self._set_state(SyncState.DRAINING)
            self._drain(result)
            self._set_state(SyncState.PULLING)
            self._pull(result)
        except SyncAuthorizationError as e:
            failed = True
            result.errors.append(f"Authorization failed: {e}")
        except SyncNetworkError as e:
            failed = True
            result.errors.append(str(e))
            self._online_cache = None
        except (StorageLayerUnavailable, ChecksumMismatch) as e:
            failed = True
            logger.error(f"Sync cycle stopped by local storage failure: {e}")
            result.errors.append(f"Storage failure: {e}")
        except EncryptionKeyNotInitialized as e:
            result.errors.append(str(e))
        except Exception as e:
            failed = True
            logger.error(f"Sync cycle failed unexpectedly: {e}", exc_info=True)
            result.errors.append(f"Unexpected error: {e}")
            raise
        finally:
            self._update_breaker(failed, paused)

        if not failed:
            self.store.set_meta(LAST_SYNC_META_KEY, str(result.timestamp))
        logger.info(
            f"Sync complete: uploaded={result.uploaded}, downloaded={result.downloaded}, "
            f"merged={result.merged}, review={len(result.review)}, errors={len(result.errors)}"
        )

    def _update_breaker(self, failed: bool, was_paused: bool) -> None:
        if failed:
            self._consecutive_failures += 1
            if was_paused or self._consecutive_failures >= self.breaker_threshold:
                if not was_paused:
                    logger.warning(
                        f"Pausing sync after {self._consecutive_failures} consecutive failed cycles"
                    )
                self._set_state(SyncState.PAUSED)
                return
        else:
            if was_paused:
                logger.info("Forced sync succeeded; resuming automatic sync")
            self._consecutive_failures = 0
        self._set_state(SyncState.IDLE)

    # === Draining ===

    def _drain(self, result: SyncResult) -> None:
        attempted = set()
        while True:
            due = self.queue.get_due_entries(self._clock(), limit=self.batch_size)
            entries = [e for e in due if e.id not in attempted]
            if not entries:
                return
            attempted.update(e.id for e in entries)

            operations: List[SyncOperation] = []
            uploaded: Dict[int, Optional[str]] = {}
            for entry in entries:
                op, checksum = self._build_operation(entry)
                operations.append(op)
                uploaded[entry.id] = checksum

            try:
                response = self.transport.upload(operations)
            except SyncNetworkError as e:
                logger.warning(f"Upload of {len(entries)} entries failed: {e}")
                for entry in entries:
                    self._fail(entry, str(e), result, report=False)
                raise

            acks = {ack.entry_id: ack for ack in response.acks}
            accepted = []
            for entry in entries:
                ack = acks.get(entry.id)
                if ack is not None and ack.accepted:
                    accepted.append(entry)
                else:
                    reason = (ack.error if ack is not None else None) or "not acknowledged"
                    self._fail(entry, reason, result)

            marked = self.queue.mark_synced(
                [e.id for e in accepted], revisions={e.id: e.revision for e in accepted}
            )
            result.uploaded += marked
            for entry in accepted:
                self._mark_record_synced(entry.table, entry.record_id, uploaded[entry.id])

    def _build_operation(self, entry: SyncQueueEntry):
        read = self.store.read_with_fallback(entry.table, entry.record_id)
        if not read.success:
            logger.debug(f"{entry.table}/{entry.record_id} no longer stored; sending delete")
            op = SyncOperation(
                entry_id=entry.id,
                operation=QueueOperation.DELETE.value,
                table=entry.table,
                record_id=entry.record_id,
                data=None,
                queued_at=entry.queued_at,
            )
            return op, None
        record = self._open(entry.table, read.data)
        op = SyncOperation(
            entry_id=entry.id,
            operation=entry.operation,
            table=entry.table,
            record_id=entry.record_id,
            data=record,
            queued_at=entry.queued_at,
        )
        return op, record.get("checksum")

    def _fail(
        self, entry: SyncQueueEntry, error: str, result: SyncResult, report: bool = True
    ) -> None:
        """Record a failed attempt; ``report`` adds a per-entry error to the result."""
        updated = self.queue.record_failure(entry.id, error, self._clock())
        if updated is not None and updated.state == SYNC_DEAD_LETTER:
            exhausted = RetryBudgetExhausted(
                entry.id, entry.table, entry.record_id, updated.retry_count
            )
            result.exhausted.append(entry.id)
            result.errors.append(str(exhausted))
        elif report:
            result.errors.append(f"{entry.table}/{entry.record_id}: {error}")

    def _mark_record_synced(self, table: str, record_id: str, checksum: Optional[str]) -> None:
        with self.store.record_lock(table, record_id):
            read = self.store.read_with_fallback(table, record_id)
            if not read.success or read.data.get("checksum") != checksum:
                return
            if read.data.get("synced"):
                return
            record = dict(read.data)
            record["synced"] = True
            self.store.write_atomic(record, table, record_id)

    # === Pulling and merging ===

    def _pull(self, result: SyncResult) -> None:
        since = self.store.get_meta(CHECKPOINT_META_KEY)
        while True:
            page = self.transport.pull_changes(since, limit=self.batch_size)
            self._set_state(SyncState.MERGING)
            for change in page.changes:
                self._apply_remote(change, result)
            if page.checkpoint:
                since = page.checkpoint
            if not page.has_more:
                break
            self._set_state(SyncState.PULLING)
        if since:
            self.store.set_meta(CHECKPOINT_META_KEY, since)

    def _apply_remote(self, change: RemoteChange, result: SyncResult) -> None:
        table = change.table
        if table not in SYNCED_TABLES:
            logger.warning(f"Ignoring remote change for unknown table {table}")
            return
        record_id = change.record_id
        remote = dict(change.data)
        remote.setdefault("id", record_id)
        if not remote.get("checksum"):
            stamp(remote)

        with self.store.record_lock(table, record_id):
            read = self.store.read_with_fallback(table, record_id)
            if not read.success:
                if not verify_checksum(remote):
                    self._park_for_review(
                        table, record_id, None, remote, "remote checksum mismatch", [], result
                    )
                    return
                self._write_remote(table, record_id, remote)
                result.downloaded += 1
                self._audit_remote(table, record_id, "sync.remote_applied", remote)
                return

            local = self._open(table, read.data)
            merge = self.resolver.merge(local, remote, table)

            if merge.requires_review:
                self._park_for_review(
                    table,
                    record_id,
                    local,
                    remote,
                    merge.review_reason or "unresolvable",
                    merge.conflicting_fields,
                    result,
                )
                return

            if merge.strategy == MergeStrategy.REMOTE_WINS:
                self._write_remote(table, record_id, remote)
                self.queue.drop_pending(table, record_id)
                result.downloaded += 1
                self._audit_remote(table, record_id, "sync.remote_applied", remote)
            elif merge.strategy == MergeStrategy.MERGED:
                self.store.write_atomic(self._seal(table, merge.record), table, record_id)
                self.queue.enqueue(table, record_id, QueueOperation.UPDATE.value)
                result.merged += 1
                result.conflicts += 1
                self._audit_remote(
                    table, record_id, "sync.merged", {"fields": merge.merged_fields}
                )

    def _park_for_review(
        self,
        table: str,
        record_id: str,
        local: Optional[Dict[str, Any]],
        remote: Dict[str, Any],
        reason: str,
        fields: List[str],
        result: SyncResult,
    ) -> None:
        """Save an unresolvable conflict; neither side is written."""
        self.queue.save_conflict(table, record_id, local, remote, reason, fields)
        result.conflicts += 1
        result.review.append(f"{table}/{record_id}")
        self._audit_remote(table, record_id, "sync.review", {"reason": reason, "fields": fields})

    def _write_remote(self, table: str, record_id: str, remote: Dict[str, Any]) -> None:
        record = dict(remote)
        record["synced"] = True
        self.store.write_atomic(self._seal(table, record), table, record_id)

    def _audit_remote(self, table: str, record_id: str, action: str, payload: Dict[str, Any]):
        if self.audit is None or table not in AUDITED_TABLES:
            return
        self.audit.append(
            actor=f"device:{self.device_id}",
            action=action,
            entity_type=table,
            entity_id=record_id,
            payload=payload,
        )

    # === Encryption boundary ===

    def _open(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        return record if self.gate is None else self.gate.open_record(record, table)

    def _seal(self, table: str, record: Dict[str, Any]) -> Dict[str, Any]:
        return record if self.gate is None else self.gate.seal(record, table)

    # === Message channel ===

    def perform_sync(self, force: bool = True) -> Dict[str, Any]:
        """Run a cycle and return a plain summary for message replies."""
        result = self.sync(force=force)
        error = None
        if result.skipped:
            error = result.skipped
        elif result.errors:
            error = "; ".join(result.errors)
        return {
            "success": result.success,
            "uploaded": result.uploaded,
            "downloaded": result.downloaded,
            "error": error,
        }

    def handle_message(
        self, message: Dict[str, Any], reply: Optional[Callable[[Dict[str, Any]], None]] = None
    ) -> Optional[Dict[str, Any]]:
        """Handle a ``PERFORM_SYNC`` or ``BACKGROUND_SYNC`` message.

        ``PERFORM_SYNC`` replies through ``reply`` with
        ``{success, uploaded, downloaded, error}``. ``BACKGROUND_SYNC`` runs
        an automatic cycle without replying.
        """
        kind = (message or {}).get("type")
        if kind == PERFORM_SYNC:
            payload = self.perform_sync()
            if reply is not None:
                reply(payload)
            return payload
        if kind == BACKGROUND_SYNC:
            self.sync()
            return None
        logger.warning(f"Ignoring unknown sync message type: {kind!r}")
        return None
