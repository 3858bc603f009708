"""Outbox of local mutations awaiting upload.

Stored in the primary layer's ``sync_queue`` table. At most one pending
entry exists per record; later mutations fold into it and keep its place
in line. Entries drain by priority, then FIFO.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from fieldsync.errors import StorageLayerUnavailable
from fieldsync.storage.primary import SQLiteLayer
from fieldsync.storage.schema import validate_table_name
from fieldsync.types import (
    SYNC_COMPLETED,
    SYNC_DEAD_LETTER,
    SYNC_PENDING,
    QueueOperation,
    QueueStats,
    ReviewItem,
    SyncQueueEntry,
)
from fieldsync.utils import new_id, now_ms

logger = logging.getLogger(__name__)

# Lower drains first: payments, then credits/installments, then clients
TABLE_PRIORITY: Dict[str, int] = {
    "pagos": 1,
    "creditos": 2,
    "cuotas": 2,
    "clientes": 3,
}
DEFAULT_PRIORITY = 4

DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MULTIPLIER = 2
DEFAULT_MAX_DELAY_MS = 5 * 60 * 1000
DEFAULT_MAX_RETRIES = 10


def priority_for(table: str) -> int:
    return TABLE_PRIORITY.get(table, DEFAULT_PRIORITY)


def backoff_delay_ms(
    retry_count: int,
    base_ms: int = DEFAULT_BASE_DELAY_MS,
    multiplier: int = DEFAULT_MULTIPLIER,
    cap_ms: int = DEFAULT_MAX_DELAY_MS,
) -> int:
    """Delay before attempt ``retry_count + 1``: base * multiplier^(n-1), capped."""
    if retry_count <= 0:
        return 0
    return min(base_ms * multiplier ** (retry_count - 1), cap_ms)


def fold_operation(pending: str, incoming: str) -> str:
    """Combine a pending operation with a newer one on the same record."""
    if incoming == QueueOperation.DELETE.value:
        return QueueOperation.DELETE.value
    if pending == QueueOperation.CREATE.value:
        return QueueOperation.CREATE.value
    return incoming


class SyncQueue:
    """Priority/FIFO outbox with capped exponential backoff.

    Args:
        primary: The primary layer whose database holds ``sync_queue``.
    """

    def __init__(
        self,
        primary: SQLiteLayer,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        multiplier: int = DEFAULT_MULTIPLIER,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self._primary = primary
        self.base_delay_ms = base_delay_ms
        self.multiplier = multiplier
        self.max_delay_ms = max_delay_ms
        self.max_retries = max_retries

    def _connect(self):
        return self._primary._connect()

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> SyncQueueEntry:
        return SyncQueueEntry(
            id=row["id"],
            table=row["table_name"],
            record_id=row["record_id"],
            operation=row["operation"],
            priority=row["priority"],
            queued_at=row["queued_at"],
            retry_count=row["retry_count"],
            next_retry_at=row["next_retry_at"],
            state=row["synced"],
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
            revision=row["revision"],
        )

    # === Queue Operations ===

    def enqueue(
        self,
        table: str,
        record_id: str,
        operation: str,
        priority: Optional[int] = None,
        now: Optional[int] = None,
    ) -> int:
        """Queue (or fold into the pending entry for) a record mutation."""
        validate_table_name(table)
        operation = QueueOperation(operation).value
        priority = priority if priority is not None else priority_for(table)
        now = now if now is not None else now_ms()
        try:
            with self._connect() as conn:
                existing = conn.execute(
                    "SELECT id, operation FROM sync_queue "
                    "WHERE table_name = ? AND record_id = ? AND synced = ?",
                    (table, record_id, SYNC_PENDING),
                ).fetchone()
                if existing:
                    folded = fold_operation(existing["operation"], operation)
                    conn.execute(
                        "UPDATE sync_queue SET operation = ?, priority = MIN(priority, ?), "
                        "revision = revision + 1 WHERE id = ?",
                        (folded, priority, existing["id"]),
                    )
                    return existing["id"]
                cursor = conn.execute(
                    """INSERT INTO sync_queue
                       (table_name, record_id, operation, priority, queued_at, synced)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (table, record_id, operation, priority, now, SYNC_PENDING),
                )
                return cursor.lastrowid or 0
        except sqlite3.Error as e:
            raise StorageLayerUnavailable("primary", f"enqueue {table}/{record_id}: {e}") from e

    def get_due_entries(self, now: Optional[int] = None, limit: int = 50) -> List[SyncQueueEntry]:
        """Pending entries ready for an attempt, by priority then age."""
        now = now if now is not None else now_ms()
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_queue
                   WHERE synced = ? AND (next_retry_at IS NULL OR next_retry_at <= ?)
                   ORDER BY priority ASC, queued_at ASC, id ASC
                   LIMIT ?""",
                (SYNC_PENDING, now, limit),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_pending_entries(self, limit: int = 100) -> List[SyncQueueEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_queue WHERE synced = ?
                   ORDER BY priority ASC, queued_at ASC, id ASC LIMIT ?""",
                (SYNC_PENDING, limit),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_entry(self, entry_id: int) -> Optional[SyncQueueEntry]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def mark_synced(
        self,
        ids: List[int],
        revisions: Optional[Dict[int, int]] = None,
        now: Optional[int] = None,
    ) -> int:
        """Mark entries as acknowledged by the backend.

        With ``revisions``, an entry is only marked when its revision still
        matches, so a mutation folded in during the upload stays pending.
        """
        if not ids:
            return 0
        now = now if now is not None else now_ms()
        with self._connect() as conn:
            if revisions is None:
                placeholders = ",".join("?" * len(ids))
                cursor = conn.execute(
                    f"UPDATE sync_queue SET synced = ?, synced_at = ?, last_error = NULL "
                    f"WHERE id IN ({placeholders}) AND synced = ?",
                    (SYNC_COMPLETED, now, *ids, SYNC_PENDING),
                )
                return cursor.rowcount
            count = 0
            for entry_id in ids:
                cursor = conn.execute(
                    "UPDATE sync_queue SET synced = ?, synced_at = ?, last_error = NULL "
                    "WHERE id = ? AND synced = ? AND revision = ?",
                    (SYNC_COMPLETED, now, entry_id, SYNC_PENDING, revisions.get(entry_id, 0)),
                )
                count += cursor.rowcount
            return count

    def record_failure(
        self, entry_id: int, error: str, now: Optional[int] = None
    ) -> Optional[SyncQueueEntry]:
        """Record a failed attempt and schedule the next one.

        The entry moves to dead letter once ``retry_count`` reaches
        ``max_retries``; the caller reports that as RetryBudgetExhausted.
        """
        now = now if now is not None else now_ms()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE id = ? AND synced = ?",
                (entry_id, SYNC_PENDING),
            ).fetchone()
            if row is None:
                return None
            retry_count = row["retry_count"] + 1
            if retry_count >= self.max_retries:
                state = SYNC_DEAD_LETTER
                next_retry_at = None
            else:
                state = SYNC_PENDING
                next_retry_at = now + backoff_delay_ms(
                    retry_count, self.base_delay_ms, self.multiplier, self.max_delay_ms
                )
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = ?, next_retry_at = ?, synced = ?,
                       last_error = ?, last_attempt_at = ?
                   WHERE id = ?""",
                (retry_count, next_retry_at, state, error[:500], now, entry_id),
            )
            updated = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
        entry = self._row_to_entry(updated)
        if entry.state == SYNC_DEAD_LETTER:
            logger.error(
                f"Outbox entry {entry_id} ({entry.table}/{entry.record_id}) "
                f"exhausted {retry_count} attempts: {error[:200]}"
            )
        else:
            logger.debug(f"Outbox entry {entry_id} failed (attempt {retry_count}): {error[:200]}")
        return entry

    def drop_pending(self, table: str, record_id: str) -> int:
        """Discard the pending entry for a record superseded by the remote."""
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_queue WHERE table_name = ? AND record_id = ? AND synced = ?",
                (table, record_id, SYNC_PENDING),
            )
            return cursor.rowcount

    def has_pending(self, table: str, record_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM sync_queue WHERE table_name = ? AND record_id = ? AND synced = ?",
                (table, record_id, SYNC_PENDING),
            ).fetchone()
        return row is not None

    def get_queue_size(self) -> int:
        """Count of pending entries."""
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE synced = ?", (SYNC_PENDING,)
            ).fetchone()[0]

    def get_stats(self) -> QueueStats:
        with self._connect() as conn:
            counts = {
                row["synced"]: row["n"]
                for row in conn.execute(
                    "SELECT synced, COUNT(*) AS n FROM sync_queue GROUP BY synced"
                ).fetchall()
            }
            oldest = conn.execute(
                "SELECT MIN(queued_at) FROM sync_queue WHERE synced = ?", (SYNC_PENDING,)
            ).fetchone()[0]
            by_table = {
                row["table_name"]: row["n"]
                for row in conn.execute(
                    "SELECT table_name, COUNT(*) AS n FROM sync_queue WHERE synced = ? "
                    "GROUP BY table_name",
                    (SYNC_PENDING,),
                ).fetchall()
            }
        pending = counts.get(SYNC_PENDING, 0)
        synced = counts.get(SYNC_COMPLETED, 0)
        failed = counts.get(SYNC_DEAD_LETTER, 0)
        return QueueStats(
            total=pending + synced + failed,
            pending=pending,
            synced=synced,
            failed=failed,
            oldest_pending=oldest,
            by_table=by_table,
        )

    def get_failed_entries(self, limit: int = 100) -> List[SyncQueueEntry]:
        """Dead-lettered entries, most recent attempt first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue WHERE synced = ? "
                "ORDER BY last_attempt_at DESC LIMIT ?",
                (SYNC_DEAD_LETTER, limit),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def requeue_failed(self, ids: Optional[List[int]] = None) -> int:
        """Give dead-lettered entries a fresh retry budget.

        A dead-lettered entry is skipped when a newer pending entry for
        the same record already exists.
        """
        with self._connect() as conn:
            sql = (
                "UPDATE sync_queue SET synced = ?, retry_count = 0, next_retry_at = NULL, "
                "last_error = NULL WHERE synced = ? AND NOT EXISTS ("
                "SELECT 1 FROM sync_queue AS p WHERE p.synced = ? "
                "AND p.table_name = sync_queue.table_name AND p.record_id = sync_queue.record_id)"
            )
            params: List[Any] = [SYNC_PENDING, SYNC_DEAD_LETTER, SYNC_PENDING]
            if ids:
                sql += f" AND id IN ({','.join('?' * len(ids))})"
                params.extend(ids)
            cursor = conn.execute(sql, params)
            count = cursor.rowcount
        if count:
            logger.info(f"Requeued {count} dead-lettered outbox entries")
        return count

    def prune_synced(self, older_than_days: int = 7, now: Optional[int] = None) -> int:
        """Delete acknowledged entries older than the given age."""
        now = now if now is not None else now_ms()
        cutoff = now - older_than_days * 24 * 60 * 60 * 1000
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_queue WHERE synced = ? AND COALESCE(synced_at, queued_at) < ?",
                (SYNC_COMPLETED, cutoff),
            )
            return cursor.rowcount

    # === Conflicts awaiting review ===

    def save_conflict(
        self,
        table: str,
        record_id: str,
        local_version: Optional[Dict[str, Any]],
        remote_version: Optional[Dict[str, Any]],
        reason: str,
        fields: Optional[List[str]] = None,
    ) -> str:
        conflict_id = new_id()
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sync_conflicts
                   (id, table_name, record_id, local_version, remote_version,
                    reason, fields, detected_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict_id,
                    table,
                    record_id,
                    json.dumps(local_version, default=str) if local_version is not None else None,
                    json.dumps(remote_version, default=str) if remote_version is not None else None,
                    reason,
                    json.dumps(fields or []),
                    now_ms(),
                ),
            )
        return conflict_id

    def get_conflicts(self, limit: int = 100) -> List[ReviewItem]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_conflicts ORDER BY detected_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            ReviewItem(
                id=row["id"],
                table=row["table_name"],
                record_id=row["record_id"],
                local_version=json.loads(row["local_version"]) if row["local_version"] else None,
                remote_version=json.loads(row["remote_version"]) if row["remote_version"] else None,
                reason=row["reason"],
                detected_at=row["detected_at"],
                fields=json.loads(row["fields"]) if row["fields"] else [],
            )
            for row in rows
        ]

    def clear_conflicts(self, ids: Optional[List[str]] = None) -> int:
        with self._connect() as conn:
            if ids:
                cursor = conn.execute(
                    f"DELETE FROM sync_conflicts WHERE id IN ({','.join('?' * len(ids))})", ids
                )
            else:
                cursor = conn.execute("DELETE FROM sync_conflicts")
            return cursor.rowcount
