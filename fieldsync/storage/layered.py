"""Layered store: one logical record store over three physical layers.

Writes go to the primary layer first and must succeed there; the backup
and blob layers are written best-effort. Reads fall back layer by layer
and heal the layers above the one that answered. Sync metadata (device
id, salt, checkpoint, audit head) is mirrored the same way under the
``sync_meta`` key space of the backup and blob layers.
"""

import contextlib
import logging
import threading
import weakref
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fieldsync.errors import RecordNotFound, StorageLayerUnavailable
from fieldsync.types import StorageReadResult, StorageStats, StorageWriteResult

from .backup import DEFAULT_MAX_BYTES, KeyValueBackupLayer
from .blob import BlobLayer
from .primary import SQLiteLayer

logger = logging.getLogger(__name__)

META_TABLE = "sync_meta"


class LayeredStore:
    """Primary (SQLite) -> backup (key-value file) -> blob (file per record).

    Args:
        primary: Transactional, indexed layer. Authoritative.
        backup: Small synchronous key-value layer.
        blob: Best-effort tertiary layer.
    """

    def __init__(self, primary: SQLiteLayer, backup: KeyValueBackupLayer, blob: BlobLayer):
        self.primary = primary
        self.backup = backup
        self.blob = blob
        # Entries vanish once no thread holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[Tuple[str, str], Any]" = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    @classmethod
    def open(cls, root: Path, backup_max_bytes: int = DEFAULT_MAX_BYTES) -> "LayeredStore":
        """Open (creating if needed) the three layers under ``root``."""
        root = Path(root)
        root.mkdir(parents=True, exist_ok=True)
        return cls(
            primary=SQLiteLayer(root / "fieldsync.db"),
            backup=KeyValueBackupLayer(root / "backup.json", max_bytes=backup_max_bytes),
            blob=BlobLayer(root / "blobs"),
        )

    @contextlib.contextmanager
    def record_lock(self, table_name: str, record_id: str):
        """Re-entrant critical section for one record."""
        key = (table_name, str(record_id))
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
        with lock:
            yield

    def write_atomic(
        self,
        record: Dict[str, Any],
        table_name: str,
        record_id: str,
        skip_backup: bool = False,
    ) -> StorageWriteResult:
        """Write a record to every layer.

        The primary write must succeed; nothing else is attempted if it
        fails. Backup and blob failures are reported in ``errors``.

        Raises:
            StorageLayerUnavailable: the primary layer rejected the write.
            RecordNotFound: ``table_name`` is not a known table.
        """
        record_id = str(record_id)
        with self.record_lock(table_name, record_id):
            self.primary.put(table_name, record_id, record)
            result = StorageWriteResult(success=True, layers_written=[self.primary.name])
            if skip_backup:
                return result
            for layer in (self.backup, self.blob):
                try:
                    layer.put(table_name, record_id, record)
                    result.layers_written.append(layer.name)
                except StorageLayerUnavailable as e:
                    logger.warning(f"Best-effort write to {layer.name} failed: {e}")
                    result.errors[layer.name] = str(e)
            return result

    def read_with_fallback(self, table_name: str, record_id: str) -> StorageReadResult:
        """Read from the first layer that has the record. Never raises."""
        record_id = str(record_id)
        errors: List[str] = []
        with self.record_lock(table_name, record_id):
            try:
                data = self.primary.get(table_name, record_id)
                if data is not None:
                    return StorageReadResult(success=True, data=data, source=self.primary.name)
            except RecordNotFound as e:
                return StorageReadResult(success=False, error=str(e))
            except StorageLayerUnavailable as e:
                errors.append(str(e))

            heal_targets = [self.primary]
            for layer in (self.backup, self.blob):
                try:
                    data = layer.get(table_name, record_id)
                except StorageLayerUnavailable as e:
                    errors.append(str(e))
                    data = None
                if data is not None:
                    self._heal(heal_targets, table_name, record_id, data)
                    logger.info(f"Recovered {table_name}/{record_id} from {layer.name} layer")
                    return StorageReadResult(success=True, data=data, source=layer.name)
                heal_targets.append(layer)

        message = "; ".join(errors) if errors else f"{table_name}/{record_id} not found in any layer"
        return StorageReadResult(success=False, error=message)

    def _heal(self, layers, table_name: str, record_id: str, data: Dict[str, Any]) -> None:
        for layer in layers:
            try:
                layer.put(table_name, record_id, data)
            except StorageLayerUnavailable as e:
                logger.warning(f"Could not restore {table_name}/{record_id} to {layer.name}: {e}")

    def query(
        self,
        table_name: str,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        **filters: Any,
    ) -> List[Dict[str, Any]]:
        """Equality query (single or compound) over the primary layer's indexes."""
        return self.primary.query(
            table_name, filters=filters, order_by=order_by, descending=descending, limit=limit
        )

    def list_ids(self, table_name: str) -> List[str]:
        return self.primary.list_ids(table_name)

    def delete(self, table_name: str, record_id: str) -> None:
        """Remove a record from every layer."""
        record_id = str(record_id)
        with self.record_lock(table_name, record_id):
            for layer in (self.primary, self.backup, self.blob):
                layer.delete(table_name, record_id)

    def get_storage_stats(self) -> StorageStats:
        return StorageStats(
            primary=self.primary.stats(),
            backup=self.backup.stats(),
            blob=self.blob.stats(),
        )

    def clear_backups(self) -> int:
        """Delete every backup and blob record copy.

        The primary layer and the metadata mirror are untouched.
        """
        keep = (META_TABLE,)
        removed = self.backup.clear(keep_tables=keep) + self.blob.clear(keep_tables=keep)
        logger.info(f"Cleared {removed} backup entries")
        return removed

    # === Metadata ===

    def get_meta(self, key: str) -> Optional[str]:
        """Read a metadata value, falling back to the mirrors if the primary lost it."""
        try:
            value = self.primary.get_meta(key)
            if value is not None:
                return value
        except StorageLayerUnavailable as e:
            logger.warning(f"Primary metadata read failed for {key}: {e}")
        for layer in (self.backup, self.blob):
            try:
                entry = layer.get(META_TABLE, key)
            except StorageLayerUnavailable as e:
                logger.warning(f"Metadata read from {layer.name} failed for {key}: {e}")
                continue
            if entry is not None and entry.get("value") is not None:
                logger.info(f"Recovered metadata {key} from {layer.name} layer")
                try:
                    self.primary.set_meta(key, entry["value"])
                except StorageLayerUnavailable as e:
                    logger.warning(f"Could not restore metadata {key} to primary: {e}")
                return entry["value"]
        return None

    def set_meta(self, key: str, value: Optional[str]) -> None:
        """Write a metadata value to the primary and mirror it best-effort."""
        self.primary.set_meta(key, value)
        for layer in (self.backup, self.blob):
            try:
                if value is None:
                    layer.delete(META_TABLE, key)
                else:
                    layer.put(META_TABLE, key, {"key": key, "value": value})
            except StorageLayerUnavailable as e:
                logger.warning(f"Could not mirror metadata {key} to {layer.name}: {e}")
