"""Layer 2: synchronous key-value backup in a single JSON file.

Entries are stored as ``{"<table>:<id>": {"data", "timestamp", "version"}}``.
The file has a byte capacity; when a write would overflow it, the oldest
quarter of the entries is evicted and the write retried once.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from fieldsync.errors import StorageLayerUnavailable
from fieldsync.types import LayerStats
from fieldsync.utils import now_ms

logger = logging.getLogger(__name__)

LAYER_NAME = "backup"
ENVELOPE_VERSION = 1
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
PRUNE_FRACTION = 0.25


def backup_key(table: str, record_id: str) -> str:
    return f"{table}:{record_id}"


class KeyValueBackupLayer:
    """Small-capacity backup layer.

    The whole store is held in memory and rewritten atomically (temp file
    plus ``os.replace``) on every mutation.
    """

    name = LAYER_NAME

    def __init__(self, path: Path, max_bytes: int = DEFAULT_MAX_BYTES):
        self.path = Path(path)
        self.max_bytes = max_bytes
        self._lock = threading.Lock()
        self._entries: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            if isinstance(data, dict):
                return data
            logger.warning(f"Ignoring malformed backup file {self.path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not load backup file {self.path}: {e}")
        return {}

    def _serialize(self, entries: Dict[str, Dict[str, Any]]) -> str:
        return json.dumps(entries, default=str, separators=(",", ":"))

    def _persist(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp, self.path)
        try:
            os.chmod(self.path, 0o600)
        except OSError as e:
            logger.debug(f"Could not set permissions on {self.path}: {e}")

    def _prune_oldest(self, entries: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        ordered = sorted(entries.items(), key=lambda kv: kv[1].get("timestamp", 0))
        drop = max(1, int(len(ordered) * PRUNE_FRACTION))
        logger.info(f"Backup layer over capacity; evicting {drop} oldest entries")
        return dict(ordered[drop:])

    def put(self, table: str, record_id: str, record: Dict[str, Any]) -> None:
        key = backup_key(table, record_id)
        envelope = {"data": record, "timestamp": now_ms(), "version": ENVELOPE_VERSION}
        with self._lock:
            entries = dict(self._entries)
            entries[key] = envelope
            payload = self._serialize(entries)
            if len(payload.encode("utf-8")) > self.max_bytes:
                others = {k: v for k, v in entries.items() if k != key}
                entries = self._prune_oldest(others) if others else {}
                entries[key] = envelope
                payload = self._serialize(entries)
                if len(payload.encode("utf-8")) > self.max_bytes:
                    raise StorageLayerUnavailable(LAYER_NAME, f"quota exceeded writing {key}")
            try:
                self._persist(payload)
            except OSError as e:
                raise StorageLayerUnavailable(LAYER_NAME, f"write {key}: {e}") from e
            self._entries = entries

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            envelope = self._entries.get(backup_key(table, record_id))
        if envelope is None:
            return None
        return envelope.get("data")

    def delete(self, table: str, record_id: str) -> bool:
        key = backup_key(table, record_id)
        with self._lock:
            if key not in self._entries:
                return False
            entries = {k: v for k, v in self._entries.items() if k != key}
            try:
                self._persist(self._serialize(entries))
            except OSError as e:
                raise StorageLayerUnavailable(LAYER_NAME, f"delete {key}: {e}") from e
            self._entries = entries
        return True

    def clear(self, keep_tables: Iterable[str] = ()) -> int:
        """Drop every entry except those of ``keep_tables``; returns the count dropped."""
        prefixes = tuple(backup_key(table, "") for table in keep_tables)
        with self._lock:
            kept = {k: v for k, v in self._entries.items() if prefixes and k.startswith(prefixes)}
            count = len(self._entries) - len(kept)
            try:
                self._persist(self._serialize(kept))
            except OSError as e:
                raise StorageLayerUnavailable(LAYER_NAME, f"clear: {e}") from e
            self._entries = kept
        return count

    def stats(self) -> LayerStats:
        with self._lock:
            entries = self._entries
            size = len(self._serialize(entries).encode("utf-8")) if entries else 0
            return LayerStats(records=len(entries), bytes=size)
