"""Layer 3: best-effort blob storage, one JSON file per record."""

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, Iterable, Optional
from urllib.parse import quote

from fieldsync.errors import StorageLayerUnavailable
from fieldsync.types import LayerStats

logger = logging.getLogger(__name__)

LAYER_NAME = "blob"


class BlobLayer:
    name = LAYER_NAME

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, table: str, record_id: str) -> Path:
        return self.root / quote(table, safe="") / f"{quote(str(record_id), safe='')}.json"

    def put(self, table: str, record_id: str, record: Dict[str, Any]) -> None:
        path = self._path(table, record_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".tmp")
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(record, f, default=str)
            os.replace(tmp, path)
            os.chmod(path, 0o600)
        except OSError as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"write {table}/{record_id}: {e}") from e

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(table, record_id)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"read {table}/{record_id}: {e}") from e

    def delete(self, table: str, record_id: str) -> bool:
        path = self._path(table, record_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"delete {table}/{record_id}: {e}") from e

    def clear(self, keep_tables: Iterable[str] = ()) -> int:
        """Remove every table directory except ``keep_tables``; returns the count removed."""
        if not self.root.exists():
            return 0
        keep = {quote(table, safe="") for table in keep_tables}
        count = 0
        try:
            for table_dir in self.root.iterdir():
                if table_dir.name in keep:
                    continue
                if table_dir.is_dir():
                    count += sum(1 for _ in table_dir.glob("*.json"))
                    shutil.rmtree(table_dir)
                else:
                    table_dir.unlink()
        except OSError as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"clear: {e}") from e
        return count

    def stats(self) -> LayerStats:
        if not self.root.exists():
            return LayerStats()
        records = 0
        size = 0
        for path in self.root.glob("*/*.json"):
            try:
                size += path.stat().st_size
                records += 1
            except OSError as e:
                logger.debug(f"Skipping unreadable blob {path}: {e}")
        return LayerStats(records=records, bytes=size)
