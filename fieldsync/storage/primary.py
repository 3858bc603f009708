"""Layer 1: transactional, indexed SQLite storage.

One table per entity: the record body lives in a JSON ``data`` column and
the indexed attributes are copied into real columns so equality and
compound queries can use SQLite indexes.
"""

import contextlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from fieldsync.errors import RecordNotFound, StorageLayerUnavailable
from fieldsync.types import LayerStats
from fieldsync.utils import now_ms

from .schema import ENTITY_TABLES, init_db

logger = logging.getLogger(__name__)

LAYER_NAME = "primary"


class SQLiteLayer:
    """Primary storage layer backed by a single SQLite database file.

    Connections are opened per operation through ``_connect()`` so the
    layer can be shared between the caller's thread and scheduler timers.
    """

    name = LAYER_NAME

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._connect() as conn:
                init_db(conn, self.db_path)
        except sqlite3.Error as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"cannot open {self.db_path}: {e}") from e

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that commits on success, rolls back on error, always closes."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _entity(table: str):
        entity = ENTITY_TABLES.get(table)
        if entity is None:
            raise RecordNotFound(table, message=f"Unknown table: {table}")
        return entity

    @staticmethod
    def _column_value(value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value, sort_keys=True)
        return value

    # === Records ===

    def put(self, table: str, record_id: str, record: Dict[str, Any]) -> None:
        entity = self._entity(table)
        columns = ["id", "data", "updated_at", *entity.columns]
        values = [
            record_id,
            json.dumps(record, default=str),
            record.get("updated_at") or now_ms(),
            *(self._column_value(record.get(col)) for col in entity.columns),
        ]
        placeholders = ", ".join("?" for _ in columns)
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO {entity.name} ({', '.join(columns)}) "
                    f"VALUES ({placeholders})",
                    values,
                )
        except sqlite3.Error as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"write {table}/{record_id}: {e}") from e

    def get(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        entity = self._entity(table)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT data FROM {entity.name} WHERE id = ?", (record_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"read {table}/{record_id}: {e}") from e
        return json.loads(row["data"]) if row else None

    def delete(self, table: str, record_id: str) -> bool:
        entity = self._entity(table)
        try:
            with self._connect() as conn:
                cursor = conn.execute(f"DELETE FROM {entity.name} WHERE id = ?", (record_id,))
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"delete {table}/{record_id}: {e}") from e

    def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Equality query over indexed columns.

        Raises:
            ValueError: if a filter or order column is not indexed.
        """
        entity = self._entity(table)
        allowed = {"id", "updated_at", *entity.columns}
        filters = filters or {}
        for col in filters:
            if col not in allowed:
                raise ValueError(f"Column '{col}' is not indexed on {table}")
        if order_by is not None and order_by not in allowed:
            raise ValueError(f"Cannot order {table} by non-indexed column '{order_by}'")

        sql = f"SELECT data FROM {entity.name}"
        params: List[Any] = []
        if filters:
            clauses = []
            for col, value in filters.items():
                if value is None:
                    clauses.append(f"{col} IS NULL")
                else:
                    clauses.append(f"{col} = ?")
                    params.append(self._column_value(value))
            sql += " WHERE " + " AND ".join(clauses)
        if order_by:
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        try:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"query {table}: {e}") from e
        return [json.loads(row["data"]) for row in rows]

    def list_ids(self, table: str) -> List[str]:
        entity = self._entity(table)
        with self._connect() as conn:
            rows = conn.execute(f"SELECT id FROM {entity.name} ORDER BY id").fetchall()
        return [row["id"] for row in rows]

    def stats(self) -> LayerStats:
        records = 0
        size = 0
        try:
            with self._connect() as conn:
                for entity in ENTITY_TABLES.values():
                    row = conn.execute(
                        f"SELECT COUNT(*), COALESCE(SUM(LENGTH(data)), 0) FROM {entity.name}"
                    ).fetchone()
                    records += row[0]
                    size += row[1]
        except sqlite3.Error as e:
            logger.warning(f"Could not compute primary layer stats: {e}")
            return LayerStats(records=0, bytes=0, available=False)
        return LayerStats(records=records, bytes=size)

    # === Metadata ===

    def get_meta(self, key: str) -> Optional[str]:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"read meta {key}: {e}") from e
        return row["value"] if row else None

    def set_meta(self, key: str, value: Optional[str]) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, now_ms()),
                )
        except sqlite3.Error as e:
            raise StorageLayerUnavailable(LAYER_NAME, f"write meta {key}: {e}") from e
