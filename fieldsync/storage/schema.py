"""Database schema for the fieldsync primary (SQLite) layer.

Contains:
- Entity table definitions with their indexed columns (ENTITY_TABLES)
- Schema DDL (build_schema) and version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import os
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Tuple

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3


@dataclass(frozen=True)
class EntityTable:
    """An entity table: indexed columns are copied out of the JSON body."""

    name: str
    columns: Tuple[str, ...]
    compound: Tuple[Tuple[str, ...], ...] = field(default_factory=tuple)


ENTITY_TABLES: Dict[str, EntityTable] = {
    t.name: t
    for t in (
        EntityTable("tenants", ("nombre", "activo")),
        EntityTable(
            "users",
            ("tenant_id", "email", "activo"),
            (("tenant_id", "activo"),),
        ),
        EntityTable(
            "rutas",
            ("tenant_id", "nombre", "activa"),
            (("tenant_id", "activa"),),
        ),
        EntityTable(
            "productos_credito",
            ("tenant_id", "activo"),
            (("tenant_id", "activo"),),
        ),
        EntityTable(
            "clientes",
            ("tenant_id", "ruta_id", "estado"),
            (("tenant_id", "ruta_id"), ("tenant_id", "estado")),
        ),
        EntityTable(
            "creditos",
            ("tenant_id", "cliente_id", "cobrador_id", "ruta_id", "estado"),
            (
                ("tenant_id", "estado"),
                ("cliente_id", "estado"),
                ("cobrador_id", "estado"),
                ("tenant_id", "ruta_id", "estado"),
            ),
        ),
        EntityTable(
            "cuotas",
            ("tenant_id", "credito_id", "numero", "estado", "fecha_programada"),
            (
                ("credito_id", "numero"),
                ("credito_id", "estado"),
                ("tenant_id", "estado", "fecha_programada"),
            ),
        ),
        EntityTable(
            "pagos",
            ("tenant_id", "credito_id", "cliente_id", "cobrador_id", "fecha"),
            (("tenant_id", "fecha"), ("credito_id", "fecha"), ("cobrador_id", "fecha")),
        ),
        EntityTable(
            "audit_log",
            ("seq", "actor", "action", "entity_type", "entity_id", "timestamp"),
            (("entity_type", "entity_id"),),
        ),
    )
}

# Tables that are part of the sync protocol (audit events travel separately)
SYNCED_TABLES = frozenset(name for name in ENTITY_TABLES if name != "audit_log")

INTERNAL_TABLES = frozenset({"schema_version", "sync_queue", "sync_meta", "sync_conflicts"})

# Allowed table names for SQL queries (prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(ENTITY_TABLES) | INTERNAL_TABLES


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


BASE_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Outbox of local mutations awaiting upload.
-- synced: 0 = pending, 1 = synced, 2 = dead letter
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    priority INTEGER NOT NULL DEFAULT 4,
    queued_at INTEGER NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0,
    revision INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    next_retry_at INTEGER,
    last_error TEXT,
    last_attempt_at INTEGER,
    synced_at INTEGER
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_queue_pending
    ON sync_queue(table_name, record_id) WHERE synced = 0;
CREATE INDEX IF NOT EXISTS idx_sync_queue_order
    ON sync_queue(synced, priority, queued_at);

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at INTEGER
);

-- Conflicts parked for manual review
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    table_name TEXT NOT NULL,
    record_id TEXT NOT NULL,
    local_version TEXT,
    remote_version TEXT,
    reason TEXT NOT NULL,
    fields TEXT,
    detected_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_record ON sync_conflicts(table_name, record_id);
"""


def _entity_ddl(table: EntityTable) -> str:
    column_defs = "".join(f",\n    {col}" for col in table.columns)
    lines = [
        f"CREATE TABLE IF NOT EXISTS {table.name} (\n"
        f"    id TEXT PRIMARY KEY,\n"
        f"    data TEXT NOT NULL,\n"
        f"    updated_at INTEGER{column_defs}\n"
        f");"
    ]
    for col in table.columns:
        lines.append(
            f"CREATE INDEX IF NOT EXISTS idx_{table.name}_{col} ON {table.name}({col});"
        )
    for cols in table.compound:
        lines.append(
            f"CREATE INDEX IF NOT EXISTS idx_{table.name}_{'_'.join(cols)} "
            f"ON {table.name}({', '.join(cols)});"
        )
    return "\n".join(lines)


def build_schema() -> str:
    parts = [BASE_SCHEMA]
    parts.extend(_entity_ddl(t) for t in ENTITY_TABLES.values())
    return "\n\n".join(parts)


SCHEMA = build_schema()


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Initialize the database schema and tighten file permissions."""
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
    conn.commit()

    # Owner read/write only
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")
