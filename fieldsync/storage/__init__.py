"""Storage layers for fieldsync."""

from fieldsync.storage.backup import KeyValueBackupLayer
from fieldsync.storage.blob import BlobLayer
from fieldsync.storage.layered import LayeredStore
from fieldsync.storage.primary import SQLiteLayer
from fieldsync.storage.schema import ENTITY_TABLES, SYNCED_TABLES, validate_table_name

__all__ = [
    "BlobLayer",
    "ENTITY_TABLES",
    "KeyValueBackupLayer",
    "LayeredStore",
    "SQLiteLayer",
    "SYNCED_TABLES",
    "validate_table_name",
]
