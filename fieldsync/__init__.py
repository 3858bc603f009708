"""
fieldsync - Offline-first data layer for field operations.

Local writes land in a layered store and an outbox; a background engine
reconciles them with the backend when the network allows.
"""

from .config import Settings
from .core import FieldSync
from .errors import (
    AuditChainBroken,
    ChecksumMismatch,
    ConflictRequiresReview,
    DecryptionIntegrityFailure,
    EncryptionError,
    EncryptionKeyNotInitialized,
    FieldSyncError,
    RecordNotFound,
    RetryBudgetExhausted,
    StorageLayerUnavailable,
    SyncAuthorizationError,
    SyncNetworkError,
)

try:
    from importlib.metadata import version

    __version__ = version("fieldsync")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "FieldSync",
    "Settings",
    "FieldSyncError",
    "StorageLayerUnavailable",
    "RecordNotFound",
    "ChecksumMismatch",
    "ConflictRequiresReview",
    "SyncNetworkError",
    "SyncAuthorizationError",
    "RetryBudgetExhausted",
    "AuditChainBroken",
    "EncryptionError",
    "EncryptionKeyNotInitialized",
    "DecryptionIntegrityFailure",
]
