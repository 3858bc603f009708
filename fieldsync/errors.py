"""Error taxonomy for fieldsync.

Storage and network failures are recoverable and handled locally by the
layered store and the sync engine. Integrity failures (checksums, the
audit chain, decryption) are surfaced to the caller and never repaired.
"""

from typing import Optional


class FieldSyncError(Exception):
    """Base exception for fieldsync errors."""

    pass


class StorageLayerUnavailable(FieldSyncError):
    """A storage layer could not complete a read or write."""

    def __init__(self, layer: str, message: str):
        self.layer = layer
        super().__init__(f"{layer} layer unavailable: {message}")


class RecordNotFound(FieldSyncError):
    """No layer holds the requested record (or the table is unknown)."""

    def __init__(self, table: str, record_id: Optional[str] = None, message: str = ""):
        self.table = table
        self.record_id = record_id
        detail = message or (f"{table}/{record_id} not found" if record_id else f"{table} unknown")
        super().__init__(detail)


class ChecksumMismatch(FieldSyncError):
    """Stored checksum does not match the recomputed one."""

    def __init__(self, table: str, record_id: str, expected: str, actual: str):
        self.table = table
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {table}/{record_id}: "
            f"stored {expected[:12]}..., computed {actual[:12]}..."
        )


class ConflictRequiresReview(FieldSyncError):
    """A merge could not be resolved automatically."""

    def __init__(self, table: str, record_id: str, reason: str, fields=None):
        self.table = table
        self.record_id = record_id
        self.reason = reason
        self.fields = list(fields or [])
        super().__init__(f"Conflict on {table}/{record_id} requires review: {reason}")


class SyncNetworkError(FieldSyncError):
    """Transport failure or timeout. Always retryable."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SyncAuthorizationError(SyncNetworkError):
    """The backend rejected the credential."""

    pass


class RetryBudgetExhausted(FieldSyncError):
    """An outbox entry reached its maximum number of attempts."""

    def __init__(self, entry_id: int, table: str, record_id: str, attempts: int):
        self.entry_id = entry_id
        self.table = table
        self.record_id = record_id
        self.attempts = attempts
        super().__init__(
            f"Outbox entry {entry_id} ({table}/{record_id}) gave up after {attempts} attempts"
        )


class AuditChainBroken(FieldSyncError):
    """Hash chain verification failed."""

    def __init__(self, index: int, reason: str):
        self.index = index
        self.reason = reason
        super().__init__(f"Audit chain broken at index {index}: {reason}")


class EncryptionError(FieldSyncError):
    """Base exception for encryption gate errors."""

    pass


class EncryptionKeyNotInitialized(EncryptionError):
    """Encrypt/decrypt called while the gate is locked."""

    def __init__(self, message: str = "Encryption key not initialized; unlock with a PIN first"):
        super().__init__(message)


class DecryptionIntegrityFailure(EncryptionError):
    """Authenticated decryption failed (tamper, wrong key or salt mismatch)."""

    pass
