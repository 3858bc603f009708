"""
Shared types for fieldsync.

Dataclasses and enums exchanged between the storage layers, the sync
engine, the audit chain and the encryption gate. Records themselves stay
plain dicts; these types describe everything around them.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# Outbox entry states (sync_queue.synced column)
SYNC_PENDING = 0
SYNC_COMPLETED = 1
SYNC_DEAD_LETTER = 2

GENESIS_HASH = "0" * 64


class QueueOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncState(str, Enum):
    """Sync engine lifecycle states."""

    IDLE = "idle"
    DRAINING = "draining"
    PULLING = "pulling"
    MERGING = "merging"
    PAUSED = "paused"


class MergeStrategy(str, Enum):
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    MERGED = "merged"
    APPEND_ONLY = "append_only"
    REVIEW = "review"


class VectorOrder(str, Enum):
    """Outcome of comparing two version vectors."""

    EQUAL = "equal"
    DOMINATES = "dominates"
    DOMINATED = "dominated"
    CONCURRENT = "concurrent"


@dataclass
class FieldVersion:
    """Per-field version stamp used for field-level merges."""

    version: int
    device: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {"version": self.version, "device": self.device, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldVersion":
        return cls(
            version=int(data.get("version", 0)),
            device=str(data.get("device", "")),
            timestamp=int(data.get("timestamp", 0)),
        )

    def sort_key(self):
        """Ordering used to pick a field winner: version, then time, then device."""
        return (self.version, self.timestamp, self.device)


@dataclass
class SyncQueueEntry:
    """An outbox entry awaiting upload."""

    id: int
    table: str
    record_id: str
    operation: str
    priority: int
    queued_at: int
    retry_count: int = 0
    next_retry_at: Optional[int] = None
    state: int = SYNC_PENDING
    last_error: Optional[str] = None
    last_attempt_at: Optional[int] = None
    revision: int = 0  # bumped each time a newer mutation folds into the entry


@dataclass
class QueueStats:
    total: int = 0
    pending: int = 0
    synced: int = 0
    failed: int = 0
    oldest_pending: Optional[int] = None
    by_table: Dict[str, int] = field(default_factory=dict)


@dataclass
class AuditEvent:
    """One entry in the append-only audit chain."""

    id: int
    timestamp: int
    actor: str
    action: str
    entity_type: str
    entity_id: str
    payload: Dict[str, Any]
    prev_hash: str
    hash: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            id=int(data["id"]),
            timestamp=int(data["timestamp"]),
            actor=data["actor"],
            action=data["action"],
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            payload=data.get("payload") or {},
            prev_hash=data["prev_hash"],
            hash=data["hash"],
        )


@dataclass
class ChainVerification:
    """Result of walking the audit chain."""

    valid: bool
    checked: int
    broken_at: Optional[int] = None
    error: Optional[str] = None


@dataclass
class FraudAlert:
    pattern: str
    severity: str
    actor: str
    message: str
    event_ids: List[int] = field(default_factory=list)


@dataclass
class EncryptedData:
    """AES-GCM ciphertext envelope. All members are base64 strings."""

    ciphertext: str
    iv: str
    salt: str

    def to_dict(self) -> Dict[str, str]:
        return {"ciphertext": self.ciphertext, "iv": self.iv, "salt": self.salt}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedData":
        return cls(ciphertext=data["ciphertext"], iv=data["iv"], salt=data["salt"])


@dataclass
class StorageWriteResult:
    success: bool
    layers_written: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class StorageReadResult:
    success: bool
    data: Optional[Dict[str, Any]] = None
    source: Optional[str] = None
    error: Optional[str] = None


@dataclass
class LayerStats:
    records: int = 0
    bytes: int = 0
    available: bool = True


@dataclass
class StorageStats:
    """Per-layer usage estimate."""

    primary: LayerStats = field(default_factory=LayerStats)
    backup: LayerStats = field(default_factory=LayerStats)
    blob: LayerStats = field(default_factory=LayerStats)

    @property
    def total(self) -> int:
        """Total bytes across all layers."""
        return self.primary.bytes + self.backup.bytes + self.blob.bytes

    @property
    def total_records(self) -> int:
        return self.primary.records + self.backup.records + self.blob.records


@dataclass
class MergeResult:
    """Outcome of reconciling a local and a remote record."""

    record: Optional[Dict[str, Any]]
    strategy: MergeStrategy
    requires_review: bool = False
    review_reason: Optional[str] = None
    conflicting_fields: List[str] = field(default_factory=list)
    merged_fields: Dict[str, str] = field(default_factory=dict)  # field -> "local" | "remote"

    @property
    def drop_pending(self) -> bool:
        """Remote dominates, so any local pending upload is obsolete."""
        return self.strategy == MergeStrategy.REMOTE_WINS

    def raise_for_review(self, table: str, record_id: str):
        if self.requires_review:
            from fieldsync.errors import ConflictRequiresReview

            raise ConflictRequiresReview(
                table, record_id, self.review_reason or "unresolvable", self.conflicting_fields
            )


@dataclass
class ReviewItem:
    """A conflict parked for manual review."""

    id: str
    table: str
    record_id: str
    local_version: Optional[Dict[str, Any]]
    remote_version: Optional[Dict[str, Any]]
    reason: str
    detected_at: int
    fields: List[str] = field(default_factory=list)


@dataclass
class SyncResult:
    """Result of one sync cycle."""

    uploaded: int = 0
    downloaded: int = 0
    merged: int = 0
    conflicts: int = 0
    review: List[str] = field(default_factory=list)  # "table/id" needing review
    exhausted: List[int] = field(default_factory=list)  # dead-lettered entry ids
    errors: List[str] = field(default_factory=list)
    skipped: Optional[str] = None
    timestamp: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.skipped is None and len(self.errors) == 0


@dataclass
class IntegrityIssue:
    table: str
    record_id: str
    problem: str


@dataclass
class IntegrityReport:
    checked: int = 0
    issues: List[IntegrityIssue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues
