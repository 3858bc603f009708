"""Record model: canonical serialization, checksums and version vectors.

Records are plain dicts. Every record carries a ``version_vector``
(device id -> counter), a ``checksum`` over its non-metadata fields and,
for mutable entities, ``field_versions`` recording who last touched each
field and when.
"""

import hashlib
import json
import logging
from typing import Any, Dict, Iterable, Optional

from fieldsync.errors import ChecksumMismatch
from fieldsync.types import FieldVersion, VectorOrder
from fieldsync.utils import new_id, now_ms

logger = logging.getLogger(__name__)

# Excluded from the checksum: bookkeeping that changes without the data changing
METADATA_FIELDS = frozenset(
    {"checksum", "version_vector", "field_versions", "synced", "updated_at"}
)

IMMUTABLE_FIELDS = frozenset({"id", "tenant_id", "created_at"})

# Created once, never edited; cannot conflict
APPEND_ONLY_TABLES = frozenset({"pagos", "audit_log"})


def canonical_serialize(data: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def checksum_payload(record: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in record.items() if k not in METADATA_FIELDS}


def compute_checksum(record: Dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical form of the non-metadata fields."""
    return hashlib.sha256(canonical_serialize(checksum_payload(record)).encode("utf-8")).hexdigest()


def verify_checksum(record: Dict[str, Any]) -> bool:
    """True when the stored checksum matches. A missing checksum fails."""
    stored = record.get("checksum")
    if not stored:
        return False
    return stored == compute_checksum(record)


def require_checksum(record: Dict[str, Any], table: str) -> None:
    """Raise ChecksumMismatch if the stored checksum is missing or wrong."""
    stored = record.get("checksum") or ""
    actual = compute_checksum(record)
    if stored != actual:
        raise ChecksumMismatch(table, str(record.get("id")), stored, actual)


def mutable_fields(record: Dict[str, Any]) -> Iterable[str]:
    return [k for k in record if k not in METADATA_FIELDS and k not in IMMUTABLE_FIELDS]


# === Version vectors ===


def increment_vector(vector: Optional[Dict[str, int]], device_id: str) -> Dict[str, int]:
    result = dict(vector or {})
    result[device_id] = result.get(device_id, 0) + 1
    return result


def merge_vectors(a: Optional[Dict[str, int]], b: Optional[Dict[str, int]]) -> Dict[str, int]:
    """Component-wise maximum."""
    a = a or {}
    b = b or {}
    return {device: max(a.get(device, 0), b.get(device, 0)) for device in set(a) | set(b)}


def compare_vectors(a: Optional[Dict[str, int]], b: Optional[Dict[str, int]]) -> VectorOrder:
    """Compare two version vectors (missing entries count as zero)."""
    a = a or {}
    b = b or {}
    a_ahead = False
    b_ahead = False
    for device in set(a) | set(b):
        av = a.get(device, 0)
        bv = b.get(device, 0)
        if av > bv:
            a_ahead = True
        elif bv > av:
            b_ahead = True
    if a_ahead and b_ahead:
        return VectorOrder.CONCURRENT
    if a_ahead:
        return VectorOrder.DOMINATES
    if b_ahead:
        return VectorOrder.DOMINATED
    return VectorOrder.EQUAL


def dominates(a: Optional[Dict[str, int]], b: Optional[Dict[str, int]]) -> bool:
    """True when ``a`` is at least ``b`` everywhere and ahead somewhere."""
    return compare_vectors(a, b) == VectorOrder.DOMINATES


# === Local edits ===


def stamp(record: Dict[str, Any]) -> Dict[str, Any]:
    """Recompute the checksum in place and return the record."""
    record["checksum"] = compute_checksum(record)
    return record


def apply_local_edit(
    existing: Optional[Dict[str, Any]],
    values: Dict[str, Any],
    device_id: str,
    table: str,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """Apply a local create or update and return the new record.

    Bumps this device's entry in the version vector, bumps the field
    version of every changed mutable field, marks the record unsynced and
    recomputes the checksum. ``existing`` is not modified.

    Raises:
        ValueError: on an attempt to change an immutable field, or to edit
            an append-only record.
    """
    now = now if now is not None else now_ms()
    append_only = table in APPEND_ONLY_TABLES

    if existing is None:
        record = {k: v for k, v in values.items() if k not in METADATA_FIELDS}
        record.setdefault("id", new_id())
        record.setdefault("created_at", now)
        changed = [k for k in record if k not in IMMUTABLE_FIELDS]
        field_versions: Dict[str, Dict[str, Any]] = {}
    else:
        if append_only:
            raise ValueError(f"{table} records are append-only and cannot be updated")
        for name in IMMUTABLE_FIELDS:
            if name in values and name in existing and values[name] != existing[name]:
                raise ValueError(f"Field '{name}' is immutable")
        record = dict(existing)
        changed = []
        for k, v in values.items():
            if k in METADATA_FIELDS or k in IMMUTABLE_FIELDS:
                continue
            if k not in existing or existing[k] != v:
                record[k] = v
                changed.append(k)
        field_versions = {k: dict(v) for k, v in (existing.get("field_versions") or {}).items()}

    if existing is not None and not changed:
        return dict(existing)

    if not append_only:
        for name in changed:
            previous = field_versions.get(name)
            version = FieldVersion.from_dict(previous).version + 1 if previous else 1
            field_versions[name] = FieldVersion(version, device_id, now).to_dict()
        record["field_versions"] = field_versions

    record["version_vector"] = increment_vector(
        existing.get("version_vector") if existing else None, device_id
    )
    record["updated_at"] = now
    record["synced"] = False
    return stamp(record)
