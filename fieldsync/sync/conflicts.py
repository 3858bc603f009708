"""Conflict resolution between a local record and its remote counterpart.

Version vectors decide whether one side simply supersedes the other. When
the edits are concurrent the records are merged field by field using the
per-field version stamps; a field that cannot be decided is escalated for
manual review instead of being guessed.
"""

import logging
from typing import Any, Dict, List, Optional

from fieldsync.records import (
    APPEND_ONLY_TABLES,
    IMMUTABLE_FIELDS,
    METADATA_FIELDS,
    compare_vectors,
    merge_vectors,
    stamp,
    verify_checksum,
)
from fieldsync.types import FieldVersion, MergeResult, MergeStrategy, VectorOrder

logger = logging.getLogger(__name__)


def _field_version(record: Dict[str, Any], name: str) -> Optional[FieldVersion]:
    raw = (record.get("field_versions") or {}).get(name)
    return FieldVersion.from_dict(raw) if raw else None


def _unstamped_winner(local: Dict[str, Any], remote: Dict[str, Any], name: str) -> Optional[str]:
    """Pick a side for a field neither replica stamped; None if undecidable.

    Falls back to the records' ``updated_at`` so that merging in either
    direction gives the same answer.
    """
    if name not in remote:
        return "local"
    if name not in local:
        return "remote"
    if local[name] == remote[name]:
        return "local"
    local_at = local.get("updated_at") or 0
    remote_at = remote.get("updated_at") or 0
    if local_at == remote_at:
        return None
    return "local" if local_at > remote_at else "remote"


class ConflictResolver:
    """Deterministic merge of two replicas of the same record."""

    def merge(
        self,
        local: Dict[str, Any],
        remote: Dict[str, Any],
        table: Optional[str] = None,
    ) -> MergeResult:
        record_id = local.get("id") or remote.get("id")

        if table in APPEND_ONLY_TABLES:
            return MergeResult(record=local, strategy=MergeStrategy.APPEND_ONLY)

        for side, record in (("local", local), ("remote", remote)):
            if record.get("checksum") and not verify_checksum(record):
                return self._review(f"{side} checksum mismatch", table, record_id)

        for name in IMMUTABLE_FIELDS - {"created_at"}:
            if name in local and name in remote and local[name] != remote[name]:
                return self._review(f"immutable field '{name}' differs", table, record_id, [name])

        order = compare_vectors(local.get("version_vector"), remote.get("version_vector"))
        if order in (VectorOrder.DOMINATES, VectorOrder.EQUAL):
            return MergeResult(record=local, strategy=MergeStrategy.LOCAL_WINS)
        if order == VectorOrder.DOMINATED:
            return MergeResult(record=remote, strategy=MergeStrategy.REMOTE_WINS)
        return self._merge_fields(local, remote, table, record_id)

    def _merge_fields(
        self,
        local: Dict[str, Any],
        remote: Dict[str, Any],
        table: Optional[str],
        record_id: Any,
    ) -> MergeResult:
        names = {
            k
            for k in set(local) | set(remote)
            if k not in METADATA_FIELDS and k not in IMMUTABLE_FIELDS
        }
        names |= set(local.get("field_versions") or {}) | set(remote.get("field_versions") or {})

        merged: Dict[str, Any] = {k: local[k] for k in IMMUTABLE_FIELDS if k in local}
        for k in IMMUTABLE_FIELDS:
            if k not in merged and k in remote:
                merged[k] = remote[k]
        field_versions: Dict[str, Dict[str, Any]] = {}
        sources: Dict[str, str] = {}
        conflicting: List[str] = []

        for name in sorted(names):
            lv = _field_version(local, name)
            rv = _field_version(remote, name)
            if lv is None and rv is None:
                winner = _unstamped_winner(local, remote, name)
                if winner is None:
                    conflicting.append(name)
                    continue
            elif rv is None:
                winner = "local"
            elif lv is None:
                winner = "remote"
            elif lv.sort_key() > rv.sort_key():
                winner = "local"
            elif rv.sort_key() > lv.sort_key():
                winner = "remote"
            elif local.get(name) == remote.get(name):
                winner = "local"
            else:
                conflicting.append(name)
                continue

            source = local if winner == "local" else remote
            sources[name] = winner
            if name in source:
                merged[name] = source[name]
            winning = _field_version(source, name)
            if winning is not None:
                field_versions[name] = winning.to_dict()

        if conflicting:
            return self._review(
                "concurrent edits with equal stamps and different values", table, record_id, conflicting
            )

        if field_versions:
            merged["field_versions"] = field_versions
        merged["version_vector"] = merge_vectors(
            local.get("version_vector"), remote.get("version_vector")
        )
        merged["updated_at"] = max(local.get("updated_at") or 0, remote.get("updated_at") or 0)
        merged["synced"] = False
        stamp(merged)
        logger.debug(
            f"Merged {table}/{record_id}: "
            f"{sum(1 for s in sources.values() if s == 'remote')} field(s) from remote"
        )
        return MergeResult(record=merged, strategy=MergeStrategy.MERGED, merged_fields=sources)

    @staticmethod
    def _review(
        reason: str, table: Optional[str], record_id: Any, fields: Optional[List[str]] = None
    ) -> MergeResult:
        logger.warning(f"Conflict on {table}/{record_id} needs review: {reason}")
        return MergeResult(
            record=None,
            strategy=MergeStrategy.REVIEW,
            requires_review=True,
            review_reason=reason,
            conflicting_fields=list(fields or []),
        )
