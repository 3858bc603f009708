"""Tests for ConflictResolver."""

import pytest

from fieldsync.errors import ConflictRequiresReview
from fieldsync.records import apply_local_edit, stamp, verify_checksum
from fieldsync.sync.conflicts import ConflictResolver
from fieldsync.types import MergeStrategy


def fv(version, device, timestamp):
    return {"version": version, "device": device, "timestamp": timestamp}


def unstamped(device, updated_at, **values):
    """A record written before per-field stamps existed."""
    record = {"id": "c1", "tenant_id": "t1", "version_vector": {device: 1}, "updated_at": updated_at}
    return stamp({**record, **values})


@pytest.fixture
def resolver():
    return ConflictResolver()


@pytest.fixture
def base():
    return apply_local_edit(
        None,
        {"id": "c1", "tenant_id": "t1", "nombre": "Ana", "telefono": "111", "estado": "activo"},
        "A",
        "clientes",
        now=100,
    )


class TestVectorOrdering:
    def test_equal_vectors_keep_local(self, resolver, base):
        result = resolver.merge(base, dict(base), "clientes")
        assert result.strategy == MergeStrategy.LOCAL_WINS
        assert result.record is base
        assert not result.drop_pending

    def test_local_dominates(self, resolver, base):
        local = apply_local_edit(base, {"nombre": "Ana M"}, "A", "clientes", now=200)
        result = resolver.merge(local, base, "clientes")
        assert result.strategy == MergeStrategy.LOCAL_WINS
        assert result.record["nombre"] == "Ana M"

    def test_remote_dominates(self, resolver, base):
        remote = apply_local_edit(base, {"nombre": "Ana B"}, "B", "clientes", now=200)
        result = resolver.merge(base, remote, "clientes")
        assert result.strategy == MergeStrategy.REMOTE_WINS
        assert result.record is remote
        assert result.drop_pending


class TestFieldMerge:
    def test_concurrent_vectors_merge_per_field(self, resolver):
        """{A:2} vs {A:1,B:1} merges to {A:2,B:1}, each field from its newer side."""
        local = stamp(
            {
                "id": "c1",
                "tenant_id": "t1",
                "nombre": "Ana",
                "telefono": "111",
                "version_vector": {"A": 2},
                "field_versions": {"nombre": fv(2, "A", 200), "telefono": fv(1, "A", 100)},
                "updated_at": 200,
            }
        )
        remote = stamp(
            {
                "id": "c1",
                "tenant_id": "t1",
                "nombre": "Anita",
                "telefono": "222",
                "version_vector": {"A": 1, "B": 1},
                "field_versions": {"nombre": fv(1, "A", 100), "telefono": fv(2, "B", 150)},
                "updated_at": 150,
            }
        )

        result = resolver.merge(local, remote, "clientes")

        assert result.strategy == MergeStrategy.MERGED
        merged = result.record
        assert merged["version_vector"] == {"A": 2, "B": 1}
        assert merged["nombre"] == "Ana"
        assert merged["telefono"] == "222"
        assert merged["field_versions"]["telefono"] == fv(2, "B", 150)
        assert merged["updated_at"] == 200
        assert merged["synced"] is False
        assert verify_checksum(merged)
        assert result.merged_fields == {"nombre": "local", "telefono": "remote"}

    def test_independent_edits_from_common_base(self, resolver, base):
        local = apply_local_edit(base, {"telefono": "999"}, "A", "clientes", now=200)
        remote = apply_local_edit(base, {"estado": "mora"}, "B", "clientes", now=210)

        result = resolver.merge(local, remote, "clientes")

        assert result.strategy == MergeStrategy.MERGED
        assert result.record["telefono"] == "999"
        assert result.record["estado"] == "mora"
        assert result.record["nombre"] == "Ana"
        assert result.record["version_vector"] == {"A": 2, "B": 1}

    def test_field_only_on_one_side(self, resolver, base):
        local = apply_local_edit(base, {"telefono": "999"}, "A", "clientes", now=200)
        remote = apply_local_edit(base, {"barrio": "Centro"}, "B", "clientes", now=210)
        result = resolver.merge(local, remote, "clientes")
        assert result.record["barrio"] == "Centro"

    def test_same_stamp_same_value_is_not_a_conflict(self, resolver, base):
        local = apply_local_edit(base, {"telefono": "999"}, "A", "clientes", now=200)
        remote = dict(local)
        remote["version_vector"] = {"A": 1, "B": 1}
        remote["estado"] = "mora"
        remote["field_versions"] = dict(local["field_versions"], estado=fv(2, "B", 300))
        stamp(remote)
        result = resolver.merge(local, remote, "clientes")
        assert result.strategy == MergeStrategy.MERGED
        assert result.record["telefono"] == "999"
        assert result.record["estado"] == "mora"


class TestUnstampedFields:
    def test_newer_record_wins_in_both_directions(self, resolver):
        older = unstamped("A", 200, nombre="Ana", estado="activo")
        newer = unstamped("B", 300, nombre="Ana Maria", estado="activo")

        forward = resolver.merge(older, newer, "clientes")
        backward = resolver.merge(newer, older, "clientes")

        assert forward.record["nombre"] == backward.record["nombre"] == "Ana Maria"
        assert forward.merged_fields["nombre"] == "remote"
        assert backward.merged_fields["nombre"] == "local"

    def test_field_missing_on_one_side_is_kept(self, resolver):
        local = unstamped("A", 300, nombre="Ana")
        remote = unstamped("B", 200, nombre="Ana", barrio="Centro")
        assert resolver.merge(local, remote, "clientes").record["barrio"] == "Centro"
        assert resolver.merge(remote, local, "clientes").record["barrio"] == "Centro"

    def test_same_time_different_values_needs_review(self, resolver):
        local = unstamped("A", 200, nombre="Ana L", estado="activo")
        remote = unstamped("B", 200, nombre="Ana R", estado="activo")

        result = resolver.merge(local, remote, "clientes")

        assert result.requires_review
        assert result.conflicting_fields == ["nombre"]
        assert resolver.merge(remote, local, "clientes").conflicting_fields == ["nombre"]


class TestReview:
    def test_identical_stamps_different_values(self, resolver, base):
        """An unbreakable tie is escalated, never guessed."""
        local = apply_local_edit(base, {"nombre": "Ana L"}, "A", "clientes", now=200)
        remote = dict(local)
        remote["nombre"] = "Ana R"
        remote["version_vector"] = {"A": 1, "B": 1}
        stamp(remote)

        result = resolver.merge(local, remote, "clientes")

        assert result.requires_review
        assert result.strategy == MergeStrategy.REVIEW
        assert result.record is None
        assert result.conflicting_fields == ["nombre"]
        with pytest.raises(ConflictRequiresReview) as exc_info:
            result.raise_for_review("clientes", "c1")
        assert exc_info.value.fields == ["nombre"]

    def test_checksum_mismatch(self, resolver, base):
        remote = apply_local_edit(base, {"nombre": "X"}, "B", "clientes")
        remote["telefono"] = "tampered"
        result = resolver.merge(base, remote, "clientes")
        assert result.requires_review
        assert "checksum" in result.review_reason

    def test_immutable_field_differs(self, resolver, base):
        remote = dict(base, tenant_id="t2")
        stamp(remote)
        result = resolver.merge(base, remote, "clientes")
        assert result.requires_review
        assert result.conflicting_fields == ["tenant_id"]

    def test_raise_for_review_is_noop_when_resolved(self, resolver, base):
        resolver.merge(base, dict(base), "clientes").raise_for_review("clientes", "c1")


class TestAppendOnly:
    def test_payments_never_conflict(self, resolver):
        local = apply_local_edit(None, {"id": "p1", "monto": 10}, "A", "pagos")
        remote = apply_local_edit(None, {"id": "p1", "monto": 10}, "B", "pagos")
        result = resolver.merge(local, remote, "pagos")
        assert result.strategy == MergeStrategy.APPEND_ONLY
        assert result.record is local
        assert not result.requires_review
