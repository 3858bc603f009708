"""Tests for the layered store and its three layers.

Covers:
- Write-through and read fallback with self-healing
- Backup-layer capacity pruning and persistence
- Indexed single and compound queries
- Storage statistics and clearing backups
"""

import gc
import json
from unittest.mock import patch

import pytest

from fieldsync.errors import RecordNotFound, StorageLayerUnavailable
from fieldsync.storage.backup import KeyValueBackupLayer
from fieldsync.storage.blob import BlobLayer
from fieldsync.storage.layered import LayeredStore


def client(record_id, estado="activo", tenant_id="tenant-1", **extra):
    return {"id": record_id, "tenant_id": tenant_id, "estado": estado, **extra}


class TestWriteAndRead:
    def test_read_after_write_comes_from_primary(self, store):
        """A fresh write is served by the primary layer unchanged."""
        record = client("c1", nombre="Ana", saldo=1500, tags=["a", "b"])
        store.write_atomic(record, "clientes", "c1")

        result = store.read_with_fallback("clientes", "c1")

        assert result.success
        assert result.source == "primary"
        assert result.data == record

    def test_write_reaches_every_layer(self, store):
        result = store.write_atomic(client("c1"), "clientes", "c1")
        assert result.layers_written == ["primary", "backup", "blob"]
        assert result.errors == {}
        assert store.backup.get("clientes", "c1") == client("c1")
        assert store.blob.get("clientes", "c1") == client("c1")

    def test_skip_backup_writes_primary_only(self, store):
        result = store.write_atomic(client("c1"), "clientes", "c1", skip_backup=True)
        assert result.layers_written == ["primary"]
        assert store.backup.get("clientes", "c1") is None

    def test_backup_failure_is_reported_not_raised(self, store):
        """Best-effort layers report failures in ``errors``."""
        with patch.object(
            store.backup, "put", side_effect=StorageLayerUnavailable("backup", "quota")
        ):
            result = store.write_atomic(client("c1"), "clientes", "c1")
        assert result.success
        assert result.layers_written == ["primary", "blob"]
        assert "backup" in result.errors

    def test_primary_failure_raises(self, store):
        with patch.object(
            store.primary, "put", side_effect=StorageLayerUnavailable("primary", "disk full")
        ):
            with pytest.raises(StorageLayerUnavailable):
                store.write_atomic(client("c1"), "clientes", "c1")
        assert store.backup.get("clientes", "c1") is None

    def test_unknown_table_write_raises(self, store):
        with pytest.raises(RecordNotFound):
            store.write_atomic({"id": "x"}, "nope", "x")


class TestFallback:
    def test_primary_loss_heals_from_backup(self, store):
        """A record missing from primary is served by backup and restored."""
        store.write_atomic(client("c1", nombre="Ana"), "clientes", "c1")
        store.primary.delete("clientes", "c1")
        assert store.primary.get("clientes", "c1") is None

        result = store.read_with_fallback("clientes", "c1")

        assert result.success
        assert result.source == "backup"
        assert result.data["nombre"] == "Ana"
        assert store.primary.get("clientes", "c1") == result.data

    def test_blob_heals_primary_and_backup(self, store):
        store.write_atomic(client("c1"), "clientes", "c1")
        store.primary.delete("clientes", "c1")
        store.backup.delete("clientes", "c1")

        result = store.read_with_fallback("clientes", "c1")

        assert result.source == "blob"
        assert store.primary.get("clientes", "c1") == client("c1")
        assert store.backup.get("clientes", "c1") == client("c1")

    def test_missing_everywhere(self, store):
        result = store.read_with_fallback("clientes", "ghost")
        assert result.success is False
        assert result.data is None
        assert result.source is None
        assert result.error

    def test_primary_unavailable_falls_back(self, store):
        store.write_atomic(client("c1"), "clientes", "c1")
        with patch.object(
            store.primary, "get", side_effect=StorageLayerUnavailable("primary", "locked")
        ), patch.object(store.primary, "put"):
            result = store.read_with_fallback("clientes", "c1")
        assert result.success
        assert result.source == "backup"

    def test_unknown_table_read_does_not_raise(self, store):
        result = store.read_with_fallback("nope", "x")
        assert result.success is False
        assert "nope" in result.error


class TestQueries:
    def test_compound_query(self, store):
        """(tenant_id, estado) returns exactly the active client."""
        store.write_atomic(client("c1", estado="activo"), "clientes", "c1")
        store.write_atomic(client("c2", estado="inactivo"), "clientes", "c2")
        store.write_atomic(client("c3", estado="activo", tenant_id="tenant-2"), "clientes", "c3")

        rows = store.query("clientes", tenant_id="tenant-1", estado="activo")

        assert [r["id"] for r in rows] == ["c1"]

    def test_single_column_query_and_order(self, store):
        for i, fecha in enumerate([300, 100, 200]):
            store.write_atomic(
                {"id": f"p{i}", "credito_id": "k1", "fecha": fecha, "monto": 10},
                "pagos",
                f"p{i}",
            )
        rows = store.query("pagos", credito_id="k1", order_by="fecha")
        assert [r["fecha"] for r in rows] == [100, 200, 300]
        latest = store.query("pagos", order_by="fecha", descending=True, limit=1)
        assert latest[0]["fecha"] == 300

    def test_none_filter_matches_null(self, store):
        store.write_atomic({"id": "c1", "tenant_id": "t1"}, "clientes", "c1")
        store.write_atomic({"id": "c2", "tenant_id": "t1", "ruta_id": "r1"}, "clientes", "c2")
        rows = store.query("clientes", tenant_id="t1", ruta_id=None)
        assert [r["id"] for r in rows] == ["c1"]

    def test_non_indexed_column_rejected(self, store):
        with pytest.raises(ValueError, match="not indexed"):
            store.query("clientes", telefono="555")

    def test_list_ids(self, store):
        store.write_atomic(client("b"), "clientes", "b")
        store.write_atomic(client("a"), "clientes", "a")
        assert store.list_ids("clientes") == ["a", "b"]


class TestStatsAndMaintenance:
    def test_tenant_scenario(self, store):
        """A tenant write lands in primary and a backup; stats see it."""
        tenant = {"id": "tenant-1", "nombre": "Cobros SAS", "usuarios_contratados": 10}

        result = store.write_atomic(tenant, "tenants", "tenant-1")

        assert "primary" in result.layers_written
        assert "backup" in result.layers_written or "blob" in result.layers_written
        stats = store.get_storage_stats()
        assert stats.total > 0
        assert stats.primary.records == 1
        assert store.read_with_fallback("tenants", "tenant-1").data["usuarios_contratados"] == 10

    def test_clear_backups_keeps_primary(self, store):
        store.write_atomic(client("c1"), "clientes", "c1")
        store.write_atomic(client("c2"), "clientes", "c2")

        removed = store.clear_backups()

        assert removed == 4
        assert store.backup.get("clientes", "c1") is None
        assert store.blob.get("clientes", "c1") is None
        assert store.primary.get("clientes", "c1") == client("c1")
        stats = store.get_storage_stats()
        assert stats.backup.records == 0
        assert stats.blob.records == 0

    def test_delete_removes_from_all_layers(self, store):
        store.write_atomic(client("c1"), "clientes", "c1")
        store.delete("clientes", "c1")
        assert store.read_with_fallback("clientes", "c1").success is False

    def test_meta_roundtrip(self, store):
        assert store.get_meta("k") is None
        store.set_meta("k", "v")
        assert store.get_meta("k") == "v"

    def test_locks_released_after_use(self, store):
        for i in range(20):
            store.write_atomic(client(f"c{i}"), "clientes", f"c{i}")
            store.read_with_fallback("clientes", f"c{i}")
        with store.record_lock("clientes", "c0"):
            assert ("clientes", "c0") in store._locks
        gc.collect()
        assert len(store._locks) == 0


class TestMetadataMirror:
    def test_meta_survives_database_loss(self, tmp_path):
        root = tmp_path / "device"
        LayeredStore.open(root).set_meta("device_id", "dev-A")
        for path in root.glob("fieldsync.db*"):
            path.unlink()

        reopened = LayeredStore.open(root)

        assert reopened.primary.get_meta("device_id") is None
        assert reopened.get_meta("device_id") == "dev-A"
        assert reopened.primary.get_meta("device_id") == "dev-A"

    def test_falls_back_to_blob(self, store):
        store.set_meta("k", "v")
        store.primary.set_meta("k", None)
        store.backup.delete("sync_meta", "k")
        assert store.get_meta("k") == "v"

    def test_clearing_meta_clears_mirrors(self, store):
        store.set_meta("k", "v")
        store.set_meta("k", None)
        assert store.backup.get("sync_meta", "k") is None
        assert store.blob.get("sync_meta", "k") is None
        assert store.get_meta("k") is None

    def test_clear_backups_keeps_mirror(self, store):
        store.set_meta("k", "v")
        store.write_atomic(client("c1"), "clientes", "c1")

        assert store.clear_backups() == 2
        assert store.backup.get("sync_meta", "k") == {"key": "k", "value": "v"}
        assert store.blob.get("sync_meta", "k") == {"key": "k", "value": "v"}

    def test_mirror_failure_is_not_raised(self, store):
        with patch.object(
            store.backup, "put", side_effect=StorageLayerUnavailable("backup", "quota")
        ):
            store.set_meta("k", "v")
        assert store.get_meta("k") == "v"
        assert store.blob.get("sync_meta", "k") == {"key": "k", "value": "v"}


class TestBackupLayer:
    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "backup.json"
        KeyValueBackupLayer(path).put("clientes", "c1", {"id": "c1"})
        assert KeyValueBackupLayer(path).get("clientes", "c1") == {"id": "c1"}

    def test_envelope_format(self, tmp_path):
        path = tmp_path / "backup.json"
        KeyValueBackupLayer(path).put("clientes", "c1", {"id": "c1"})
        with open(path) as f:
            envelope = json.load(f)["clientes:c1"]
        assert envelope["data"] == {"id": "c1"}
        assert envelope["version"] == 1
        assert isinstance(envelope["timestamp"], int)

    def test_prunes_oldest_when_over_capacity(self, tmp_path):
        layer = KeyValueBackupLayer(tmp_path / "backup.json", max_bytes=600)
        for i in range(10):
            layer.put("clientes", str(i), {"id": str(i), "v": "x" * 50})
        assert layer.get("clientes", "9") is not None
        assert layer.get("clientes", "0") is None
        assert layer.stats().bytes <= 600

    def test_oversized_record_raises(self, tmp_path):
        layer = KeyValueBackupLayer(tmp_path / "backup.json", max_bytes=200)
        with pytest.raises(StorageLayerUnavailable):
            layer.put("clientes", "big", {"id": "big", "v": "x" * 500})

    def test_malformed_file_starts_empty(self, tmp_path):
        path = tmp_path / "backup.json"
        path.write_text("not json")
        assert KeyValueBackupLayer(path).stats().records == 0


class TestBlobLayer:
    def test_ids_are_path_safe(self, tmp_path):
        layer = BlobLayer(tmp_path / "blobs")
        layer.put("clientes", "../escape", {"id": "../escape"})
        assert layer.get("clientes", "../escape") == {"id": "../escape"}
        assert not (tmp_path / "escape.json").exists()

    def test_clear_counts_files(self, tmp_path):
        layer = BlobLayer(tmp_path / "blobs")
        layer.put("clientes", "a", {"id": "a"})
        layer.put("pagos", "b", {"id": "b"})
        assert layer.clear() == 2
        assert layer.get("clientes", "a") is None


def test_open_creates_layout(tmp_path):
    store = LayeredStore.open(tmp_path / "data")
    store.write_atomic({"id": "t"}, "tenants", "t")
    assert (tmp_path / "data" / "fieldsync.db").exists()
    assert (tmp_path / "data" / "backup.json").exists()
    assert (tmp_path / "data" / "blobs").is_dir()
