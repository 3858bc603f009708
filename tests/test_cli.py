"""Tests for the fieldsync command line."""

import json
import os

import pytest

from fieldsync import FieldSync, Settings
from fieldsync.cli.__main__ import main


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("FIELDSYNC_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def home(tmp_path):
    return tmp_path / "replica"


@pytest.fixture
def seeded(home):
    """A replica holding one client and one payment."""
    fs = FieldSync(Settings.load(home=home, pbkdf2_iterations=1000))
    client = fs.save_record("clientes", {"tenant_id": "t1", "nombre": "Ana"})
    fs.save_record("pagos", {"credito_id": "k1", "monto": 10_000}, actor="cob-1")
    fs.close()
    return client


def run(home, *args):
    main(["--home", str(home), *args])


class TestStatus:
    def test_json(self, home, seeded, capsys):
        run(home, "status", "--json")
        status = json.loads(capsys.readouterr().out)
        assert status["backend"] is None
        assert status["encryption_unlocked"] is False
        assert status["queue"]["pending"] == 2
        assert status["sync_state"] is None

    def test_text(self, home, capsys):
        run(home, "status")
        out = capsys.readouterr().out
        assert "(not configured)" in out
        assert "locked" in out

    def test_device_id_stable(self, home, capsys):
        run(home, "status", "--json")
        first = json.loads(capsys.readouterr().out)["device_id"]
        run(home, "status", "--json")
        assert json.loads(capsys.readouterr().out)["device_id"] == first


class TestSync:
    def test_without_backend_fails(self, home, capsys):
        with pytest.raises(SystemExit) as exc:
            run(home, "sync")
        assert exc.value.code == 1
        assert "No backend configured" in capsys.readouterr().out


class TestStorage:
    def test_stats(self, home, seeded, capsys):
        run(home, "stats", "--json")
        stats = json.loads(capsys.readouterr().out)
        assert stats["primary"]["records"] >= 2
        assert stats["total"] > 0

    def test_stats_text(self, home, seeded, capsys):
        run(home, "stats")
        out = capsys.readouterr().out
        assert "primary" in out
        assert "total" in out

    def test_clear_backups(self, home, seeded, capsys):
        run(home, "clear-backups")
        # client, payment and its audit event, in backup and blob
        assert "Cleared 6 backup entries" in capsys.readouterr().out
        run(home, "integrity")
        assert "Checked 2 records, 0 issue(s)" in capsys.readouterr().out


class TestAudit:
    def test_verify_empty(self, home, capsys):
        run(home, "audit", "verify")
        assert "Audit chain intact (0 events)" in capsys.readouterr().out

    def test_verify_with_payment(self, home, seeded, capsys):
        run(home, "audit", "verify", "--json")
        check = json.loads(capsys.readouterr().out)
        assert check["valid"] is True
        assert check["checked"] == 1

    def test_fraud_scan(self, home, seeded, capsys):
        run(home, "audit", "fraud", "--actor", "cob-1")
        assert "No suspicious patterns found" in capsys.readouterr().out

    def test_fraud_requires_actor(self, home):
        with pytest.raises(SystemExit):
            run(home, "audit", "fraud")

    def test_fraud_scan_on_tampered_log(self, home, seeded, capsys):
        fs = FieldSync(Settings.load(home=home))
        event = fs.store.primary.get("audit_log", "1")
        event["payload"]["monto"] = 10
        fs.store.primary.put("audit_log", "1", event)
        fs.close()

        with pytest.raises(SystemExit) as exc:
            run(home, "audit", "fraud", "--actor", "cob-1")

        assert exc.value.code == 1
        assert "Audit chain broken at event 0" in capsys.readouterr().out


class TestQueue:
    def test_failed_empty(self, home, capsys):
        run(home, "queue", "failed")
        assert "No failed entries" in capsys.readouterr().out

    def test_retry_nothing(self, home, capsys):
        run(home, "queue", "retry")
        assert "Requeued 0 entries" in capsys.readouterr().out

    def test_prune(self, home, capsys):
        run(home, "queue", "prune", "--days", "1")
        assert "Pruned 0 synced entries" in capsys.readouterr().out

    def test_conflicts_empty(self, home, capsys):
        run(home, "conflicts")
        assert "No conflicts awaiting review" in capsys.readouterr().out


class TestIntegrity:
    def test_clean(self, home, seeded, capsys):
        run(home, "integrity")
        assert "Checked 2 records, 0 issue(s)" in capsys.readouterr().out

    def test_corruption_exits_nonzero(self, home, seeded, capsys):
        fs = FieldSync(Settings.load(home=home))
        raw = fs.store.primary.get("clientes", seeded["id"])
        raw["nombre"] = "Eve"
        fs.store.primary.put("clientes", seeded["id"], raw)
        fs.close()

        with pytest.raises(SystemExit) as exc:
            run(home, "integrity", "--table", "clientes")

        assert exc.value.code == 1
        assert "checksum mismatch" in capsys.readouterr().out

    def test_unknown_table(self, home):
        with pytest.raises(SystemExit) as exc:
            run(home, "integrity", "--table", "nope")
        assert exc.value.code == 1
