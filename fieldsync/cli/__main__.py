"""
fieldsync CLI - inspect and drive a local replica.

Usage:
    fieldsync status [--json]
    fieldsync sync [--force] [--json]
    fieldsync stats [--json]
    fieldsync clear-backups
    fieldsync audit verify [--json]
    fieldsync audit fraud --actor A [--json]
    fieldsync queue failed [--json]
    fieldsync queue retry [ID]...
    fieldsync queue prune [--days N]
    fieldsync conflicts [--json]
    fieldsync integrity [--table T] [--json]
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict

from fieldsync import FieldSync, Settings
from fieldsync.errors import AuditChainBroken, FieldSyncError

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_status(args, fs: FieldSync):
    """Show device, queue and sync status."""
    stats = fs.get_queue_stats()
    engine = fs.engine
    status = {
        "device_id": fs.device_id,
        "backend": fs.settings.backend_url,
        "encryption_unlocked": fs.gate.is_initialized(),
        "queue": asdict(stats),
        "sync_state": engine.state.value if engine else None,
        "last_sync_at": engine.last_sync_at if engine else None,
    }
    if args.json:
        _print_json(status)
        return
    print(f"Device:     {status['device_id']}")
    print(f"Backend:    {status['backend'] or '(not configured)'}")
    print(f"Encryption: {'unlocked' if status['encryption_unlocked'] else 'locked'}")
    print(f"Queue:      {stats.pending} pending, {stats.failed} failed, {stats.synced} synced")
    if engine:
        print(f"Sync state: {status['sync_state']}")
        print(f"Last sync:  {status['last_sync_at'] or 'never'}")


def cmd_sync(args, fs: FieldSync):
    """Run one sync cycle."""
    result = fs.sync(force=args.force)
    if args.json:
        _print_json(asdict(result))
    elif result.skipped:
        print(f"Sync skipped: {result.skipped}")
    else:
        print(
            f"Uploaded {result.uploaded}, downloaded {result.downloaded}, "
            f"merged {result.merged}, {len(result.review)} for review"
        )
        for error in result.errors:
            print(f"  error: {error}")
    if not result.success:
        sys.exit(1)


def cmd_stats(args, fs: FieldSync):
    """Show per-layer storage usage."""
    stats = fs.get_storage_stats()
    if args.json:
        data = asdict(stats)
        data["total"] = stats.total
        _print_json(data)
        return
    for name in ("primary", "backup", "blob"):
        layer = getattr(stats, name)
        flag = "" if layer.available else " (unavailable)"
        print(f"{name:8} {layer.records:6} records {layer.bytes:10} bytes{flag}")
    print(f"{'total':8} {stats.total_records:6} records {stats.total:10} bytes")


def cmd_clear_backups(args, fs: FieldSync):
    removed = fs.clear_backups()
    print(f"Cleared {removed} backup entries")


def cmd_audit(args, fs: FieldSync):
    """Handle audit subcommands."""
    if args.audit_action == "verify":
        check = fs.verify_audit_chain()
        if args.json:
            _print_json(asdict(check))
        elif check.valid:
            print(f"Audit chain intact ({check.checked} events)")
        else:
            print(f"Audit chain broken at event {check.broken_at}: {check.error}")
        if not check.valid:
            sys.exit(1)
    elif args.audit_action == "fraud":
        try:
            alerts = fs.audit.detect_fraud_patterns(actor=args.actor)
        except AuditChainBroken as e:
            print(f"Audit chain broken at event {e.index}: {e.reason}")
            print("Refusing to scan a tampered log; run 'fieldsync audit verify'")
            sys.exit(1)
        if args.json:
            _print_json([asdict(a) for a in alerts])
        elif not alerts:
            print("No suspicious patterns found")
        else:
            for alert in alerts:
                print(f"[{alert.severity}] {alert.pattern}: {alert.message}")


def cmd_queue(args, fs: FieldSync):
    """Handle outbox subcommands."""
    if args.queue_action == "failed":
        entries = fs.get_failed_entries()
        if args.json:
            _print_json([asdict(e) for e in entries])
        elif not entries:
            print("No failed entries")
        else:
            for e in entries:
                print(f"#{e.id} {e.operation} {e.table}/{e.record_id} "
                      f"after {e.retry_count} attempts: {e.last_error}")
    elif args.queue_action == "retry":
        count = fs.requeue_failed(args.ids or None)
        print(f"Requeued {count} entries")
    elif args.queue_action == "prune":
        count = fs.prune_synced(args.days)
        print(f"Pruned {count} synced entries")


def cmd_conflicts(args, fs: FieldSync):
    """List conflicts parked for review."""
    items = fs.get_conflicts()
    if args.json:
        _print_json([asdict(i) for i in items])
        return
    if not items:
        print("No conflicts awaiting review")
        return
    for item in items:
        fields = ", ".join(item.fields) if item.fields else "-"
        print(f"{item.table}/{item.record_id}: {item.reason} (fields: {fields})")


def cmd_integrity(args, fs: FieldSync):
    """Recompute record checksums."""
    report = fs.verify_integrity(args.table)
    if args.json:
        _print_json({"checked": report.checked, "ok": report.ok,
                     "issues": [asdict(i) for i in report.issues]})
    else:
        print(f"Checked {report.checked} records, {len(report.issues)} issue(s)")
        for issue in report.issues:
            print(f"  {issue.table}/{issue.record_id}: {issue.problem}")
    if not report.ok:
        sys.exit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="fieldsync",
        description="Offline-first data layer for field operations",
    )
    parser.add_argument("--home", help="Data directory (default: $FIELDSYNC_HOME or ~/.fieldsync)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_status = subparsers.add_parser("status", help="Show sync status")
    p_status.add_argument("--json", "-j", action="store_true")

    p_sync = subparsers.add_parser("sync", help="Run a sync cycle")
    p_sync.add_argument("--force", "-f", action="store_true",
                        help="Run even while sync is paused after repeated failures")
    p_sync.add_argument("--json", "-j", action="store_true")

    p_stats = subparsers.add_parser("stats", help="Show storage usage per layer")
    p_stats.add_argument("--json", "-j", action="store_true")

    subparsers.add_parser("clear-backups", help="Drop the backup and blob layers")

    p_audit = subparsers.add_parser("audit", help="Audit chain operations")
    audit_sub = p_audit.add_subparsers(dest="audit_action", required=True)
    a_verify = audit_sub.add_parser("verify", help="Verify the hash chain")
    a_verify.add_argument("--json", "-j", action="store_true")
    a_fraud = audit_sub.add_parser("fraud", help="Scan payments for suspicious patterns")
    a_fraud.add_argument("--actor", required=True, help="Collector to scan")
    a_fraud.add_argument("--json", "-j", action="store_true")

    p_queue = subparsers.add_parser("queue", help="Outbox operations")
    queue_sub = p_queue.add_subparsers(dest="queue_action", required=True)
    q_failed = queue_sub.add_parser("failed", help="List dead-lettered entries")
    q_failed.add_argument("--json", "-j", action="store_true")
    q_retry = queue_sub.add_parser("retry", help="Requeue dead-lettered entries")
    q_retry.add_argument("ids", nargs="*", type=int, help="Entry IDs (default: all)")
    q_prune = queue_sub.add_parser("prune", help="Delete old synced entries")
    q_prune.add_argument("--days", type=int, default=7)

    p_conflicts = subparsers.add_parser("conflicts", help="List conflicts awaiting review")
    p_conflicts.add_argument("--json", "-j", action="store_true")

    p_integrity = subparsers.add_parser("integrity", help="Verify record checksums")
    p_integrity.add_argument("--table", "-t", help="Only this table")
    p_integrity.add_argument("--json", "-j", action="store_true")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        fs = FieldSync(Settings.load(home=args.home))
    except (FieldSyncError, OSError, ValueError) as e:
        logger.error(f"Failed to open replica: {e}")
        sys.exit(1)

    try:
        if args.command == "status":
            cmd_status(args, fs)
        elif args.command == "sync":
            cmd_sync(args, fs)
        elif args.command == "stats":
            cmd_stats(args, fs)
        elif args.command == "clear-backups":
            cmd_clear_backups(args, fs)
        elif args.command == "audit":
            cmd_audit(args, fs)
        elif args.command == "queue":
            cmd_queue(args, fs)
        elif args.command == "conflicts":
            cmd_conflicts(args, fs)
        elif args.command == "integrity":
            cmd_integrity(args, fs)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except FieldSyncError as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)
    finally:
        fs.close()


if __name__ == "__main__":
    main()
