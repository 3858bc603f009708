"""Append-only, hash-chained audit log.

Each event's hash covers its content and the previous event's hash, so
any edit, removal or reordering of a stored event breaks verification
from that point on. Events are written through the layered store; there
is no update or delete API.
"""

import hashlib
import json
import logging
import math
import threading
from collections import Counter
from typing import Any, Dict, List, Optional

from fieldsync.errors import AuditChainBroken
from fieldsync.records import canonical_serialize
from fieldsync.storage.layered import LayeredStore
from fieldsync.types import GENESIS_HASH, AuditEvent, ChainVerification, FraudAlert
from fieldsync.utils import now_ms

logger = logging.getLogger(__name__)

AUDIT_TABLE = "audit_log"
HEAD_META_KEY = "audit_head"

PAYMENT_ACTION = "pagos.create"
RAPID_PAYMENT_WINDOW_MS = 5 * 60 * 1000
RAPID_PAYMENT_LIMIT = 10
DUPLICATE_PAYMENT_WINDOW_MS = 60 * 1000
IMPOSSIBLE_TRAVEL_KM = 100
IMPOSSIBLE_TRAVEL_WINDOW_MS = 10 * 60 * 1000
SUSPICIOUS_AMOUNT = 1_000_000


def compute_event_hash(
    timestamp: int,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: Dict[str, Any],
    prev_hash: str,
) -> str:
    content = {
        "timestamp": timestamp,
        "actor": actor,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "payload": payload,
        "prev_hash": prev_hash,
    }
    return hashlib.sha256(canonical_serialize(content).encode("utf-8")).hexdigest()


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two coordinates, in kilometres."""
    r = 6371.0
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return r * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


class AuditChain:
    """Hash-chained audit trail stored in the ``audit_log`` table.

    Event ids are sequence numbers starting at 1; the chain head (last
    sequence number and hash) is kept in sync metadata. Readers that
    interpret events (state reconstruction, fraud scans, counts) verify
    the chain first and raise AuditChainBroken instead of trusting it.
    """

    def __init__(self, store: LayeredStore):
        self._store = store
        self._lock = threading.Lock()

    def _head(self) -> Dict[str, Any]:
        """Last sequence number and hash.

        Walks forward from the recorded head over any events stored past
        it, so a stale or lost head never reuses a sequence number.
        """
        raw = self._store.get_meta(HEAD_META_KEY)
        head = json.loads(raw) if raw else {"seq": 0, "hash": GENESIS_HASH}
        recorded = head["seq"]
        while True:
            found = self._store.read_with_fallback(AUDIT_TABLE, str(head["seq"] + 1))
            if not found.success:
                break
            head = {"seq": head["seq"] + 1, "hash": found.data.get("hash", "")}
        if head["seq"] != recorded:
            logger.warning(f"Audit head behind stored events; recovered at event {head['seq']}")
        return head

    def append(
        self,
        actor: str,
        action: str,
        entity_type: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> AuditEvent:
        """Append an event linked to the current head of the chain."""
        payload = payload or {}
        timestamp = timestamp if timestamp is not None else now_ms()
        with self._lock:
            head = self._head()
            seq = head["seq"] + 1
            prev_hash = head["hash"]
            event = AuditEvent(
                id=seq,
                timestamp=timestamp,
                actor=actor,
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id),
                payload=payload,
                prev_hash=prev_hash,
                hash=compute_event_hash(
                    timestamp, actor, action, entity_type, str(entity_id), payload, prev_hash
                ),
            )
            record = event.to_dict()
            record["seq"] = seq
            self._store.write_atomic(record, AUDIT_TABLE, str(seq))
            self._store.set_meta(HEAD_META_KEY, json.dumps({"seq": seq, "hash": event.hash}))
        logger.debug(f"Audit event {seq}: {actor} {action} {entity_type}/{entity_id}")
        return event

    def __len__(self) -> int:
        return self._head()["seq"]

    def verify_chain(self) -> ChainVerification:
        """Walk the chain from genesis. ``broken_at`` is the zero-based index."""
        last = self._head()["seq"]
        expected_prev = GENESIS_HASH
        for index in range(last):
            result = self._store.read_with_fallback(AUDIT_TABLE, str(index + 1))
            if not result.success:
                return self._broken(index, f"event missing: {result.error}")
            try:
                event = AuditEvent.from_dict(result.data)
            except (KeyError, TypeError, ValueError) as e:
                return self._broken(index, f"malformed event: {e}")
            if event.id != index + 1:
                return self._broken(index, f"sequence mismatch: found id {event.id}")
            if event.prev_hash != expected_prev:
                return self._broken(index, "prev_hash does not match previous event")
            recomputed = compute_event_hash(
                event.timestamp,
                event.actor,
                event.action,
                event.entity_type,
                event.entity_id,
                event.payload,
                event.prev_hash,
            )
            if recomputed != event.hash:
                return self._broken(index, "content does not match stored hash")
            expected_prev = event.hash
        return ChainVerification(valid=True, checked=last)

    @staticmethod
    def _broken(index: int, reason: str) -> ChainVerification:
        logger.error(f"Audit chain broken at index {index}: {reason}")
        return ChainVerification(valid=False, checked=index, broken_at=index, error=reason)

    def require_intact(self) -> None:
        """Raise AuditChainBroken if verification fails."""
        result = self.verify_chain()
        if not result.valid:
            raise AuditChainBroken(result.broken_at, result.error or "unknown")

    # === Queries ===

    def get_events(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        actor: Optional[str] = None,
        action: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEvent]:
        filters = {}
        if entity_type is not None:
            filters["entity_type"] = entity_type
        if entity_id is not None:
            filters["entity_id"] = str(entity_id)
        if actor is not None:
            filters["actor"] = actor
        if action is not None:
            filters["action"] = action
        rows = self._store.query(AUDIT_TABLE, order_by="seq", limit=limit, **filters)
        return [AuditEvent.from_dict(row) for row in rows]

    def count_by_action(self) -> Dict[str, int]:
        self.require_intact()
        return dict(Counter(event.action for event in self.get_events()))

    def reconstruct_state(
        self, entity_type: str, entity_id: str, at: Optional[int] = None
    ) -> Optional[Dict[str, Any]]:
        """Replay create/update/delete events for one entity up to ``at``.

        Raises:
            AuditChainBroken: the chain fails verification.
        """
        self.require_intact()
        state: Optional[Dict[str, Any]] = None
        for event in self.get_events(entity_type=entity_type, entity_id=entity_id):
            if at is not None and event.timestamp > at:
                break
            kind = event.action.rsplit(".", 1)[-1]
            if kind == "create":
                state = dict(event.payload)
            elif kind == "update":
                state = {**(state or {}), **event.payload}
            elif kind == "delete":
                state = None
        return state

    def detect_fraud_patterns(
        self, actor: str, window_ms: int = 3_600_000, now: Optional[int] = None
    ) -> List[FraudAlert]:
        """Scan an actor's recent payment events for suspicious patterns.

        Raises:
            AuditChainBroken: the chain fails verification.
        """
        self.require_intact()
        now = now if now is not None else now_ms()
        payments = [
            e
            for e in self.get_events(actor=actor, action=PAYMENT_ACTION)
            if now - window_ms <= e.timestamp <= now
        ]
        payments.sort(key=lambda e: e.timestamp)
        alerts: List[FraudAlert] = []

        rapid = [e for e in payments if e.timestamp > now - RAPID_PAYMENT_WINDOW_MS]
        if len(rapid) > RAPID_PAYMENT_LIMIT:
            alerts.append(
                FraudAlert(
                    "rapid_payments",
                    "high",
                    actor,
                    f"{len(rapid)} payments in 5 minutes",
                    [e.id for e in rapid],
                )
            )

        located = [
            e
            for e in payments
            if e.payload.get("latitude") is not None and e.payload.get("longitude") is not None
        ]
        for prev, curr in zip(located, located[1:]):
            elapsed = curr.timestamp - prev.timestamp
            distance = haversine_km(
                float(prev.payload["latitude"]),
                float(prev.payload["longitude"]),
                float(curr.payload["latitude"]),
                float(curr.payload["longitude"]),
            )
            if distance > IMPOSSIBLE_TRAVEL_KM and elapsed < IMPOSSIBLE_TRAVEL_WINDOW_MS:
                alerts.append(
                    FraudAlert(
                        "impossible_location",
                        "high",
                        actor,
                        f"Moved {distance:.1f}km in {elapsed / 60000:.1f} minutes",
                        [prev.id, curr.id],
                    )
                )

        for i, first in enumerate(payments):
            for second in payments[i + 1 :]:
                if second.timestamp - first.timestamp >= DUPLICATE_PAYMENT_WINDOW_MS:
                    break
                if (
                    first.payload.get("cliente_id") is not None
                    and first.payload.get("cliente_id") == second.payload.get("cliente_id")
                    and first.payload.get("monto") == second.payload.get("monto")
                ):
                    alerts.append(
                        FraudAlert(
                            "duplicate_payment",
                            "medium",
                            actor,
                            f"Duplicate payment of {first.payload.get('monto')} "
                            f"for client {first.payload.get('cliente_id')}",
                            [first.id, second.id],
                        )
                    )

        for event in payments:
            amount = event.payload.get("monto")
            if isinstance(amount, (int, float)) and amount > SUSPICIOUS_AMOUNT:
                alerts.append(
                    FraudAlert(
                        "suspicious_amount",
                        "medium",
                        actor,
                        f"Unusually large payment: {amount}",
                        [event.id],
                    )
                )

        if alerts:
            logger.warning(f"Detected {len(alerts)} suspicious pattern(s) for {actor}")
        return alerts
