"""Rule store and triggered-alert log adapters.

Both come in two flavours: an in-memory implementation that pushes changes
to subscribers synchronously, and a Firestore implementation over
``users/{uid}/alerts`` and ``users/{uid}/triggeredAlerts``.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from firebase_admin import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from .models.alerts import AlertRule, Contact, TriggeredAlertRecord
from .validation import parse_rule_data

logger = logging.getLogger(__name__)

RulesCallback = Callable[[list[AlertRule]], None]
RecordsCallback = Callable[[list[TriggeredAlertRecord]], None]

DEFAULT_HISTORY_LIMIT = 50
_BATCH_LIMIT = 450


class Subscription:
    """Handle returned by every ``subscribe`` call; ``close()`` is idempotent."""

    def __init__(self, closer: Callable[[], None], name: str = "") -> None:
        self._closer = closer
        self._closed = False
        self.name = name

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._closer()
        except Exception:
            logger.exception("Failed to close subscription %s", self.name)


def _rule_from_fields(
    user_id: str, rule_id: str, fields: Mapping[str, Any], created_at: float | None
) -> AlertRule:
    now = time.time()
    return AlertRule(
        id=rule_id,
        user_id=user_id,
        parameter=fields["parameter"],
        comparison=fields["comparison"],
        threshold=fields["threshold"],
        contact=Contact(type=fields["contact_type"], value=fields["contact_value"]),
        critical=fields["critical"],
        active=fields["active"],
        created_at=created_at if created_at is not None else now,
        updated_at=now,
    )


class RuleStore:
    def subscribe_active_rules(self, user_id: str, callback: RulesCallback) -> Subscription:
        raise NotImplementedError

    def list_rules(self, user_id: str) -> list[AlertRule]:
        raise NotImplementedError

    def get_rule(self, user_id: str, rule_id: str) -> AlertRule | None:
        raise NotImplementedError

    def add_rule(
        self, user_id: str, data: Mapping[str, Any]
    ) -> tuple[AlertRule | None, list[str]]:
        raise NotImplementedError

    def update_rule(
        self, user_id: str, rule_id: str, data: Mapping[str, Any]
    ) -> tuple[AlertRule | None, list[str]]:
        raise NotImplementedError

    def set_active(self, user_id: str, rule_id: str, active: bool) -> AlertRule | None:
        raise NotImplementedError

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        raise NotImplementedError


class TriggeredLog:
    def append(self, user_id: str, record: TriggeredAlertRecord) -> TriggeredAlertRecord:
        raise NotImplementedError

    def subscribe(self, user_id: str, callback: RecordsCallback) -> Subscription:
        raise NotImplementedError

    def list_recent(
        self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[TriggeredAlertRecord]:
        raise NotImplementedError

    def unread_count(self, user_id: str) -> int:
        return sum(1 for r in self.list_recent(user_id, limit=0) if not r.seen)

    def mark_seen(self, user_id: str, record_id: str) -> bool:
        raise NotImplementedError

    def delete(self, user_id: str, record_id: str) -> bool:
        raise NotImplementedError

    def delete_older_than(self, user_id: str, cutoff: float) -> int:
        raise NotImplementedError


# In-memory implementations


class MemoryRuleStore(RuleStore):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rules: dict[str, dict[str, AlertRule]] = {}
        self._subscribers: dict[str, list[RulesCallback]] = {}

    def _active(self, user_id: str) -> list[AlertRule]:
        rules = self._rules.get(user_id, {}).values()
        return sorted(
            (r for r in rules if r.active),
            key=lambda r: r.created_at or 0.0,
            reverse=True,
        )

    def _notify(self, user_id: str) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(user_id, []))
            active = self._active(user_id)
        for callback in callbacks:
            try:
                callback(list(active))
            except Exception:
                logger.exception("Rule subscriber failed for user %s", user_id)

    def subscribe_active_rules(self, user_id: str, callback: RulesCallback) -> Subscription:
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(callback)
            active = self._active(user_id)

        def _close() -> None:
            with self._lock:
                subs = self._subscribers.get(user_id, [])
                if callback in subs:
                    subs.remove(callback)

        callback(list(active))
        return Subscription(_close, name=f"rules:{user_id}")

    def list_rules(self, user_id: str) -> list[AlertRule]:
        with self._lock:
            rules = list(self._rules.get(user_id, {}).values())
        return sorted(rules, key=lambda r: r.created_at or 0.0, reverse=True)

    def get_rule(self, user_id: str, rule_id: str) -> AlertRule | None:
        with self._lock:
            return self._rules.get(user_id, {}).get(rule_id)

    def add_rule(
        self, user_id: str, data: Mapping[str, Any]
    ) -> tuple[AlertRule | None, list[str]]:
        fields, errors = parse_rule_data(data)
        if fields is None:
            return None, errors
        rule_id = secrets.token_urlsafe(8)
        rule = _rule_from_fields(user_id, rule_id, fields, None)
        with self._lock:
            self._rules.setdefault(user_id, {})[rule_id] = rule
        logger.info("Created alert rule %s for user %s", rule_id, user_id)
        self._notify(user_id)
        return rule, []

    def update_rule(
        self, user_id: str, rule_id: str, data: Mapping[str, Any]
    ) -> tuple[AlertRule | None, list[str]]:
        fields, errors = parse_rule_data(data)
        if fields is None:
            return None, errors
        with self._lock:
            existing = self._rules.get(user_id, {}).get(rule_id)
            if existing is None:
                return None, ["Alert not found"]
            rule = _rule_from_fields(user_id, rule_id, fields, existing.created_at)
            self._rules[user_id][rule_id] = rule
        self._notify(user_id)
        return rule, []

    def set_active(self, user_id: str, rule_id: str, active: bool) -> AlertRule | None:
        with self._lock:
            rule = self._rules.get(user_id, {}).get(rule_id)
            if rule is None:
                return None
            rule.active = bool(active)
            rule.updated_at = time.time()
        self._notify(user_id)
        return rule

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.get(user_id, {}).pop(rule_id, None)
        if removed is None:
            return False
        self._notify(user_id)
        return True


class MemoryTriggeredLog(TriggeredLog):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, list[TriggeredAlertRecord]] = {}
        self._subscribers: dict[str, list[RecordsCallback]] = {}

    def _sorted(self, user_id: str) -> list[TriggeredAlertRecord]:
        return sorted(
            self._records.get(user_id, []), key=lambda r: r.triggered_at, reverse=True
        )

    def _notify(self, user_id: str) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(user_id, []))
            records = self._sorted(user_id)
        for callback in callbacks:
            try:
                callback(list(records))
            except Exception:
                logger.exception("Triggered-log subscriber failed for user %s", user_id)

    def append(self, user_id: str, record: TriggeredAlertRecord) -> TriggeredAlertRecord:
        if record.id is None:
            record.id = secrets.token_urlsafe(8)
        with self._lock:
            self._records.setdefault(user_id, []).append(record)
        self._notify(user_id)
        return record

    def subscribe(self, user_id: str, callback: RecordsCallback) -> Subscription:
        with self._lock:
            self._subscribers.setdefault(user_id, []).append(callback)
            records = self._sorted(user_id)

        def _close() -> None:
            with self._lock:
                subs = self._subscribers.get(user_id, [])
                if callback in subs:
                    subs.remove(callback)

        callback(list(records))
        return Subscription(_close, name=f"triggered:{user_id}")

    def list_recent(
        self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[TriggeredAlertRecord]:
        with self._lock:
            records = self._sorted(user_id)
        return records[:limit] if limit > 0 else records

    def _find(self, user_id: str, record_id: str) -> TriggeredAlertRecord | None:
        for record in self._records.get(user_id, []):
            if record.id == record_id:
                return record
        return None

    def mark_seen(self, user_id: str, record_id: str) -> bool:
        with self._lock:
            record = self._find(user_id, record_id)
            if record is None:
                return False
            record.seen = True
        self._notify(user_id)
        return True

    def delete(self, user_id: str, record_id: str) -> bool:
        with self._lock:
            record = self._find(user_id, record_id)
            if record is None:
                return False
            self._records[user_id].remove(record)
        self._notify(user_id)
        return True

    def delete_older_than(self, user_id: str, cutoff: float) -> int:
        with self._lock:
            records = self._records.get(user_id, [])
            kept = [r for r in records if r.triggered_at >= cutoff]
            removed = len(records) - len(kept)
            if removed:
                self._records[user_id] = kept
        if removed:
            self._notify(user_id)
        return removed


# Firestore implementations


def _to_epoch(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Millisecond timestamps written by the web client.
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    timestamp = getattr(value, "timestamp", None)
    if callable(timestamp):
        try:
            return float(timestamp())
        except (TypeError, ValueError):
            return None
    return None


def rule_from_document(
    user_id: str, doc_id: str, data: Mapping[str, Any] | None
) -> AlertRule | None:
    """Build an AlertRule from a stored document, or None if it is unusable."""
    fields, errors = parse_rule_data(data or {})
    if fields is None:
        logger.warning("Ignoring malformed alert %s for user %s: %s", doc_id, user_id, errors)
        return None
    data = data or {}
    return AlertRule(
        id=doc_id,
        user_id=user_id,
        parameter=fields["parameter"],
        comparison=fields["comparison"],
        threshold=fields["threshold"],
        contact=Contact(type=fields["contact_type"], value=fields["contact_value"]),
        critical=fields["critical"],
        active=fields["active"],
        created_at=_to_epoch(data.get("createdAt")),
        updated_at=_to_epoch(data.get("updatedAt")),
    )


def rule_document(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "type": fields["contact_type"],
        "value": fields["contact_value"],
        "parameter": fields["parameter"],
        "threshold": fields["threshold"],
        "comparison": fields["comparison"],
        "critical": fields["critical"],
        "active": fields["active"],
    }


def record_document(record: TriggeredAlertRecord) -> dict[str, Any]:
    return {
        "alertId": record.alert_id,
        "type": record.contact_type,
        "contactValue": record.contact_value,
        "parameter": record.parameter,
        "comparison": record.comparison,
        "threshold": record.threshold,
        "currentValue": record.current_value,
        "critical": record.critical,
        "deviceId": record.device_id,
        "triggeredAt": datetime.fromtimestamp(record.triggered_at, tz=timezone.utc),
        "status": record.status,
        "error": record.error,
        "seen": record.seen,
    }


def record_from_document(doc_id: str, data: Mapping[str, Any]) -> TriggeredAlertRecord:
    def _num(key: str) -> float:
        try:
            return float(data.get(key) or 0.0)
        except (TypeError, ValueError):
            return 0.0

    return TriggeredAlertRecord(
        id=doc_id,
        alert_id=str(data.get("alertId") or ""),
        parameter=str(data.get("parameter") or ""),
        comparison=str(data.get("comparison") or ""),
        threshold=_num("threshold"),
        current_value=_num("currentValue"),
        critical=bool(data.get("critical")),
        device_id=str(data.get("deviceId") or ""),
        contact_type=str(data.get("type") or ""),
        contact_value=str(data.get("contactValue") or ""),
        triggered_at=_to_epoch(data.get("triggeredAt")) or 0.0,
        status=str(data.get("status") or "sent"),
        error=data.get("error"),
        seen=bool(data.get("seen") or data.get("read")),
    )


class FirestoreRuleStore(RuleStore):
    def __init__(self, client) -> None:
        self.client = client

    def _collection(self, user_id: str):
        return self.client.collection("users").document(user_id).collection("alerts")

    def subscribe_active_rules(self, user_id: str, callback: RulesCallback) -> Subscription:
        query = self._collection(user_id).where(filter=FieldFilter("active", "==", True))

        def _on_snapshot(docs, _changes, _read_time) -> None:
            rules = []
            for doc in docs:
                rule = rule_from_document(user_id, doc.id, doc.to_dict())
                if rule is not None:
                    rules.append(rule)
            rules.sort(key=lambda r: r.created_at or 0.0, reverse=True)
            try:
                callback(rules)
            except Exception:
                logger.exception("Rule subscriber failed for user %s", user_id)

        watch = query.on_snapshot(_on_snapshot)
        return Subscription(watch.unsubscribe, name=f"rules:{user_id}")

    def list_rules(self, user_id: str) -> list[AlertRule]:
        # order_by would drop documents without createdAt
        rules = []
        for doc in self._collection(user_id).stream():
            rule = rule_from_document(user_id, doc.id, doc.to_dict())
            if rule is not None:
                rules.append(rule)
        rules.sort(key=lambda r: r.created_at or 0.0, reverse=True)
        return rules

    def get_rule(self, user_id: str, rule_id: str) -> AlertRule | None:
        doc = self._collection(user_id).document(rule_id).get()
        if not doc.exists:
            return None
        return rule_from_document(user_id, doc.id, doc.to_dict())

    def add_rule(
        self, user_id: str, data: Mapping[str, Any]
    ) -> tuple[AlertRule | None, list[str]]:
        fields, errors = parse_rule_data(data)
        if fields is None:
            return None, errors
        document = rule_document(fields)
        document["createdAt"] = firestore.SERVER_TIMESTAMP
        document["updatedAt"] = firestore.SERVER_TIMESTAMP
        _, ref = self._collection(user_id).add(document)
        logger.info("Created alert rule %s for user %s", ref.id, user_id)
        return _rule_from_fields(user_id, ref.id, fields, None), []

    def update_rule(
        self, user_id: str, rule_id: str, data: Mapping[str, Any]
    ) -> tuple[AlertRule | None, list[str]]:
        fields, errors = parse_rule_data(data)
        if fields is None:
            return None, errors
        ref = self._collection(user_id).document(rule_id)
        snapshot = ref.get()
        if not snapshot.exists:
            return None, ["Alert not found"]
        document = rule_document(fields)
        document["updatedAt"] = firestore.SERVER_TIMESTAMP
        ref.update(document)
        created_at = _to_epoch((snapshot.to_dict() or {}).get("createdAt"))
        return _rule_from_fields(user_id, rule_id, fields, created_at), []

    def set_active(self, user_id: str, rule_id: str, active: bool) -> AlertRule | None:
        ref = self._collection(user_id).document(rule_id)
        if not ref.get().exists:
            return None
        ref.update({"active": bool(active), "updatedAt": firestore.SERVER_TIMESTAMP})
        return self.get_rule(user_id, rule_id)

    def delete_rule(self, user_id: str, rule_id: str) -> bool:
        ref = self._collection(user_id).document(rule_id)
        if not ref.get().exists:
            return False
        ref.delete()
        return True


class FirestoreTriggeredLog(TriggeredLog):
    def __init__(self, client) -> None:
        self.client = client

    def _collection(self, user_id: str):
        return (
            self.client.collection("users").document(user_id).collection("triggeredAlerts")
        )

    def _newest_first(self, user_id: str):
        return self._collection(user_id).order_by(
            "triggeredAt", direction=firestore.Query.DESCENDING
        )

    def append(self, user_id: str, record: TriggeredAlertRecord) -> TriggeredAlertRecord:
        _, ref = self._collection(user_id).add(record_document(record))
        record.id = ref.id
        logger.debug(
            "Logged %s alert %s for user %s", record.status, record.alert_id, user_id
        )
        return record

    def subscribe(self, user_id: str, callback: RecordsCallback) -> Subscription:
        def _on_snapshot(docs, _changes, _read_time) -> None:
            records = [record_from_document(doc.id, doc.to_dict() or {}) for doc in docs]
            try:
                callback(records)
            except Exception:
                logger.exception("Triggered-log subscriber failed for user %s", user_id)

        watch = self._newest_first(user_id).on_snapshot(_on_snapshot)
        return Subscription(watch.unsubscribe, name=f"triggered:{user_id}")

    def list_recent(
        self, user_id: str, limit: int = DEFAULT_HISTORY_LIMIT
    ) -> list[TriggeredAlertRecord]:
        query = self._newest_first(user_id)
        if limit > 0:
            query = query.limit(limit)
        return [record_from_document(doc.id, doc.to_dict() or {}) for doc in query.stream()]

    def mark_seen(self, user_id: str, record_id: str) -> bool:
        ref = self._collection(user_id).document(record_id)
        if not ref.get().exists:
            return False
        ref.update({"seen": True})
        return True

    def delete(self, user_id: str, record_id: str) -> bool:
        ref = self._collection(user_id).document(record_id)
        if not ref.get().exists:
            return False
        ref.delete()
        return True

    def delete_older_than(self, user_id: str, cutoff: float) -> int:
        cutoff_dt = datetime.fromtimestamp(cutoff, tz=timezone.utc)
        query = self._collection(user_id).where(
            filter=FieldFilter("triggeredAt", "<", cutoff_dt)
        )
        batch = self.client.batch()
        pending = 0
        removed = 0
        for doc in query.stream():
            batch.delete(doc.reference)
            pending += 1
            removed += 1
            if pending >= _BATCH_LIMIT:
                batch.commit()
                batch = self.client.batch()
                pending = 0
        if pending:
            batch.commit()
        return removed


# Device access


def device_users(owner_id: Any, shared_with: Any) -> list[str]:
    """Owner first, then shared users, without duplicates."""
    users: list[str] = []
    candidates = [owner_id]
    if isinstance(shared_with, (list, tuple, set)):
        candidates.extend(shared_with)
    for user_id in candidates:
        if isinstance(user_id, str) and user_id and user_id not in users:
            users.append(user_id)
    return users


class DeviceDirectory:
    """Who may see a device: its owner plus the users it is shared with."""

    def users_for_device(self, device_id: str) -> list[str]:
        raise NotImplementedError

    def devices_by_user(self, device_ids: list[str]) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for device_id in device_ids:
            try:
                users = self.users_for_device(device_id)
            except Exception:
                logger.exception("Failed resolving users for device %s", device_id)
                continue
            if not users:
                logger.warning("Device %s has no owner; not watched", device_id)
            for user_id in users:
                out.setdefault(user_id, []).append(device_id)
        return out


class MemoryDeviceDirectory(DeviceDirectory):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._devices: dict[str, list[str]] = {}

    def set_device(
        self, device_id: str, owner_id: str, shared_with: list[str] | None = None
    ) -> None:
        with self._lock:
            self._devices[device_id] = device_users(owner_id, shared_with or [])

    def users_for_device(self, device_id: str) -> list[str]:
        with self._lock:
            return list(self._devices.get(device_id, []))


class FirestoreDeviceDirectory(DeviceDirectory):
    def __init__(self, client) -> None:
        self.client = client

    def users_for_device(self, device_id: str) -> list[str]:
        doc = self.client.collection("devices").document(device_id).get()
        if not doc.exists:
            logger.warning("Device %s not found", device_id)
            return []
        data = doc.to_dict() or {}
        return device_users(data.get("ownerId"), data.get("sharedWith"))
