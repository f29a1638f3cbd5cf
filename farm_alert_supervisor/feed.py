"""Live sensor feed adapters.

The Realtime Database pushes ``put``/``patch`` events relative to the
listened path; the adapter folds them into the latest snapshot per device
and hands complete snapshots to the subscriber.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from typing import Any, Callable, Mapping

from firebase_admin import db

from .config import DEFAULT_SENSOR_PATH_TEMPLATE
from .models.alerts import SensorSnapshot
from .store import Subscription

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[SensorSnapshot], None]


def _path_parts(path: str | None) -> list[str]:
    return [p for p in (path or "").split("/") if p]


def _container_for(root: dict[str, Any], parts: list[str]) -> dict[str, Any]:
    node = root
    for part in parts:
        child = node.get(part)
        child = dict(child) if isinstance(child, Mapping) else {}
        node[part] = child
        node = child
    return node


def apply_event(
    current: Mapping[str, Any] | None, event_type: str, path: str, data: Any
) -> dict[str, Any]:
    """Return a new snapshot with one Realtime DB event applied."""
    values: dict[str, Any] = copy.deepcopy(dict(current or {}))
    parts = _path_parts(path)

    if event_type == "put":
        if not parts:
            return copy.deepcopy(dict(data)) if isinstance(data, Mapping) else {}
        parent = _container_for(values, parts[:-1])
        if data is None:
            parent.pop(parts[-1], None)
        else:
            parent[parts[-1]] = copy.deepcopy(data)
        return values

    if event_type == "patch":
        if not isinstance(data, Mapping):
            return values
        target = _container_for(values, parts)
        for key, value in data.items():
            if value is None:
                target.pop(key, None)
            else:
                target[key] = copy.deepcopy(value)
        return values

    logger.debug("Ignoring unknown feed event type %s", event_type)
    return values


class SensorFeed:
    def subscribe(self, device_id: str, callback: SnapshotCallback) -> Subscription:
        raise NotImplementedError

    def latest(self, device_id: str) -> SensorSnapshot | None:
        raise NotImplementedError


class _DeviceState:
    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.captured_at: float | None = None


class RealtimeSensorFeed(SensorFeed):
    def __init__(self, app=None, path_template: str = DEFAULT_SENSOR_PATH_TEMPLATE) -> None:
        self.app = app
        self.path_template = path_template
        self._lock = threading.Lock()
        self._devices: dict[str, _DeviceState] = {}

    def path_for(self, device_id: str) -> str:
        return self.path_template.format(device_id=device_id)

    def _handle_event(self, device_id: str, event, callback: SnapshotCallback) -> None:
        try:
            with self._lock:
                state = self._devices.setdefault(device_id, _DeviceState())
                state.values = apply_event(
                    state.values, event.event_type, event.path, event.data
                )
                state.captured_at = time.time()
                snapshot = SensorSnapshot(
                    device_id=device_id,
                    values=copy.deepcopy(state.values),
                    captured_at=state.captured_at,
                )
            if not snapshot.values:
                logger.debug("Empty snapshot for device %s", device_id)
                return
            callback(snapshot)
        except Exception:
            logger.exception("Sensor feed handler failed for device %s", device_id)

    def subscribe(self, device_id: str, callback: SnapshotCallback) -> Subscription:
        path = self.path_for(device_id)
        ref = db.reference(path, app=self.app)
        registration = ref.listen(lambda event: self._handle_event(device_id, event, callback))
        logger.info("Listening for sensor data on %s", path)
        return Subscription(registration.close, name=f"feed:{device_id}")

    def latest(self, device_id: str) -> SensorSnapshot | None:
        with self._lock:
            state = self._devices.get(device_id)
            if state is None or state.captured_at is None:
                return None
            return SensorSnapshot(
                device_id=device_id,
                values=copy.deepcopy(state.values),
                captured_at=state.captured_at,
            )


class MemorySensorFeed(SensorFeed):
    """Feed driven by ``push`` calls; delivers synchronously to subscribers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[SnapshotCallback]] = {}
        self._latest: dict[str, SensorSnapshot] = {}

    def subscribe(self, device_id: str, callback: SnapshotCallback) -> Subscription:
        with self._lock:
            self._subscribers.setdefault(device_id, []).append(callback)

        def _close() -> None:
            with self._lock:
                subs = self._subscribers.get(device_id, [])
                if callback in subs:
                    subs.remove(callback)

        return Subscription(_close, name=f"feed:{device_id}")

    def subscriber_count(self, device_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(device_id, []))

    def push(
        self, device_id: str, values: Mapping[str, Any], captured_at: float | None = None
    ) -> SensorSnapshot:
        snapshot = SensorSnapshot(
            device_id=device_id,
            values=copy.deepcopy(dict(values)),
            captured_at=captured_at if captured_at is not None else time.time(),
        )
        with self._lock:
            self._latest[device_id] = snapshot
            callbacks = list(self._subscribers.get(device_id, []))
        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Sensor feed subscriber failed for device %s", device_id)
        return snapshot

    def latest(self, device_id: str) -> SensorSnapshot | None:
        with self._lock:
            return self._latest.get(device_id)
