"""Evaluate sensor snapshots against alert rules and dispatch notifications."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from .alerting import (
    evaluate_rules,
    format_rule,
    format_threshold,
    format_triggered_alert,
    parameter_label,
    sample_trigger_value,
)
from .debounce import CooldownStatus, DebounceGate
from .dispatcher import DispatchResult, NotificationDispatcher
from .feed import SensorFeed
from .models.alerts import AlertRule, DebounceKey, SensorSnapshot, TriggeredAlertRecord
from .store import RuleStore, Subscription, TriggeredLog

logger = logging.getLogger(__name__)

STATUS_FAILED = "failed"
STATUS_TEST = "test"
TEST_DEVICE_ID = "test-device"


@dataclass
class DispatchOutcome:
    rule: AlertRule
    current_value: float
    device_id: str
    result: DispatchResult
    record: TriggeredAlertRecord | None = None


class AlertProcessor:
    """Rule evaluation, debounce and dispatch for one or more users.

    Active rules are cached per user and refreshed by the rule store
    subscription; evaluation of a snapshot finishes for every rule before
    any dispatch is awaited.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        triggered_log: TriggeredLog,
        gate: DebounceGate,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rule_store = rule_store
        self.triggered_log = triggered_log
        self.gate = gate
        self.dispatcher = dispatcher
        self.clock = clock
        self._lock = threading.Lock()
        self._active_rules: dict[str, list[AlertRule]] = {}

    def set_active_rules(self, user_id: str, rules: Iterable[AlertRule]) -> None:
        active = [r for r in rules if r.active]
        with self._lock:
            self._active_rules[user_id] = active
        logger.info("Watching %d active alert(s) for user %s", len(active), user_id)
        for rule in active:
            logger.debug("  %s", format_rule(rule))

    def forget_user(self, user_id: str) -> None:
        with self._lock:
            self._active_rules.pop(user_id, None)

    def cached_rules(self, user_id: str) -> list[AlertRule] | None:
        with self._lock:
            rules = self._active_rules.get(user_id)
            return list(rules) if rules is not None else None

    async def active_rules(self, user_id: str) -> list[AlertRule]:
        cached = self.cached_rules(user_id)
        if cached is not None:
            return cached
        rules = await asyncio.to_thread(self.rule_store.list_rules, user_id)
        active = [r for r in rules if r.active]
        self.set_active_rules(user_id, active)
        return active

    async def process_snapshot(
        self, user_id: str, snapshot: SensorSnapshot
    ) -> list[DispatchOutcome]:
        rules = await self.active_rules(user_id)
        if not rules:
            return []

        logger.debug(
            "Processing %d alert(s) for device %s", len(rules), snapshot.device_id
        )
        now = self.clock()
        accepted: list[tuple[AlertRule, float]] = []
        for rule, evaluation in evaluate_rules(rules, snapshot.values):
            value = evaluation.current_value
            if value is None:
                continue
            key = DebounceKey(user_id, rule.id, rule.parameter)
            if not self.gate.acquire(key, now):
                continue
            logger.info(
                "Alert condition met for %s: %s %s on %s",
                parameter_label(rule.parameter),
                value,
                format_threshold(rule),
                snapshot.device_id,
            )
            accepted.append((rule, value))

        if not accepted:
            return []

        return list(
            await asyncio.gather(
                *(
                    self._dispatch(user_id, rule, value, snapshot)
                    for rule, value in accepted
                )
            )
        )

    async def _dispatch(
        self,
        user_id: str,
        rule: AlertRule,
        value: float,
        snapshot: SensorSnapshot,
    ) -> DispatchOutcome:
        result = await self.dispatcher.dispatch(
            rule, value, snapshot.device_id, snapshot.values
        )
        outcome = DispatchOutcome(
            rule=rule, current_value=value, device_id=snapshot.device_id, result=result
        )
        if result.ok:
            # The notification backend logs successful sends itself.
            return outcome
        outcome.record = await self._log_record(
            user_id, rule, value, snapshot.device_id, STATUS_FAILED, result.error
        )
        return outcome

    async def _log_record(
        self,
        user_id: str,
        rule: AlertRule,
        value: float,
        device_id: str,
        status: str,
        error: str | None,
    ) -> TriggeredAlertRecord | None:
        record = TriggeredAlertRecord.from_rule(
            rule,
            current_value=value,
            device_id=device_id,
            status=status,
            triggered_at=self.clock(),
            error=error,
        )
        try:
            stored = await asyncio.to_thread(self.triggered_log.append, user_id, record)
        except Exception:
            logger.exception("Failed logging %s alert %s for user %s", status, rule.id, user_id)
            return None
        logger.info("Recorded alert for user %s: %s", user_id, format_triggered_alert(record))
        return stored

    async def send_test_alert(
        self, user_id: str, rule_id: str, device_id: str = TEST_DEVICE_ID
    ) -> DispatchOutcome | None:
        """Dispatch ``rule_id`` with a qualifying value, bypassing the cooldown."""
        rule = await asyncio.to_thread(self.rule_store.get_rule, user_id, rule_id)
        if rule is None:
            logger.warning("Test alert requested for unknown rule %s", rule_id)
            return None
        value = sample_trigger_value(rule)
        result = await self.dispatcher.dispatch(rule, value, device_id, {rule.parameter: value})
        status = STATUS_TEST if result.ok else STATUS_FAILED
        record = await self._log_record(user_id, rule, value, device_id, status, result.error)
        return DispatchOutcome(
            rule=rule, current_value=value, device_id=device_id, result=result, record=record
        )

    def cooldown_status(self, user_id: str) -> list[CooldownStatus]:
        return self.gate.status(user_id, self.clock())

    def reset_cooldown(self, user_id: str, rule_id: str | None = None) -> int:
        return self.gate.reset(user_id, rule_id)


class AlertSession:
    """Wire one user's rule subscription and device feeds to the processor.

    Feed and rule callbacks may arrive on listener threads; snapshots are
    handed to the event loop with ``run_coroutine_threadsafe``. ``close()``
    releases every subscription but never cancels dispatches in flight.
    """

    def __init__(
        self,
        processor: AlertProcessor,
        feed: SensorFeed,
        user_id: str,
        device_ids: Iterable[str],
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.processor = processor
        self.feed = feed
        self.user_id = user_id
        self.device_ids = list(device_ids)
        self.loop = loop
        self._subscriptions: list[Subscription] = []
        self._pending: set[concurrent.futures.Future] = set()
        self._pending_lock = threading.Lock()
        self._closed = False

    @property
    def started(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> None:
        if self.started:
            return
        if self.loop is None:
            self.loop = asyncio.get_running_loop()
        self._closed = False
        self._subscriptions.append(
            self.processor.rule_store.subscribe_active_rules(self.user_id, self._on_rules)
        )
        for device_id in self.device_ids:
            try:
                self._subscriptions.append(self.feed.subscribe(device_id, self._on_snapshot))
            except Exception:
                logger.exception("Failed subscribing to sensor feed for %s", device_id)
        logger.info(
            "Alert session started for user %s on %d device(s)",
            self.user_id,
            len(self.device_ids),
        )

    def _on_rules(self, rules: list[AlertRule]) -> None:
        self.processor.set_active_rules(self.user_id, rules)

    def _on_snapshot(self, snapshot: SensorSnapshot) -> None:
        if self._closed or self.loop is None or self.loop.is_closed():
            return
        future = asyncio.run_coroutine_threadsafe(
            self.processor.process_snapshot(self.user_id, snapshot), self.loop
        )
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)

    def _on_done(self, future: concurrent.futures.Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Alert processing failed for user %s",
                self.user_id,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self) -> None:
        """Wait for every snapshot handed to the loop so far."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            await asyncio.gather(
                *(asyncio.wrap_future(f) for f in pending), return_exceptions=True
            )

    def close(self) -> None:
        self._closed = True
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.close()
        self.processor.forget_user(self.user_id)
        logger.info("Alert session closed for user %s", self.user_id)
