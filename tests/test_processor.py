import asyncio
import json
import logging

import httpx
import pytest

from conftest import FakeClock, FakeDispatcher, make_rule, rule_payload
from farm_alert_supervisor.debounce import DebounceGate, MemoryDebounceStore
from farm_alert_supervisor.dispatcher import (
    DispatchResult,
    NotificationDispatcher,
    StaticTokenProvider,
)
from farm_alert_supervisor.feed import MemorySensorFeed
from farm_alert_supervisor.models.alerts import DebounceKey, SensorSnapshot
from farm_alert_supervisor.processor import AlertProcessor, AlertSession
from farm_alert_supervisor.store import MemoryRuleStore, MemoryTriggeredLog


def _processor(dispatcher=None, cooldown_s: float = 60.0):
    clock = FakeClock()
    store = MemoryDebounceStore()
    log = MemoryTriggeredLog()
    processor = AlertProcessor(
        MemoryRuleStore(),
        log,
        DebounceGate(store, cooldown_s=cooldown_s),
        dispatcher or FakeDispatcher(),
        clock=clock,
    )
    return processor, clock, store, log


def _snapshot(value: float, device_id: str = "ESP32_001") -> SensorSnapshot:
    return SensorSnapshot(device_id=device_id, values={"soilMoisturePct": value})


@pytest.mark.asyncio
async def test_met_rule_dispatches_once_with_payload_fields() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    dispatcher = NotificationDispatcher(
        "http://alerts.local", StaticTokenProvider("t"), transport=httpx.MockTransport(handler)
    )
    processor, _, _, log = _processor(dispatcher)
    processor.set_active_rules("u1", [make_rule(threshold=30)])

    outcomes = await processor.process_snapshot("u1", _snapshot(25))

    assert len(outcomes) == 1
    assert outcomes[0].current_value == 25.0
    assert outcomes[0].result.ok
    assert len(seen) == 1
    body = json.loads(seen[0].content)
    assert body["deviceId"] == "ESP32_001"
    assert body["alert"]["threshold"] == 30
    # Successful sends are logged by the notification backend.
    assert log.list_recent("u1") == []


@pytest.mark.asyncio
async def test_unmet_rule_does_not_dispatch() -> None:
    fake = FakeDispatcher()
    processor, _, store, _ = _processor(fake)
    processor.set_active_rules("u1", [make_rule(threshold=30)])

    assert await processor.process_snapshot("u1", _snapshot(35)) == []
    assert fake.calls == []
    assert store.entries_for("u1") == {}


@pytest.mark.asyncio
async def test_inactive_rule_never_dispatches() -> None:
    fake = FakeDispatcher()
    processor, clock, _, _ = _processor(fake)
    processor.set_active_rules("u1", [make_rule(active=False)])

    await processor.process_snapshot("u1", _snapshot(5))
    clock.advance(3600)
    await processor.process_snapshot("u1", _snapshot(5))

    assert fake.calls == []


@pytest.mark.asyncio
async def test_repeat_within_cooldown_dispatches_once_then_again_after_expiry() -> None:
    fake = FakeDispatcher()
    processor, clock, _, _ = _processor(fake, cooldown_s=60)
    processor.set_active_rules("u1", [make_rule()])

    await processor.process_snapshot("u1", _snapshot(25))
    clock.advance(10)
    await processor.process_snapshot("u1", _snapshot(24))
    assert len(fake.calls) == 1

    clock.advance(50.001)
    await processor.process_snapshot("u1", _snapshot(23))
    assert len(fake.calls) == 2
    assert fake.calls[-1][1] == 23.0


@pytest.mark.asyncio
async def test_failed_dispatch_keeps_debounce_and_logs_failure() -> None:
    fake = FakeDispatcher(DispatchResult(ok=False, status_code=500, error="HTTP 500"))
    processor, clock, store, log = _processor(fake)
    processor.set_active_rules("u1", [make_rule()])

    outcomes = await processor.process_snapshot("u1", _snapshot(25))

    assert not outcomes[0].result.ok
    assert store.get(DebounceKey("u1", "a1", "soilMoisturePct")) == clock.now
    records = log.list_recent("u1")
    assert len(records) == 1
    assert records[0].status == "failed"
    assert records[0].error == "HTTP 500"
    assert records[0].current_value == 25.0
    assert records[0].device_id == "ESP32_001"

    clock.advance(5)
    await processor.process_snapshot("u1", _snapshot(25))
    assert len(fake.calls) == 1


@pytest.mark.asyncio
async def test_multiple_rules_dispatch_concurrently() -> None:
    started: list[str] = []
    release = asyncio.Event()

    class SlowDispatcher(FakeDispatcher):
        async def dispatch(self, rule, current_value, device_id, sensor_data=None):
            started.append(rule.id)
            await release.wait()
            return await super().dispatch(rule, current_value, device_id, sensor_data)

    slow = SlowDispatcher()
    processor, _, _, _ = _processor(slow)
    processor.set_active_rules(
        "u1",
        [
            make_rule(rule_id="dry"),
            make_rule(rule_id="hot", parameter="airTemperature", comparison=">", threshold=35),
        ],
    )
    snapshot = SensorSnapshot("ESP32_001", {"soilMoisturePct": 20, "airTemperature": 40})

    task = asyncio.create_task(processor.process_snapshot("u1", snapshot))
    for _ in range(10):
        await asyncio.sleep(0)
    assert sorted(started) == ["dry", "hot"]
    release.set()
    outcomes = await task
    assert {o.rule.id for o in outcomes} == {"dry", "hot"}


@pytest.mark.asyncio
async def test_rules_are_loaded_from_store_when_not_cached() -> None:
    fake = FakeDispatcher()
    processor, _, _, _ = _processor(fake)
    rule, _ = processor.rule_store.add_rule("u1", rule_payload())
    processor.rule_store.add_rule("u1", rule_payload(active=False, threshold=50))

    await processor.process_snapshot("u1", _snapshot(25))

    assert [call[0].id for call in fake.calls] == [rule.id]
    assert [r.id for r in processor.cached_rules("u1")] == [rule.id]


@pytest.mark.asyncio
async def test_send_test_alert_bypasses_cooldown_and_logs() -> None:
    fake = FakeDispatcher()
    processor, _, _, log = _processor(fake)
    rule, _ = processor.rule_store.add_rule("u1", rule_payload(comparison="<", threshold=30))
    processor.gate.acquire(DebounceKey("u1", rule.id, rule.parameter), 0.0)

    outcome = await processor.send_test_alert("u1", rule.id, device_id="ESP32_001")

    assert outcome.result.ok
    assert outcome.current_value == 25.0
    assert fake.calls[0][3] == {"soilMoisturePct": 25.0}
    assert outcome.record.status == "test"
    assert log.list_recent("u1")[0].id == outcome.record.id
    assert await processor.send_test_alert("u1", "missing") is None


@pytest.mark.asyncio
async def test_send_test_alert_failure_is_logged_as_failed() -> None:
    fake = FakeDispatcher(DispatchResult(ok=False, error="HTTP 502", status_code=502))
    processor, _, _, log = _processor(fake)
    rule, _ = processor.rule_store.add_rule("u1", rule_payload(comparison=">", threshold=30))

    outcome = await processor.send_test_alert("u1", rule.id)

    assert outcome.current_value == 35.0
    assert log.list_recent("u1")[0].status == "failed"


def test_cooldown_status_and_reset() -> None:
    processor, clock, _, _ = _processor()
    processor.gate.acquire(DebounceKey("u1", "a1", "soilMoisturePct"), clock.now)
    clock.advance(20)

    status = processor.cooldown_status("u1")
    assert len(status) == 1
    assert status[0].remaining_s == pytest.approx(40.0)

    assert processor.reset_cooldown("u1") == 1
    assert processor.cooldown_status("u1") == []


@pytest.mark.asyncio
async def test_session_wires_rules_and_feed_and_closes_cleanly() -> None:
    fake = FakeDispatcher()
    processor, clock, _, _ = _processor(fake)
    feed = MemorySensorFeed()
    rule, _ = processor.rule_store.add_rule("u1", rule_payload())

    session = AlertSession(processor, feed, "u1", ["ESP32_001", "ESP32_002"])
    session.start()
    assert [r.id for r in processor.cached_rules("u1")] == [rule.id]
    assert feed.subscriber_count("ESP32_001") == 1

    feed.push("ESP32_002", {"soilMoisturePct": 12})
    await session.drain()
    assert [(call[0].id, call[2]) for call in fake.calls] == [(rule.id, "ESP32_002")]

    processor.rule_store.set_active("u1", rule.id, False)
    clock.advance(120)
    feed.push("ESP32_001", {"soilMoisturePct": 12})
    await session.drain()
    assert len(fake.calls) == 1

    session.close()
    assert feed.subscriber_count("ESP32_001") == 0
    assert feed.subscriber_count("ESP32_002") == 0
    assert processor.cached_rules("u1") is None


@pytest.mark.asyncio
async def test_failed_dispatch_record_is_logged_readably(caplog) -> None:
    fake = FakeDispatcher(DispatchResult(ok=False, status_code=500, error="HTTP 500"))
    processor, _, _, _ = _processor(fake)
    with caplog.at_level(logging.DEBUG, logger="farm_alert_supervisor.processor"):
        processor.set_active_rules("u1", [make_rule(threshold=30)])
        await processor.process_snapshot("u1", _snapshot(25))

    messages = [r.getMessage() for r in caplog.records]
    assert any("a1: Soil Moisture" in m for m in messages)
    recorded = [m for m in messages if m.startswith("Recorded alert for user u1")]
    assert len(recorded) == 1
    assert "device ESP32_001" in recorded[0]
    assert recorded[0].endswith("failed")
