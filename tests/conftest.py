"""Shared test fixtures and dummy classes."""

from __future__ import annotations

from typing import Any

from farm_alert_supervisor.dispatcher import DispatchResult
from farm_alert_supervisor.models.alerts import AlertRule, Contact


def make_rule(
    rule_id: str = "a1",
    parameter: str = "soilMoisturePct",
    comparison: str = "<",
    threshold: float = 30.0,
    active: bool = True,
    critical: bool = False,
    user_id: str = "u1",
    contact: Contact | None = None,
) -> AlertRule:
    return AlertRule(
        id=rule_id,
        user_id=user_id,
        parameter=parameter,
        comparison=comparison,
        threshold=threshold,
        contact=contact or Contact(type="email", value="farmer@example.com"),
        critical=critical,
        active=active,
        created_at=1_700_000_000.0,
    )


def rule_payload(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "type": "email",
        "value": "farmer@example.com",
        "parameter": "soilMoisturePct",
        "threshold": 30,
        "comparison": "<",
        "critical": False,
        "active": True,
    }
    data.update(overrides)
    return data


class FakeClock:
    """Manually advanced clock for debounce tests."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDispatcher:
    """Records every dispatch and answers with a configurable result."""

    def __init__(self, result: DispatchResult | None = None) -> None:
        self.result = result or DispatchResult(ok=True, status_code=200)
        self.calls: list[tuple[AlertRule, float, str, dict[str, Any] | None]] = []

    async def dispatch(
        self,
        rule: AlertRule,
        current_value: float,
        device_id: str,
        sensor_data: dict[str, Any] | None = None,
    ) -> DispatchResult:
        self.calls.append((rule, current_value, device_id, sensor_data))
        return self.result


class DummyResponse:
    """Dummy HTTP response for testing."""

    def __init__(self, data: object, status: int = 200, text: str = "") -> None:
        self._data = data
        self.status_code = status
        self.text = text or str(data)
        self.ok = 200 <= status < 300

    def json(self) -> object:
        return self._data


class DummyEvent:
    """Stand-in for ``firebase_admin.db.Event``."""

    def __init__(self, event_type: str, path: str, data: Any) -> None:
        self.event_type = event_type
        self.path = path
        self.data = data
