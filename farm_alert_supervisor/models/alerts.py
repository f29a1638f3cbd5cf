"""Alert rule, snapshot and triggered-alert dataclasses."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, NamedTuple


@dataclass(frozen=True)
class Contact:
    type: str  # email, sms
    value: str


@dataclass
class AlertRule:
    id: str
    user_id: str
    parameter: str
    comparison: str
    threshold: float
    contact: Contact
    critical: bool = False
    active: bool = True
    created_at: float | None = None
    updated_at: float | None = None

    def to_wire(self) -> dict[str, Any]:
        """Shape the rule the way the notification backend expects it."""
        return {
            "id": self.id,
            "parameter": self.parameter,
            "comparison": self.comparison,
            "threshold": self.threshold,
            "critical": self.critical,
            "active": self.active,
            "type": self.contact.type,
            "value": self.contact.value,
        }


@dataclass
class SensorSnapshot:
    device_id: str
    values: dict[str, Any]
    captured_at: float = field(default_factory=time.time)


class DebounceKey(NamedTuple):
    user_id: str
    rule_id: str
    parameter: str

    def as_str(self) -> str:
        return f"{self.user_id}_{self.rule_id}_{self.parameter}"


@dataclass
class TriggeredAlertRecord:
    alert_id: str
    parameter: str
    comparison: str
    threshold: float
    current_value: float
    critical: bool
    device_id: str
    contact_type: str
    contact_value: str
    triggered_at: float
    status: str  # sent, failed, test
    error: str | None = None
    seen: bool = False
    id: str | None = None

    @classmethod
    def from_rule(
        cls,
        rule: AlertRule,
        current_value: float,
        device_id: str,
        status: str,
        triggered_at: float,
        error: str | None = None,
    ) -> TriggeredAlertRecord:
        return cls(
            alert_id=rule.id,
            parameter=rule.parameter,
            comparison=rule.comparison,
            threshold=rule.threshold,
            current_value=current_value,
            critical=rule.critical,
            device_id=device_id,
            contact_type=rule.contact.type,
            contact_value=rule.contact.value,
            triggered_at=triggered_at,
            status=status,
            error=error,
        )
