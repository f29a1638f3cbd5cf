"""Sensor parameter catalog, rule evaluation and formatting helpers."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping

from .models.alerts import AlertRule, TriggeredAlertRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParameterDef:
    name: str
    label: str
    unit: str | None  # percent, temp, ppm, index
    source_keys: tuple[str, ...]
    group: str | None = None


PARAMETER_DEFS: dict[str, ParameterDef] = {
    "soilMoisturePct": ParameterDef(
        name="soilMoisturePct",
        label="Soil Moisture",
        unit="percent",
        source_keys=(
            "soilMoisturePct",
            "soilMoisture",
            "Soil Moisture (%)",
            "soil_moisture",
        ),
    ),
    "soilTemperature": ParameterDef(
        name="soilTemperature",
        label="Soil Temperature",
        unit="temp",
        source_keys=("soilTemperature", "soilTemp", "Soil Temperature (°C)"),
    ),
    "airTemperature": ParameterDef(
        name="airTemperature",
        label="Air Temperature",
        unit="temp",
        source_keys=("airTemperature", "temperature", "Air Temperature (°C)"),
    ),
    "airHumidity": ParameterDef(
        name="airHumidity",
        label="Air Humidity",
        unit="percent",
        source_keys=("airHumidity", "humidity", "Air Humidity (%)"),
    ),
    "airQualityIndex": ParameterDef(
        name="airQualityIndex",
        label="Air Quality",
        unit="index",
        source_keys=("airQualityIndex",),
    ),
    "co2": ParameterDef(
        name="co2",
        label="CO2 Level",
        unit="ppm",
        source_keys=("co2",),
        group="gases",
    ),
    "nh3": ParameterDef(
        name="nh3",
        label="NH3 Level",
        unit="ppm",
        source_keys=("nh3",),
        group="gases",
    ),
}

PARAMETER_ALIASES: dict[str, str] = {
    "soilmoisture": "soilMoisturePct",
    "soil moisture (%)": "soilMoisturePct",
    "soil_moisture": "soilMoisturePct",
    "soiltemp": "soilTemperature",
    "soil temperature (°c)": "soilTemperature",
    "temperature": "airTemperature",
    "air temperature (°c)": "airTemperature",
    "humidity": "airHumidity",
    "air humidity (%)": "airHumidity",
    "aqi": "airQualityIndex",
}

COMPARISONS: tuple[str, ...] = (">", "<", ">=", "<=")
CONTACT_TYPES: tuple[str, ...] = ("email", "sms")

OUTCOME_MET = "met"
OUTCOME_NOT_MET = "not_met"
OUTCOME_SKIPPED = "skipped"

_TEST_OFFSET = 5.0


def normalize_parameter(name: str | None) -> str | None:
    raw = (name or "").strip()
    if not raw:
        return None
    if raw in PARAMETER_DEFS:
        return raw
    lowered = raw.lower()
    for key in PARAMETER_DEFS:
        if key.lower() == lowered:
            return key
    return PARAMETER_ALIASES.get(lowered)


def get_parameter_def(parameter: str | None) -> ParameterDef | None:
    key = normalize_parameter(parameter)
    if not key:
        return None
    return PARAMETER_DEFS.get(key)


def parameter_label(parameter: str) -> str:
    definition = get_parameter_def(parameter)
    return definition.label if definition else parameter


def _as_number(raw: Any) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        try:
            return float(raw.strip())
        except ValueError:
            return None
    return None


def read_sensor_value(snapshot: Mapping[str, Any] | None, parameter: str) -> float | None:
    """Extract the reading for ``parameter``; ``None`` means no usable data."""
    if not isinstance(snapshot, Mapping):
        return None
    definition = get_parameter_def(parameter)
    if definition is None:
        return _as_number(snapshot.get(parameter))

    if definition.group:
        nested = snapshot.get(definition.group)
        if isinstance(nested, Mapping):
            for key in definition.source_keys:
                value = _as_number(nested.get(key))
                if value is not None:
                    return value

    for key in definition.source_keys:
        value = _as_number(snapshot.get(key))
        if value is not None:
            return value
    return None


def compare(comparison: str, value: float, threshold: float) -> bool:
    if comparison == ">":
        return value > threshold
    if comparison == "<":
        return value < threshold
    if comparison == ">=":
        return value >= threshold
    if comparison == "<=":
        return value <= threshold
    logger.error("Unknown comparison operator: %s", comparison)
    return False


@dataclass(frozen=True)
class RuleEvaluation:
    outcome: str
    current_value: float | None = None

    @property
    def met(self) -> bool:
        return self.outcome == OUTCOME_MET

    @property
    def skipped(self) -> bool:
        return self.outcome == OUTCOME_SKIPPED


_SKIP = RuleEvaluation(outcome=OUTCOME_SKIPPED)


def evaluate_rule(rule: AlertRule, snapshot: Mapping[str, Any] | None) -> RuleEvaluation:
    if not rule.active:
        return _SKIP
    current = read_sensor_value(snapshot, rule.parameter)
    if current is None:
        logger.debug("No value for %s in snapshot; skipping rule %s", rule.parameter, rule.id)
        return _SKIP
    threshold = _as_number(rule.threshold)
    if threshold is None:
        logger.warning("Rule %s has non-numeric threshold %r", rule.id, rule.threshold)
        return _SKIP
    if compare(rule.comparison, current, threshold):
        return RuleEvaluation(outcome=OUTCOME_MET, current_value=current)
    return RuleEvaluation(outcome=OUTCOME_NOT_MET, current_value=current)


def evaluate_rules(
    rules: Iterable[AlertRule], snapshot: Mapping[str, Any] | None
) -> list[tuple[AlertRule, RuleEvaluation]]:
    """Return every active rule whose condition holds for ``snapshot``."""
    triggered: list[tuple[AlertRule, RuleEvaluation]] = []
    for rule in rules:
        evaluation = evaluate_rule(rule, snapshot)
        if evaluation.met:
            triggered.append((rule, evaluation))
    return triggered


def sample_trigger_value(rule: AlertRule) -> float:
    """A reading that satisfies ``rule``, used for test notifications."""
    if rule.comparison in {"<", "<="}:
        return float(rule.threshold) - _TEST_OFFSET
    return float(rule.threshold) + _TEST_OFFSET


def format_value(parameter: str, value: object) -> str:
    number = _as_number(value)
    if number is None or math.isnan(number):
        return "n/a"
    definition = get_parameter_def(parameter)
    unit = definition.unit if definition else None
    if unit == "percent":
        return f"{number:.0f}%"
    if unit == "temp":
        return f"{number:.1f}C"
    if unit == "ppm":
        return f"{number:.0f} ppm"
    return f"{number:.2f}".rstrip("0").rstrip(".")


def format_threshold(rule: AlertRule) -> str:
    return f"{rule.comparison} {format_value(rule.parameter, rule.threshold)}"


def format_timestamp(ts: float | None) -> str:
    if ts is None:
        return "n/a"
    return datetime.fromtimestamp(ts).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


def format_rule(rule: AlertRule) -> str:
    status = "on" if rule.active else "off"
    marker = " [critical]" if rule.critical else ""
    return (
        f"{rule.id}: {parameter_label(rule.parameter)} {format_threshold(rule)} "
        f"-> {rule.contact.type}:{rule.contact.value} ({status}){marker}"
    )


def format_triggered_alert(record: TriggeredAlertRecord) -> str:
    icon = "🔴" if record.critical else "🟡"
    label = parameter_label(record.parameter)
    value = format_value(record.parameter, record.current_value)
    threshold = format_value(record.parameter, record.threshold)
    parts = [
        f"{icon} {label}: {value} ({record.comparison} {threshold})",
        f"device {record.device_id}",
        format_timestamp(record.triggered_at),
    ]
    if record.status != "sent":
        parts.append(record.status)
    return " | ".join(parts)
