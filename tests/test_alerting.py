import pytest

from conftest import make_rule
from farm_alert_supervisor import alerting
from farm_alert_supervisor.models.alerts import TriggeredAlertRecord


def test_inactive_rule_is_skipped_even_when_condition_holds() -> None:
    rule = make_rule(active=False, comparison="<", threshold=30)
    result = alerting.evaluate_rule(rule, {"soilMoisturePct": 10})
    assert result.skipped
    assert alerting.evaluate_rules([rule], {"soilMoisturePct": 10}) == []


@pytest.mark.parametrize(
    "snapshot",
    [
        {},
        None,
        {"airHumidity": 50},
        {"soilMoisturePct": None},
        {"soilMoisturePct": "wet"},
        {"soilMoisturePct": True},
    ],
)
def test_missing_or_unusable_reading_is_skipped(snapshot) -> None:
    result = alerting.evaluate_rule(make_rule(), snapshot)
    assert result.skipped
    assert result.current_value is None


@pytest.mark.parametrize(
    "comparison,value,expected",
    [
        (">=", 30, True),
        (">", 30, False),
        ("<=", 30, True),
        ("<", 30, False),
        (">", 30.1, True),
        ("<", 29.9, True),
    ],
)
def test_comparison_boundaries(comparison, value, expected) -> None:
    rule = make_rule(comparison=comparison, threshold=30)
    assert alerting.evaluate_rule(rule, {"soilMoisturePct": value}).met is expected


def test_unknown_comparison_never_matches() -> None:
    rule = make_rule(comparison="==", threshold=30)
    result = alerting.evaluate_rule(rule, {"soilMoisturePct": 30})
    assert not result.met
    assert not result.skipped


def test_zero_reading_is_a_real_value() -> None:
    rule = make_rule(comparison="<", threshold=30)
    result = alerting.evaluate_rule(rule, {"soilMoisturePct": 0, "soilMoisture": 50})
    assert result.met
    assert result.current_value == 0.0


def test_alias_keys_are_used_when_canonical_missing() -> None:
    assert alerting.read_sensor_value({"soilMoisture": "22.5"}, "soilMoisturePct") == 22.5
    assert alerting.read_sensor_value({"Soil Moisture (%)": 40}, "soilMoisturePct") == 40.0
    assert alerting.read_sensor_value({"temperature": 31}, "airTemperature") == 31.0
    assert alerting.read_sensor_value({"humidity": 70}, "airHumidity") == 70.0


def test_gas_readings_prefer_nested_group() -> None:
    snapshot = {"gases": {"co2": 1200, "nh3": 4}, "co2": 400}
    assert alerting.read_sensor_value(snapshot, "co2") == 1200.0
    assert alerting.read_sensor_value(snapshot, "nh3") == 4.0
    assert alerting.read_sensor_value({"co2": 400}, "co2") == 400.0


def test_evaluate_rules_returns_only_met_rules() -> None:
    dry = make_rule(rule_id="dry", comparison="<", threshold=30)
    hot = make_rule(rule_id="hot", parameter="airTemperature", comparison=">", threshold=35)
    gas = make_rule(rule_id="gas", parameter="co2", comparison=">", threshold=1000)
    snapshot = {"soilMoisturePct": 25, "airTemperature": 30, "gases": {"co2": 1500}}

    triggered = alerting.evaluate_rules([dry, hot, gas], snapshot)

    assert [rule.id for rule, _ in triggered] == ["dry", "gas"]
    assert triggered[1][1].current_value == 1500.0


def test_normalize_parameter_handles_case_and_aliases() -> None:
    assert alerting.normalize_parameter("soilmoisturepct") == "soilMoisturePct"
    assert alerting.normalize_parameter(" humidity ") == "airHumidity"
    assert alerting.normalize_parameter("AQI") == "airQualityIndex"
    assert alerting.normalize_parameter("rainfall") is None
    assert alerting.normalize_parameter("") is None


def test_sample_trigger_value_satisfies_rule() -> None:
    below = make_rule(comparison="<", threshold=30)
    above = make_rule(comparison=">=", threshold=30)
    assert alerting.sample_trigger_value(below) == 25.0
    assert alerting.sample_trigger_value(above) == 35.0
    for rule in (below, above):
        value = alerting.sample_trigger_value(rule)
        assert alerting.evaluate_rule(rule, {rule.parameter: value}).met


def test_format_value_units() -> None:
    assert alerting.format_value("soilMoisturePct", 25.4) == "25%"
    assert alerting.format_value("airTemperature", 31.26) == "31.3C"
    assert alerting.format_value("co2", 1200) == "1200 ppm"
    assert alerting.format_value("airQualityIndex", 42.50) == "42.5"
    assert alerting.format_value("airHumidity", None) == "n/a"


def test_format_rule_and_triggered_alert() -> None:
    rule = make_rule(critical=True)
    assert alerting.format_rule(rule) == (
        "a1: Soil Moisture < 30% -> email:farmer@example.com (on) [critical]"
    )

    record = TriggeredAlertRecord.from_rule(
        rule, current_value=22, device_id="ESP32_001", status="failed",
        triggered_at=1_700_000_000.0, error="HTTP 500",
    )
    text = alerting.format_triggered_alert(record)
    assert text.startswith("🔴 Soil Moisture: 22% (< 30%) | device ESP32_001 | ")
    assert text.endswith(" | failed")

    record.status = "sent"
    record.critical = False
    text = alerting.format_triggered_alert(record)
    assert text.startswith("🟡 ")
    assert not text.endswith("sent")
