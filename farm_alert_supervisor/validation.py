"""Validation of alert rule payloads before they reach the rule store."""

from __future__ import annotations

import math
import re
from typing import Any, Mapping

from .alerting import COMPARISONS, CONTACT_TYPES, normalize_parameter

_EMAIL_RE = re.compile(r"\S+@\S+\.\S+")
_PHONE_RE = re.compile(r"^\+?[\d\s\-()]{10,}$")

_BOOL_TRUE = {"true", "yes", "1", "on"}
_BOOL_FALSE = {"false", "no", "0", "off", ""}


def _parse_bool(raw: Any, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, str):
        value = raw.strip().lower()
        if value in _BOOL_TRUE:
            return True
        if value in _BOOL_FALSE:
            return False
        return default
    return bool(raw)


def parse_threshold(raw: Any) -> tuple[float | None, str | None]:
    if raw is None or isinstance(raw, bool):
        return None, "Threshold must be a valid number"
    if isinstance(raw, str):
        cleaned = raw.strip()
        if cleaned.endswith("%"):
            cleaned = cleaned[:-1]
        try:
            value = float(cleaned)
        except ValueError:
            return None, "Threshold must be a valid number"
    elif isinstance(raw, (int, float)):
        value = float(raw)
    else:
        return None, "Threshold must be a valid number"
    if not math.isfinite(value):
        return None, "Threshold must be a valid number"
    return value, None


def _contact_fields(data: Mapping[str, Any]) -> tuple[str, str]:
    contact = data.get("contact")
    if isinstance(contact, Mapping):
        raw_type = contact.get("type")
        raw_value = contact.get("value")
    else:
        raw_type = data.get("type")
        raw_value = data.get("value")
    contact_type = str(raw_type or "").strip().lower()
    contact_value = raw_value.strip() if isinstance(raw_value, str) else ""
    return contact_type, contact_value


def parse_rule_data(
    data: Mapping[str, Any] | None,
) -> tuple[dict[str, Any] | None, list[str]]:
    """Validate a rule payload and return its normalized fields.

    Accepts both the flat wire shape (``type``/``value`` for the contact) and
    a nested ``contact`` mapping. Returns ``(fields, [])`` on success or
    ``(None, errors)`` listing every problem found.
    """
    if not isinstance(data, Mapping):
        return None, ["Alert data must be an object"]

    errors: list[str] = []
    contact_type, contact_value = _contact_fields(data)

    if contact_type not in CONTACT_TYPES:
        errors.append('Alert type must be either "email" or "sms"')
    if not contact_value:
        errors.append("Contact value is required")
    elif contact_type == "email" and not _EMAIL_RE.search(contact_value):
        errors.append("Invalid email format")
    elif contact_type == "sms" and not _PHONE_RE.match(
        re.sub(r"\s", "", contact_value)
    ):
        errors.append("Invalid phone number format")

    raw_parameter = data.get("parameter")
    parameter = normalize_parameter(raw_parameter if isinstance(raw_parameter, str) else None)
    if not raw_parameter:
        errors.append("Parameter is required")
    elif parameter is None:
        errors.append("Unknown parameter")

    threshold, threshold_error = parse_threshold(data.get("threshold"))
    if threshold_error:
        errors.append(threshold_error)

    comparison = str(data.get("comparison") or "").strip()
    if comparison not in COMPARISONS:
        errors.append("Comparison must be one of: >, <, >=, <=")

    if errors:
        return None, errors

    return {
        "parameter": parameter,
        "comparison": comparison,
        "threshold": threshold,
        "contact_type": contact_type,
        "contact_value": contact_value,
        "critical": _parse_bool(data.get("critical"), False),
        "active": _parse_bool(data.get("active"), True),
    }, []


def validate_rule_data(data: Mapping[str, Any] | None) -> list[str]:
    _, errors = parse_rule_data(data)
    return errors
