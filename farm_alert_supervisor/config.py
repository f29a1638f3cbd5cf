"""Central configuration for farm_alert_supervisor."""

from __future__ import annotations

import logging
import os
from typing import List

from .models.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:5000"
DEFAULT_COOLDOWN_S = 60.0
DEFAULT_DISPATCH_TIMEOUT_S = 10.0
DEFAULT_DEBOUNCE_DB_PATH = "/app/data/alert_debounce.sqlite3"
DEFAULT_SENSOR_PATH_TEMPLATE = "devices/{device_id}/sensors/latest"
DEFAULT_RETENTION_DAYS = 30
DEFAULT_CLEANUP_INTERVAL_S = 60 * 60.0


def _split_ids(s: str) -> List[str]:
    """Parse comma-separated string into a list of identifiers.

    Args:
        s: Comma-separated string of ids (e.g., "uid1, uid2")

    Returns:
        List of non-empty ids with duplicates removed, order preserved.

    Example:
        >>> _split_ids("ESP32_001, ESP32_002,,ESP32_001")
        ['ESP32_001', 'ESP32_002']
    """
    out: List[str] = []
    for part in (s or "").split(","):
        p = part.strip()
        if p and p not in out:
            out.append(p)
    return out


def _read_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using %s", name, raw, default)
        return default
    if value < 0:
        logger.warning("Negative %s=%r; using %s", name, raw, default)
        return default
    return value


def _read_settings() -> Settings:
    """Read all configuration from environment variables.

    Returns:
        Settings object with all configuration values.

    Note:
        Invalid numeric values fall back to the defaults above.
    """
    api_url = (os.environ.get("ALERT_API_URL") or DEFAULT_API_URL).rstrip("/")
    api_token = os.environ.get("ALERT_API_TOKEN") or None

    # Firebase
    api_key = os.environ.get("FIREBASE_API_KEY") or None
    refresh_token = os.environ.get("FIREBASE_REFRESH_TOKEN") or None
    credentials_path = os.environ.get("FIREBASE_CREDENTIALS") or None
    database_url = os.environ.get("FIREBASE_DATABASE_URL") or None

    user_ids = _split_ids(os.environ.get("ALERT_USER_IDS", ""))
    device_ids = _split_ids(os.environ.get("ALERT_DEVICE_IDS", ""))

    cooldown = _read_float("ALERT_COOLDOWN_S", DEFAULT_COOLDOWN_S)
    timeout = _read_float("DISPATCH_TIMEOUT_S", DEFAULT_DISPATCH_TIMEOUT_S) or (
        DEFAULT_DISPATCH_TIMEOUT_S
    )
    debounce_path = os.environ.get("DEBOUNCE_DB_PATH") or DEFAULT_DEBOUNCE_DB_PATH
    path_template = (
        os.environ.get("SENSOR_PATH_TEMPLATE") or DEFAULT_SENSOR_PATH_TEMPLATE
    )
    retention = int(_read_float("ALERT_RETENTION_DAYS", DEFAULT_RETENTION_DAYS))
    cleanup_interval = _read_float("CLEANUP_INTERVAL_S", DEFAULT_CLEANUP_INTERVAL_S)

    return Settings(
        ALERT_API_URL=api_url,
        ALERT_API_TOKEN=api_token,
        FIREBASE_API_KEY=api_key,
        FIREBASE_REFRESH_TOKEN=refresh_token,
        FIREBASE_CREDENTIALS=credentials_path,
        FIREBASE_DATABASE_URL=database_url,
        ALERT_USER_IDS=user_ids,
        ALERT_DEVICE_IDS=device_ids,
        ALERT_COOLDOWN_S=cooldown,
        DISPATCH_TIMEOUT_S=timeout,
        DEBOUNCE_DB_PATH=debounce_path,
        SENSOR_PATH_TEMPLATE=path_template,
        ALERT_RETENTION_DAYS=retention,
        CLEANUP_INTERVAL_S=cleanup_interval,
    )


settings = _read_settings()


def validate_settings(current: Settings | None = None) -> None:
    """Log warnings for configuration that will keep alerts from flowing."""
    current = current or settings
    if not current.ALERT_USER_IDS:
        logger.warning("ALERT_USER_IDS is empty; no alert rules will be watched.")
    if not current.ALERT_DEVICE_IDS:
        logger.warning("ALERT_DEVICE_IDS is empty; no sensor feeds will be watched.")
    if current.ALERT_API_TOKEN is None and not (
        current.FIREBASE_API_KEY and current.FIREBASE_REFRESH_TOKEN
    ):
        logger.warning(
            "Neither ALERT_API_TOKEN nor FIREBASE_API_KEY/FIREBASE_REFRESH_TOKEN "
            "is set; dispatches will be rejected by the alert API."
        )
    if current.FIREBASE_DATABASE_URL is None:
        logger.warning("FIREBASE_DATABASE_URL is not set; sensor feeds unavailable.")
    if current.ALERT_COOLDOWN_S == 0:
        logger.warning("ALERT_COOLDOWN_S is 0; every qualifying snapshot dispatches.")


# Exported constants
ALERT_API_URL: str = settings.ALERT_API_URL
ALERT_COOLDOWN_S: float = settings.ALERT_COOLDOWN_S
DISPATCH_TIMEOUT_S: float = settings.DISPATCH_TIMEOUT_S
SENSOR_PATH_TEMPLATE: str = settings.SENSOR_PATH_TEMPLATE
ALERT_RETENTION_DAYS: int = settings.ALERT_RETENTION_DAYS
CLEANUP_INTERVAL_S: float = settings.CLEANUP_INTERVAL_S
