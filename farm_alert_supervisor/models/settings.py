"""Configuration dataclass."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List


@dataclass
class Settings:
    """Configuration settings for farm_alert_supervisor."""

    ALERT_API_URL: str
    ALERT_API_TOKEN: str | None
    FIREBASE_API_KEY: str | None
    FIREBASE_REFRESH_TOKEN: str | None
    FIREBASE_CREDENTIALS: str | None
    FIREBASE_DATABASE_URL: str | None
    ALERT_USER_IDS: List[str]
    ALERT_DEVICE_IDS: List[str]
    ALERT_COOLDOWN_S: float
    DISPATCH_TIMEOUT_S: float
    DEBOUNCE_DB_PATH: str
    SENSOR_PATH_TEMPLATE: str
    ALERT_RETENTION_DAYS: int
    CLEANUP_INTERVAL_S: float
