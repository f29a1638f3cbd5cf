"""Logging helpers for farm_alert_supervisor
"""
import logging
import os

# Client libraries that log every request or watch event at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "google", "grpc", "firebase_admin")


def setup_logging(level_name: str | None = None) -> None:
    raw = (level_name or os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(raw)
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    quiet = max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)

    if level == logging.INFO and raw != "INFO":
        logging.getLogger(__name__).warning("Unknown LOG_LEVEL %r; using INFO", raw)


__all__ = ["setup_logging"]
