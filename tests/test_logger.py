import logging

from farm_alert_supervisor.logger import setup_logging


def test_setup_logging_sets_level_and_quiets_clients(monkeypatch):
    root = logging.getLogger()
    previous = root.level
    monkeypatch.setenv("LOG_LEVEL", "debug")
    try:
        setup_logging()
        assert root.level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("google").level == logging.WARNING

        setup_logging("error")
        assert root.level == logging.ERROR
        assert logging.getLogger("urllib3").level == logging.ERROR

        setup_logging("chatty")
        assert root.level == logging.INFO
    finally:
        root.setLevel(previous)
