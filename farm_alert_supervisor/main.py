"""Entrypoint for running the alert supervisor from the package.

This module wires up the Firebase adapters, the debounce gate and the
dispatcher, starts one alert session per watched user and runs until the
process is told to stop.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from . import config
from .background import ensure_started
from .debounce import DebounceGate, SqliteDebounceStore
from .dispatcher import (
    FirebaseTokenProvider,
    NotificationDispatcher,
    StaticTokenProvider,
    TokenProvider,
)
from .feed import RealtimeSensorFeed, SensorFeed
from .firebase import firestore_client, init_app
from .logger import setup_logging
from .models.service_state import ServiceState
from .models.settings import Settings
from .processor import AlertProcessor, AlertSession
from .store import FirestoreDeviceDirectory, FirestoreRuleStore, FirestoreTriggeredLog

logger = logging.getLogger(__name__)


def build_token_provider(settings: Settings) -> TokenProvider:
    if settings.ALERT_API_TOKEN:
        return StaticTokenProvider(settings.ALERT_API_TOKEN)
    if settings.FIREBASE_API_KEY and settings.FIREBASE_REFRESH_TOKEN:
        return FirebaseTokenProvider(
            settings.FIREBASE_API_KEY,
            settings.FIREBASE_REFRESH_TOKEN,
            timeout_s=settings.DISPATCH_TIMEOUT_S,
        )
    # Every dispatch will fail and be logged as such.
    return StaticTokenProvider("")


def build_service(settings: Settings | None = None) -> tuple[ServiceState, SensorFeed]:
    settings = settings or config.settings
    if not settings.ALERT_USER_IDS:
        raise RuntimeError("ALERT_USER_IDS environment variable is not set")
    if not settings.ALERT_DEVICE_IDS:
        raise RuntimeError("ALERT_DEVICE_IDS environment variable is not set")

    app = init_app(settings.FIREBASE_CREDENTIALS, settings.FIREBASE_DATABASE_URL)
    client = firestore_client(app)

    gate = DebounceGate(
        SqliteDebounceStore(settings.DEBOUNCE_DB_PATH), settings.ALERT_COOLDOWN_S
    )
    dispatcher = NotificationDispatcher(
        settings.ALERT_API_URL,
        build_token_provider(settings),
        timeout_s=settings.DISPATCH_TIMEOUT_S,
    )
    triggered_log = FirestoreTriggeredLog(client)
    processor = AlertProcessor(
        FirestoreRuleStore(client), triggered_log, gate, dispatcher
    )
    feed = RealtimeSensorFeed(app, settings.SENSOR_PATH_TEMPLATE)
    state = ServiceState(
        processor=processor,
        triggered_log=triggered_log,
        user_ids=list(settings.ALERT_USER_IDS),
        device_ids=list(settings.ALERT_DEVICE_IDS),
        device_directory=FirestoreDeviceDirectory(client),
    )
    return state, feed


def resolve_user_devices(state: ServiceState) -> dict[str, list[str]]:
    """Map each watched user to the watched devices they own or share."""
    if state.device_directory is None:
        return {user_id: list(state.device_ids) for user_id in state.user_ids}
    access = state.device_directory.devices_by_user(state.device_ids)
    return {user_id: access.get(user_id, []) for user_id in state.user_ids}


def start_sessions(state: ServiceState, feed: SensorFeed) -> None:
    for user_id, device_ids in resolve_user_devices(state).items():
        if not device_ids:
            logger.warning("User %s has access to none of the watched devices", user_id)
            continue
        session = AlertSession(state.processor, feed, user_id, device_ids)
        try:
            session.start()
        except Exception:
            logger.exception("Failed to start alert session for user %s", user_id)
            session.close()
            continue
        state.sessions.append(session)


async def shutdown(state: ServiceState) -> None:
    sessions = state.close_sessions()
    # Dispatches already handed to the loop finish before the gate store closes.
    await asyncio.gather(*(session.drain() for session in sessions))
    cancelled = state.cancel_tasks()
    if cancelled:
        await asyncio.gather(*cancelled, return_exceptions=True)
    state.processor.gate.store.close()
    logger.info("Alert supervisor stopped")


async def serve(state: ServiceState, feed: SensorFeed) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    start_sessions(state, feed)
    try:
        ensure_started(state)
    except Exception as e:
        logger.warning("Failed to start background tasks: %s", e)

    logger.info(
        "Alert supervisor started at %s (%d user(s), %d device(s))",
        state.started_at.strftime("%Y-%m-%d %H:%M:%S"),
        len(state.sessions),
        len(state.device_ids),
    )
    try:
        await stop.wait()
    finally:
        await shutdown(state)


def run() -> None:
    setup_logging()
    logger.info("Starting farm_alert_supervisor")
    config.validate_settings()
    state, feed = build_service()
    asyncio.run(serve(state, feed))


if __name__ == "__main__":
    run()
