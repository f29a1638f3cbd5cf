"""Background jobs (started once per service)."""
from __future__ import annotations

import asyncio
import logging
import time

from . import config
from .models.service_state import ServiceState
from .store import TriggeredLog

logger = logging.getLogger(__name__)

_TASK_RETENTION_CLEANUP = "retention_cleanup"
_DAY_S = 24 * 60 * 60


def ensure_started(
    state: ServiceState,
    retention_days: int | None = None,
    interval_s: float | None = None,
) -> None:
    task = state.tasks.get(_TASK_RETENTION_CLEANUP)
    if isinstance(task, asyncio.Task) and not task.done():
        return
    if retention_days is None:
        retention_days = config.ALERT_RETENTION_DAYS
    if interval_s is None:
        interval_s = config.CLEANUP_INTERVAL_S
    if retention_days <= 0 or interval_s <= 0:
        logger.info("Triggered alert retention cleanup disabled")
        return
    state.tasks[_TASK_RETENTION_CLEANUP] = asyncio.create_task(
        _retention_cleanup_loop(state, retention_days, interval_s)
    )


def cleanup_user(
    triggered_log: TriggeredLog, user_id: str, retention_days: int, now: float | None = None
) -> int:
    """Delete ``user_id``'s triggered alerts older than ``retention_days``."""
    now = time.time() if now is None else now
    cutoff = now - retention_days * _DAY_S
    deleted = triggered_log.delete_older_than(user_id, cutoff)
    if deleted:
        logger.info("Deleted %d old triggered alert(s) for user %s", deleted, user_id)
    return deleted


async def run_cleanup_once(state: ServiceState, retention_days: int) -> int:
    total = 0
    for user_id in list(state.user_ids):
        try:
            total += await asyncio.to_thread(
                cleanup_user, state.triggered_log, user_id, retention_days
            )
        except Exception:
            logger.exception("Retention cleanup failed for user %s", user_id)
    return total


async def _retention_cleanup_loop(
    state: ServiceState, retention_days: int, interval_s: float
) -> None:
    logger.info(
        "Starting retention cleanup loop (retention=%sd, interval=%ss)",
        retention_days,
        interval_s,
    )
    while True:
        try:
            start = time.monotonic()
            await run_cleanup_once(state, retention_days)
            elapsed = time.monotonic() - start
            await asyncio.sleep(max(0.0, interval_s - elapsed))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Retention cleanup loop error")
            await asyncio.sleep(interval_s)
