"""Service runtime state (sessions, background tasks)."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..processor import AlertProcessor, AlertSession
    from ..store import DeviceDirectory, TriggeredLog


@dataclass
class ServiceState:
    """Everything the running service owns and must release on shutdown."""

    processor: AlertProcessor
    triggered_log: TriggeredLog
    user_ids: list[str] = field(default_factory=list)
    device_ids: list[str] = field(default_factory=list)
    device_directory: DeviceDirectory | None = None
    sessions: list[AlertSession] = field(default_factory=list)
    tasks: dict[str, asyncio.Task] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.now)

    def close_sessions(self) -> list[AlertSession]:
        sessions, self.sessions = self.sessions, []
        for session in sessions:
            session.close()
        return sessions

    def cancel_tasks(self) -> list[asyncio.Task]:
        cancelled = []
        for task in self.tasks.values():
            if not task.done():
                task.cancel()
                cancelled.append(task)
        self.tasks.clear()
        return cancelled
