"""Per-user notification debounce with persistent, atomic stores."""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path

from .models.alerts import DebounceKey

logger = logging.getLogger(__name__)


class DebounceStore:
    """Key -> last dispatch timestamp mapping.

    ``try_acquire`` must be atomic: two callers racing on the same key within
    one cooldown window can never both succeed.
    """

    def get(self, key: DebounceKey) -> float | None:
        raise NotImplementedError

    def set(self, key: DebounceKey, ts: float) -> None:
        raise NotImplementedError

    def try_acquire(self, key: DebounceKey, now: float, cooldown_s: float) -> bool:
        raise NotImplementedError

    def reset(self, key: DebounceKey) -> None:
        raise NotImplementedError

    def reset_user(self, user_id: str, rule_id: str | None = None) -> int:
        raise NotImplementedError

    def entries_for(self, user_id: str) -> dict[DebounceKey, float]:
        raise NotImplementedError

    def close(self) -> None:
        return None


class MemoryDebounceStore(DebounceStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[DebounceKey, float] = {}

    def get(self, key: DebounceKey) -> float | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: DebounceKey, ts: float) -> None:
        with self._lock:
            self._entries[key] = ts

    def try_acquire(self, key: DebounceKey, now: float, cooldown_s: float) -> bool:
        with self._lock:
            last = self._entries.get(key)
            if last is not None and (now - last) < cooldown_s:
                return False
            self._entries[key] = now
            return True

    def reset(self, key: DebounceKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def reset_user(self, user_id: str, rule_id: str | None = None) -> int:
        with self._lock:
            doomed = [
                key
                for key in self._entries
                if key.user_id == user_id and (rule_id is None or key.rule_id == rule_id)
            ]
            for key in doomed:
                self._entries.pop(key, None)
            return len(doomed)

    def entries_for(self, user_id: str) -> dict[DebounceKey, float]:
        with self._lock:
            return {k: v for k, v in self._entries.items() if k.user_id == user_id}


_SCHEMA = """
CREATE TABLE IF NOT EXISTS alert_debounce (
    user_id TEXT NOT NULL,
    rule_id TEXT NOT NULL,
    parameter TEXT NOT NULL,
    last_dispatch_at REAL NOT NULL,
    PRIMARY KEY (user_id, rule_id, parameter)
)
"""


class SqliteDebounceStore(DebounceStore):
    """Debounce timestamps in a SQLite table so they survive restarts."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        if str(path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        with self._lock:
            if str(path) != ":memory:":
                # Readers do not block the acquire writer.
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            with self._conn:
                self._conn.execute(_SCHEMA)
        logger.info("Debounce store ready at %s", path)

    def get(self, key: DebounceKey) -> float | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT last_dispatch_at FROM alert_debounce "
                "WHERE user_id = ? AND rule_id = ? AND parameter = ?",
                (key.user_id, key.rule_id, key.parameter),
            ).fetchone()
        return float(row[0]) if row else None

    def set(self, key: DebounceKey, ts: float) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO alert_debounce (user_id, rule_id, parameter, last_dispatch_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT (user_id, rule_id, parameter) "
                "DO UPDATE SET last_dispatch_at = excluded.last_dispatch_at",
                (key.user_id, key.rule_id, key.parameter, ts),
            )

    def try_acquire(self, key: DebounceKey, now: float, cooldown_s: float) -> bool:
        # Single conditional upsert: inserts, or updates only a stale row.
        with self._lock, self._conn:
            cur = self._conn.execute(
                "INSERT INTO alert_debounce (user_id, rule_id, parameter, last_dispatch_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT (user_id, rule_id, parameter) "
                "DO UPDATE SET last_dispatch_at = excluded.last_dispatch_at "
                "WHERE alert_debounce.last_dispatch_at <= ?",
                (key.user_id, key.rule_id, key.parameter, now, now - cooldown_s),
            )
            return cur.rowcount == 1

    def reset(self, key: DebounceKey) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "DELETE FROM alert_debounce "
                "WHERE user_id = ? AND rule_id = ? AND parameter = ?",
                (key.user_id, key.rule_id, key.parameter),
            )

    def reset_user(self, user_id: str, rule_id: str | None = None) -> int:
        with self._lock, self._conn:
            if rule_id is None:
                cur = self._conn.execute(
                    "DELETE FROM alert_debounce WHERE user_id = ?", (user_id,)
                )
            else:
                cur = self._conn.execute(
                    "DELETE FROM alert_debounce WHERE user_id = ? AND rule_id = ?",
                    (user_id, rule_id),
                )
            return cur.rowcount

    def entries_for(self, user_id: str) -> dict[DebounceKey, float]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT rule_id, parameter, last_dispatch_at FROM alert_debounce "
                "WHERE user_id = ?",
                (user_id,),
            ).fetchall()
        return {
            DebounceKey(user_id, rule_id, parameter): float(ts)
            for rule_id, parameter, ts in rows
        }

    def close(self) -> None:
        with self._lock:
            self._conn.close()


@dataclass
class CooldownStatus:
    key: DebounceKey
    last_dispatch_at: float
    remaining_s: float

    @property
    def allowed(self) -> bool:
        return self.remaining_s <= 0


class DebounceGate:
    """Suppress repeat dispatches for a key within ``cooldown_s`` seconds.

    Store errors fail open: the dispatch is allowed and the error logged.
    """

    def __init__(self, store: DebounceStore, cooldown_s: float = 60.0) -> None:
        self.store = store
        self.cooldown_s = max(0.0, float(cooldown_s))

    def should_dispatch(self, key: DebounceKey, now: float) -> bool:
        try:
            last = self.store.get(key)
        except Exception:
            logger.exception("Debounce store unavailable; allowing %s", key.as_str())
            return True
        return last is None or (now - last) >= self.cooldown_s

    def record_dispatch(self, key: DebounceKey, now: float) -> None:
        try:
            self.store.set(key, now)
        except Exception:
            logger.exception("Failed recording dispatch for %s", key.as_str())

    def acquire(self, key: DebounceKey, now: float) -> bool:
        """Check and record in one step; True when the caller may dispatch."""
        try:
            allowed = self.store.try_acquire(key, now, self.cooldown_s)
        except Exception:
            logger.exception("Debounce store unavailable; allowing %s", key.as_str())
            return True
        if not allowed:
            logger.debug("Alert %s debounced", key.as_str())
        return allowed

    def status(self, user_id: str, now: float) -> list[CooldownStatus]:
        try:
            entries = self.store.entries_for(user_id)
        except Exception:
            logger.exception("Failed reading cooldown status for user %s", user_id)
            return []
        out = []
        for key, last in sorted(entries.items()):
            remaining = max(0.0, self.cooldown_s - (now - last))
            out.append(CooldownStatus(key=key, last_dispatch_at=last, remaining_s=remaining))
        return out

    def reset(self, user_id: str, rule_id: str | None = None) -> int:
        try:
            removed = self.store.reset_user(user_id, rule_id)
        except Exception:
            logger.exception("Failed resetting cooldown for user %s", user_id)
            return 0
        logger.info("Cooldown reset for user %s (%d entries)", user_id, removed)
        return removed
