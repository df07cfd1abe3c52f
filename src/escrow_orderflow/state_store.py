from __future__ import annotations

import json
import sqlite3
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Protocol


class StateStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def put(self, key: str, value: Any) -> None: ...

    def put_if_absent(self, key: str, value: Any) -> bool: ...

    def close(self) -> None: ...


class MemoryStateStore:
    """Keyed state with a fixed TTL, evicted oldest-first.

    Every put refreshes the entry and moves it to the back, so the front of the
    map is always the next entry to expire.
    """

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, Any]] = OrderedDict()

    def __len__(self) -> int:
        self._purge(self._clock())
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        self._purge(self._clock())
        entry = self._entries.get(key)
        return entry[1] if entry is not None else None

    def put(self, key: str, value: Any) -> None:
        now = self._clock()
        self._purge(now)
        self._entries[key] = (now, value)
        self._entries.move_to_end(key)

    def put_if_absent(self, key: str, value: Any) -> bool:
        now = self._clock()
        self._purge(now)
        if key in self._entries:
            return False
        self._entries[key] = (now, value)
        return True

    def _purge(self, now: float) -> None:
        if self.ttl_seconds is None:
            return
        cutoff = now - self.ttl_seconds
        while self._entries:
            first_key = next(iter(self._entries))
            if self._entries[first_key][0] >= cutoff:
                break
            self._entries.popitem(last=False)

    def close(self) -> None:
        pass


class SqliteStateStore:
    def __init__(
        self,
        db_path: str,
        namespace: str,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS state_entries (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                value_json TEXT NOT NULL,
                expires_at REAL,
                PRIMARY KEY (namespace, key)
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_state_entries_expires ON state_entries(expires_at)"
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def get(self, key: str) -> Any | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT value_json FROM state_entries
                WHERE namespace = ? AND key = ? AND (expires_at IS NULL OR expires_at >= ?)
                """,
                (self.namespace, key, self._clock()),
            ).fetchone()
        return json.loads(row[0]) if row is not None else None

    def put(self, key: str, value: Any) -> None:
        with self._lock, self._conn:
            self._purge(self._clock())
            self._conn.execute(
                """
                INSERT INTO state_entries(namespace, key, value_json, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    value_json = excluded.value_json,
                    expires_at = excluded.expires_at
                """,
                (self.namespace, key, json.dumps(value), self._expires_at()),
            )

    def put_if_absent(self, key: str, value: Any) -> bool:
        with self._lock, self._conn:
            self._purge(self._clock())
            cursor = self._conn.execute(
                """
                INSERT INTO state_entries(namespace, key, value_json, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(namespace, key) DO NOTHING
                """,
                (self.namespace, key, json.dumps(value), self._expires_at()),
            )
            return cursor.rowcount == 1

    def __len__(self) -> int:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT COUNT(*) FROM state_entries
                WHERE namespace = ? AND (expires_at IS NULL OR expires_at >= ?)
                """,
                (self.namespace, self._clock()),
            ).fetchone()
        return int(row[0])

    def _purge(self, now: float) -> None:
        self._conn.execute(
            "DELETE FROM state_entries WHERE namespace = ? AND expires_at < ?",
            (self.namespace, now),
        )

    def _expires_at(self) -> float | None:
        if self.ttl_seconds is None:
            return None
        return self._clock() + self.ttl_seconds
