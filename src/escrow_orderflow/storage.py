from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from .types import EventKind, NormalizedEvent, OfferProjection

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    event_kind TEXT NOT NULL,
    transaction_signature TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    offer_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    ingested_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_offer_id ON events(offer_id);
CREATE INDEX IF NOT EXISTS idx_events_sequence ON events(sequence);

CREATE TABLE IF NOT EXISTS offers (
    offer_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    maker TEXT NOT NULL,
    taker TEXT,
    asset_a TEXT NOT NULL,
    asset_b TEXT NOT NULL,
    amount_a TEXT NOT NULL,
    amount_b TEXT NOT NULL,
    created_sequence INTEGER,
    updated_sequence INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_offers_maker ON offers(maker);
CREATE INDEX IF NOT EXISTS idx_offers_updated_sequence ON offers(updated_sequence);
"""

_STATUS_BY_KIND = {
    EventKind.CREATED: "created",
    EventKind.FILLED: "filled",
    EventKind.CANCELLED: "cancelled",
}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def projection_fields(event: NormalizedEvent) -> tuple[str, str | None]:
    status = _STATUS_BY_KIND[event.event_kind]
    taker = event.taker if event.event_kind is EventKind.FILLED else None
    return status, taker


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL")
    return conn


class EventStore:
    def __init__(self, db_path: str) -> None:
        self._conn = create_sqlite_connection(db_path)
        self._conn.executescript(SCHEMA_SQL)

    def close(self) -> None:
        self._conn.close()

    def write_event(self, event: NormalizedEvent, updated_at: str | None = None) -> bool:
        """Apply one event: audit insert plus projection upsert, atomically.

        Returns ``True`` when the audit row was new. Raises ``sqlite3.Error`` on
        storage failure after rolling back, so the caller can retry the event.
        """
        updated_at = updated_at or utc_now_iso()
        status, taker = projection_fields(event)

        self._conn.execute("BEGIN IMMEDIATE")
        try:
            inserted = self._insert_audit(event, updated_at)
            self._upsert_offer(event, status, taker, updated_at)
            self._conn.execute("COMMIT")
        except BaseException:
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise
        return inserted

    def _insert_audit(self, event: NormalizedEvent, ingested_at: str) -> bool:
        cursor = self._conn.execute(
            """
            INSERT INTO events(
                event_id, event_kind, transaction_signature, sequence, offer_id, payload, ingested_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(event_id) DO NOTHING
            """,
            (
                event.event_id,
                event.event_kind.value,
                event.transaction_signature,
                event.sequence,
                event.offer_id,
                event.to_json(),
                ingested_at,
            ),
        )
        return cursor.rowcount == 1

    def _upsert_offer(
        self, event: NormalizedEvent, status: str, taker: str | None, updated_at: str
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO offers(
                offer_id, status, maker, taker, asset_a, asset_b, amount_a, amount_b,
                created_sequence, updated_sequence, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(offer_id) DO UPDATE SET
                status = excluded.status,
                maker = excluded.maker,
                taker = excluded.taker,
                asset_a = excluded.asset_a,
                asset_b = excluded.asset_b,
                amount_a = excluded.amount_a,
                amount_b = excluded.amount_b,
                created_sequence = COALESCE(offers.created_sequence, excluded.created_sequence),
                updated_sequence = excluded.updated_sequence,
                updated_at = excluded.updated_at
            WHERE offers.updated_sequence <= excluded.updated_sequence
            """,
            (
                event.offer_id,
                status,
                event.maker,
                taker,
                event.asset_a,
                event.asset_b,
                event.amount_a,
                event.amount_b,
                event.sequence,
                event.sequence,
                updated_at,
            ),
        )
        # A late event from before the first one applied still owns the creation sequence.
        self._conn.execute(
            """
            UPDATE offers SET created_sequence = ?
            WHERE offer_id = ? AND (created_sequence IS NULL OR created_sequence > ?)
            """,
            (event.sequence, event.offer_id, event.sequence),
        )

    def get_offer(self, offer_id: str) -> OfferProjection | None:
        row = self._conn.execute("SELECT * FROM offers WHERE offer_id = ?", (offer_id,)).fetchone()
        if row is None:
            return None
        return OfferProjection(
            offer_id=str(row["offer_id"]),
            status=str(row["status"]),
            maker=str(row["maker"]),
            taker=str(row["taker"]) if row["taker"] is not None else None,
            asset_a=str(row["asset_a"]),
            asset_b=str(row["asset_b"]),
            amount_a=str(row["amount_a"]),
            amount_b=str(row["amount_b"]),
            created_sequence=(
                int(row["created_sequence"]) if row["created_sequence"] is not None else None
            ),
            updated_sequence=int(row["updated_sequence"]),
            updated_at=str(row["updated_at"]),
        )

    def count_events(self, event_id: str | None = None) -> int:
        if event_id is None:
            row = self._conn.execute("SELECT COUNT(*) FROM events").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM events WHERE event_id = ?", (event_id,)
            ).fetchone()
        return int(row[0])
