"""SQLite backed persistence used by the web push dispatcher.

Holds the hourly ``message_stats`` counter table, the all-time counters on
``messages``, the append-only ``web_push_events`` log and a reference
``push_contacts`` store. Counter writes are single increment-or-create
statements so concurrent writers to the same bucket never lose updates.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

import aiosqlite

from .logger import get_logger
from .models import (
    CounterDeltas,
    MessageStats,
    MessageStatsTotals,
    Subscription,
    SubscriptionInfo,
    SubscriptionKeys,
    WebPushEvent,
    WebPushMessage,
)

STREAM_PAGE_SIZE = 200

STATS_COUNTER_COLUMNS = (
    "sent",
    "delivered",
    "not_delivered",
    "received",
    "click",
    "action_click",
    "billable_sends",
)

_UPSERT_STATS_SQL = f"""
    INSERT INTO message_stats (domain, message_id, date, {', '.join(STATS_COUNTER_COLUMNS)})
    VALUES (?, ?, ?, {', '.join('?' for _ in STATS_COUNTER_COLUMNS)})
    ON CONFLICT(domain, message_id, date) DO UPDATE SET
        {', '.join(f"{col} = message_stats.{col} + excluded.{col}" for col in STATS_COUNTER_COLUMNS)}
"""


def _to_db_date(value: datetime) -> str:
    """Serialise a timestamp as a UTC ISO-8601 string (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_db_date(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _stats_params(stats: MessageStats) -> Tuple[Any, ...]:
    return (
        stats.domain,
        str(stats.message_id),
        _to_db_date(stats.date),
        *(int(getattr(stats, col)) for col in STATS_COUNTER_COLUMNS),
    )


class Persistence:
    """Helper class responsible for reading and writing dispatcher state."""

    def __init__(self, db_path: str = "/data/webpush_dispatch.db", logger: logging.Logger | None = None):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"
        self.logger = logger or get_logger("Persistence")

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    message_id TEXT PRIMARY KEY,
                    domain TEXT NOT NULL,
                    title TEXT,
                    body TEXT,
                    on_click_link TEXT,
                    image_url TEXT,
                    sent INTEGER NOT NULL DEFAULT 0,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    not_delivered INTEGER NOT NULL DEFAULT 0,
                    billable_sends INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS message_stats (
                    domain TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    date TEXT NOT NULL,
                    sent INTEGER NOT NULL DEFAULT 0,
                    delivered INTEGER NOT NULL DEFAULT 0,
                    not_delivered INTEGER NOT NULL DEFAULT 0,
                    received INTEGER NOT NULL DEFAULT 0,
                    click INTEGER NOT NULL DEFAULT 0,
                    action_click INTEGER NOT NULL DEFAULT 0,
                    billable_sends INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (domain, message_id, date)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS web_push_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    domain TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    push_contact_id TEXT,
                    date TEXT NOT NULL,
                    type INTEGER NOT NULL,
                    sub_type INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS push_contacts (
                    push_contact_id TEXT PRIMARY KEY,
                    domain TEXT NOT NULL,
                    visitor_guid TEXT,
                    endpoint TEXT,
                    p256dh TEXT,
                    auth TEXT,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    modified TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_push_contacts_domain ON push_contacts(domain, deleted)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_web_push_events_message ON web_push_events(message_id)"
            )
            await db.commit()

    # Messages -----------------------------------------------------------------
    async def add_message(self, message: WebPushMessage) -> None:
        """Store the parent message row that carries the all-time counters."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO messages (message_id, domain, title, body, on_click_link, image_url)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(message.message_id),
                    message.domain,
                    message.title,
                    message.body,
                    message.on_click_link,
                    message.image_url,
                ),
            )
            await db.commit()

    async def get_message(self, message_id: UUID) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT * FROM messages WHERE message_id=?", (str(message_id),)) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def get_message_counters(self, message_id: UUID) -> Optional[CounterDeltas]:
        """Return the all-time counters of a message, or ``None`` when it is unknown."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT sent, delivered, not_delivered, billable_sends FROM messages WHERE message_id=?",
                (str(message_id),),
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        sent, delivered, not_delivered, billable_sends = row
        return CounterDeltas(
            sent=sent, delivered=delivered, not_delivered=not_delivered, billable_sends=billable_sends
        )

    async def increment_message_counters(
        self,
        message_id: UUID,
        sent: int,
        delivered: int,
        not_delivered: int,
        billable_sends: int = 0,
    ) -> bool:
        """Increment the all-time counters of a message.

        This read-model is secondary: failures are logged and swallowed, and
        ``False`` is returned instead of raising.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    """
                    UPDATE messages
                    SET sent = sent + ?,
                        delivered = delivered + ?,
                        not_delivered = not_delivered + ?,
                        billable_sends = billable_sends + ?
                    WHERE message_id = ?
                    """,
                    (sent, delivered, not_delivered, billable_sends, str(message_id)),
                )
                await db.commit()
                return cursor.rowcount > 0
        except Exception:
            self.logger.exception("Error updating message counters with message_id %s", message_id)
            return False

    # Message stats ------------------------------------------------------------
    async def upsert_message_stats(self, stats: MessageStats) -> None:
        """Atomically add ``stats`` to its (domain, message_id, date) bucket, creating it if absent."""
        if stats is None:
            raise ValueError("stats must not be None")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(_UPSERT_STATS_SQL, _stats_params(stats))
            await db.commit()

    async def bulk_upsert_message_stats(self, rows: Sequence[MessageStats]) -> int:
        """Apply many bucket deltas in a single transaction. Returns the number of rows applied."""
        if not rows:
            return 0
        async with aiosqlite.connect(self.db_path) as db:
            await db.executemany(_UPSERT_STATS_SQL, [_stats_params(row) for row in rows])
            await db.commit()
        return len(rows)

    @staticmethod
    def _decode_stats_row(row: Tuple[Any, ...], columns: Sequence[str]) -> MessageStats:
        data = dict(zip(columns, row))
        data["date"] = _from_db_date(data["date"])
        return MessageStats(**data)

    @staticmethod
    def _stats_filter(
        domain: str,
        message_ids: Optional[Iterable[UUID]],
        date_from: Optional[datetime],
        date_to: Optional[datetime],
    ) -> Tuple[str, List[Any]]:
        clauses = ["domain = ?"]
        params: List[Any] = [domain]
        ids = [str(mid) for mid in message_ids or [] if mid]
        if ids:
            clauses.append(f"message_id IN ({','.join('?' for _ in ids)})")
            params.extend(ids)
        if date_from is not None:
            clauses.append("date >= ?")
            params.append(_to_db_date(date_from))
        if date_to is not None:
            clauses.append("date <= ?")
            params.append(_to_db_date(date_to))
        return " AND ".join(clauses), params

    async def list_message_stats(
        self,
        domain: str,
        message_ids: Optional[Iterable[UUID]] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[MessageStats]:
        """Return hourly rows of a domain, optionally filtered by messages and date range (inclusive)."""
        where, params = self._stats_filter(domain, message_ids, date_from, date_to)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT domain, message_id, date, {', '.join(STATS_COUNTER_COLUMNS)}
                FROM message_stats
                WHERE {where}
                ORDER BY date ASC, message_id ASC
                """,
                params,
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_stats_row(row, cols) for row in rows]

    async def get_message_stats(
        self,
        domain: str,
        message_id: Optional[UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> MessageStatsTotals:
        """Return counter totals for a domain (and optionally one message) over a date range."""
        where, params = self._stats_filter(domain, [message_id] if message_id else None, date_from, date_to)
        sums = ", ".join(f"COALESCE(SUM({col}), 0)" for col in STATS_COUNTER_COLUMNS)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(f"SELECT {sums} FROM message_stats WHERE {where}", params) as cur:
                row = await cur.fetchone()
        return MessageStatsTotals(**dict(zip(STATS_COUNTER_COLUMNS, row)))

    # Web push events ----------------------------------------------------------
    async def insert_web_push_event(self, event: WebPushEvent) -> bool:
        """Append an event to the log. Best effort: errors are logged, ``False`` returned."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO web_push_events (domain, message_id, push_contact_id, date, type, sub_type, error_message)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.domain,
                        str(event.message_id),
                        event.push_contact_id,
                        _to_db_date(event.date),
                        int(event.type),
                        int(event.sub_type),
                        event.error_message,
                    ),
                )
                await db.commit()
            return True
        except Exception:
            self.logger.exception("Error registering web push event for message_id %s", event.message_id)
            return False

    async def list_web_push_events(self, message_id: UUID) -> List[WebPushEvent]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT domain, message_id, push_contact_id, date, type, sub_type, error_message
                FROM web_push_events
                WHERE message_id = ?
                ORDER BY id ASC
                """,
                (str(message_id),),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        events = []
        for row in rows:
            data = dict(zip(cols, row))
            data["date"] = _from_db_date(data["date"])
            events.append(WebPushEvent(**data))
        return events

    # Push contacts ------------------------------------------------------------
    @staticmethod
    def _decode_contact_row(row: Tuple[Any, ...]) -> SubscriptionInfo:
        push_contact_id, domain, visitor_guid, endpoint, p256dh, auth = row
        return SubscriptionInfo(
            push_contact_id=push_contact_id,
            domain=domain,
            visitor_guid=visitor_guid,
            subscription=Subscription(endpoint=endpoint, keys=SubscriptionKeys(p256dh=p256dh, auth=auth)),
        )

    async def add_push_contact(self, contact: SubscriptionInfo) -> None:
        """Insert or overwrite a push contact subscription."""
        subscription = contact.subscription or Subscription()
        keys = subscription.keys or SubscriptionKeys()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO push_contacts
                (push_contact_id, domain, visitor_guid, endpoint, p256dh, auth, deleted)
                VALUES (?, ?, ?, ?, ?, ?, 0)
                """,
                (
                    contact.push_contact_id,
                    contact.domain,
                    contact.visitor_guid,
                    subscription.endpoint,
                    keys.p256dh,
                    keys.auth,
                ),
            )
            await db.commit()

    async def stream_subscriptions_by_domain(
        self, domain: str, page_size: int = STREAM_PAGE_SIZE
    ) -> AsyncIterator[SubscriptionInfo]:
        """Yield the active subscriptions of a domain page by page.

        Pages are read by ``push_contact_id`` keyset, each on its own
        short-lived connection, so no read lock is held while the caller is
        suspended between rows and the full recipient set is never in memory.
        """
        last_id = ""
        while True:
            async with aiosqlite.connect(self.db_path) as db:
                async with db.execute(
                    """
                    SELECT push_contact_id, domain, visitor_guid, endpoint, p256dh, auth
                    FROM push_contacts
                    WHERE domain = ? AND deleted = 0 AND push_contact_id > ?
                    ORDER BY push_contact_id ASC
                    LIMIT ?
                    """,
                    (domain, last_id, page_size),
                ) as cur:
                    rows = await cur.fetchall()
            for row in rows:
                yield self._decode_contact_row(row)
            if len(rows) < page_size:
                return
            last_id = rows[-1][0]

    async def get_subscriptions_by_visitor(self, domain: str, visitor_guid: str) -> List[SubscriptionInfo]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT push_contact_id, domain, visitor_guid, endpoint, p256dh, auth
                FROM push_contacts
                WHERE domain = ? AND visitor_guid = ? AND deleted = 0
                ORDER BY push_contact_id ASC
                """,
                (domain, visitor_guid),
            ) as cur:
                rows = await cur.fetchall()
        return [self._decode_contact_row(row) for row in rows]

    async def mark_deleted(self, endpoint: str) -> int:
        """Flag every contact registered with ``endpoint`` as deleted. Returns the affected count."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE push_contacts
                SET deleted = 1, modified = CURRENT_TIMESTAMP
                WHERE endpoint = ? AND deleted = 0
                """,
                (endpoint,),
            )
            await db.commit()
            return cursor.rowcount
