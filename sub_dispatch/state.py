"""
SQLite persistence for subscriptions and the topic index.

Stores:
- subscriptions: channel_id → serialised SubscriptionRecord
- topic_channels: topic_key ↔ channel_id, indexed both ways so deleting a
  channel does not scan the whole topic index
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Iterable
from datetime import datetime, timezone

import aiosqlite
import structlog
from pydantic_core import PydanticSerializationError

from .errors import RecordEncodingError, SubscriptionNotFound
from .models import SubscriptionRecord
from .store import SubscriptionStore

log = structlog.get_logger()

_SCHEMA = """
CREATE TABLE IF NOT EXISTS subscriptions (
    channel_id TEXT PRIMARY KEY,
    record     TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS topic_channels (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    topic_key  TEXT NOT NULL,
    channel_id TEXT NOT NULL,
    UNIQUE (topic_key, channel_id)
);

CREATE INDEX IF NOT EXISTS idx_topic_channels_channel
    ON topic_channels(channel_id);
"""


class SqliteSubscriptionStore(SubscriptionStore):
    """
    Async SQLite subscription store.

    Records are persisted as JSON, so their ``variables``, ``context`` and
    ``scope_value`` must hold JSON-representable values only (mappings, lists,
    strings, numbers, booleans, None). Anything else is rejected by ``write``
    with ``RecordEncodingError`` before the database is touched. Values come
    back in their JSON form: tuples are read as lists.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        if self._db_path != ":memory:":
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        log.info("store.opened", path=self._db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def write(
        self,
        channel_id: str,
        record: SubscriptionRecord,
        topic_keys: Iterable[str],
    ) -> None:
        assert self._db
        keys = list(dict.fromkeys(topic_keys))
        try:
            payload = record.model_dump_json()
        except PydanticSerializationError as exc:
            raise RecordEncodingError(channel_id, str(exc)) from exc
        now = datetime.now(timezone.utc).isoformat()
        async with self._lock:
            try:
                await self._db.execute(
                    "DELETE FROM topic_channels WHERE channel_id = ?", (channel_id,)
                )
                await self._db.execute(
                    """INSERT OR REPLACE INTO subscriptions (channel_id, record, updated_at)
                       VALUES (?, ?, ?)""",
                    (channel_id, payload, now),
                )
                await self._db.executemany(
                    "INSERT OR IGNORE INTO topic_channels (topic_key, channel_id) VALUES (?, ?)",
                    [(key, channel_id) for key in keys],
                )
                await self._db.commit()
            except Exception:
                await self._db.rollback()
                raise
        log.debug("store.written", channel=channel_id, topics=len(keys))

    async def channels_for(self, topic_key: str) -> list[str]:
        assert self._db
        async with self._lock:
            cursor = await self._db.execute(
                "SELECT channel_id FROM topic_channels WHERE topic_key = ? ORDER BY id",
                (topic_key,),
            )
            rows = await cursor.fetchall()
        return [row["channel_id"] for row in rows]

    async def read(self, channel_id: str) -> SubscriptionRecord:
        assert self._db
        async with self._lock:
            cursor = await self._db.execute(
                "SELECT record FROM subscriptions WHERE channel_id = ?", (channel_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            raise SubscriptionNotFound(channel_id)
        return SubscriptionRecord.model_validate_json(row["record"])

    async def delete(self, channel_id: str) -> None:
        assert self._db
        async with self._lock:
            try:
                cursor = await self._db.execute(
                    "DELETE FROM subscriptions WHERE channel_id = ?", (channel_id,)
                )
                await self._db.execute(
                    "DELETE FROM topic_channels WHERE channel_id = ?", (channel_id,)
                )
                await self._db.commit()
            except Exception:
                await self._db.rollback()
                raise
        if cursor.rowcount:
            log.debug("store.deleted", channel=channel_id)

    async def count(self) -> int:
        assert self._db
        cursor = await self._db.execute("SELECT COUNT(*) AS n FROM subscriptions")
        row = await cursor.fetchone()
        return row["n"]

    async def topic_count(self) -> int:
        assert self._db
        cursor = await self._db.execute(
            "SELECT COUNT(DISTINCT topic_key) AS n FROM topic_channels"
        )
        row = await cursor.fetchone()
        return row["n"]
