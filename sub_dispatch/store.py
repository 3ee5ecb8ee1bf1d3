"""
Subscription storage.

A store owns two things: the record for each channel id, and an index from
topic key to the channels subscribed under it. ``MemorySubscriptionStore`` is
the reference backend; ``state.SqliteSubscriptionStore`` persists the same
data on disk.
"""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Iterable

import structlog

from .errors import SubscriptionNotFound
from .models import SubscriptionRecord

log = structlog.get_logger()


class SubscriptionStore(abc.ABC):
    """Async interface every subscription backend implements."""

    async def open(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abc.abstractmethod
    async def write(
        self,
        channel_id: str,
        record: SubscriptionRecord,
        topic_keys: Iterable[str],
    ) -> None:
        """Upsert ``record`` and index the channel under every key.

        Any earlier record and topic memberships for the channel are replaced.
        Raises ``RecordEncodingError``, leaving the store unchanged, when the
        backend cannot persist the record's values.
        """

    @abc.abstractmethod
    async def channels_for(self, topic_key: str) -> list[str]:
        """Snapshot of the channels indexed under ``topic_key``, in insertion order."""

    @abc.abstractmethod
    async def read(self, channel_id: str) -> SubscriptionRecord:
        """Return the channel's record or raise ``SubscriptionNotFound``."""

    @abc.abstractmethod
    async def delete(self, channel_id: str) -> None:
        """Remove the record and every index entry for the channel. Idempotent."""

    @abc.abstractmethod
    async def count(self) -> int:
        """Number of stored subscriptions."""

    @abc.abstractmethod
    async def topic_count(self) -> int:
        """Number of topic keys with at least one channel."""


class MemorySubscriptionStore(SubscriptionStore):
    """
    In-process store. Mutations are serialised with an asyncio lock.

    Records are kept as-is, so contexts may hold arbitrary Python objects.
    """

    def __init__(self) -> None:
        self._records: dict[str, SubscriptionRecord] = {}
        # dict values are unused; dict keys give an insertion-ordered set
        self._topics: dict[str, dict[str, None]] = {}
        self._lock = asyncio.Lock()

    async def write(
        self,
        channel_id: str,
        record: SubscriptionRecord,
        topic_keys: Iterable[str],
    ) -> None:
        keys = list(dict.fromkeys(topic_keys))
        async with self._lock:
            self._unindex(channel_id)
            self._records[channel_id] = record
            for key in keys:
                self._topics.setdefault(key, {})[channel_id] = None
        log.debug("store.written", channel=channel_id, topics=len(keys))

    async def channels_for(self, topic_key: str) -> list[str]:
        async with self._lock:
            return list(self._topics.get(topic_key, ()))

    async def read(self, channel_id: str) -> SubscriptionRecord:
        try:
            return self._records[channel_id]
        except KeyError:
            raise SubscriptionNotFound(channel_id) from None

    async def delete(self, channel_id: str) -> None:
        async with self._lock:
            existed = self._records.pop(channel_id, None) is not None
            self._unindex(channel_id)
        if existed:
            log.debug("store.deleted", channel=channel_id)

    async def count(self) -> int:
        return len(self._records)

    async def topic_count(self) -> int:
        return len(self._topics)

    def _unindex(self, channel_id: str) -> None:
        # Full scan; callers hold the lock.
        for key in list(self._topics):
            channels = self._topics[key]
            if channel_id in channels:
                del channels[channel_id]
                if not channels:
                    del self._topics[key]
