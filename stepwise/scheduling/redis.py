"""Redis scheduler for cross-process timers."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..lifecycle.controller import EVENT_KINDS, ScheduledEvent, event_id
from ..lifecycle.due_dates import ensure_utc
from .base import BaseScheduler


class RedisScheduler(BaseScheduler):
    """Pending events in a sorted set scored by fire time.

    ``<prefix>:events`` orders event ids by fire timestamp and
    ``<prefix>:event-data`` holds each event's JSON, keyed by the same id.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "stepwise",
        client: Optional[Any] = None,
    ) -> None:
        if redis is None and client is None:
            raise ImportError("redis package is required for RedisScheduler")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.index_key = f"{key_prefix}:events"
        self.data_key = f"{key_prefix}:event-data"
        self._redis: Optional[Any] = client

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is not None:
            return
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def schedule(self, event: ScheduledEvent) -> None:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.hset(self.data_key, event.event_id, event.model_dump_json())
            pipe.zadd(self.index_key, {event.event_id: event.fire_at.timestamp()})
            await pipe.execute()

    async def cancel_step(self, step_execution_id: str) -> int:
        client = await self._client()
        ids = [event_id(kind, step_execution_id) for kind in EVENT_KINDS]
        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(self.index_key, *ids)
            pipe.hdel(self.data_key, *ids)
            removed, _ = await pipe.execute()
        return int(removed)

    async def _load(self, ids: List[str]) -> List[ScheduledEvent]:
        if not ids:
            return []
        client = await self._client()
        payloads = await client.hmget(self.data_key, ids)
        return [
            ScheduledEvent.model_validate_json(payload) for payload in payloads if payload
        ]

    async def pending(self, step_execution_id: Optional[str] = None) -> List[ScheduledEvent]:
        client = await self._client()
        ids = await client.zrange(self.index_key, 0, -1)
        if step_execution_id is not None:
            ids = [i for i in ids if i.split(":", 1)[1] == step_execution_id]
        return await self._load(ids)

    async def pop_due(self, now: datetime) -> List[ScheduledEvent]:
        client = await self._client()
        ids = await client.zrangebyscore(self.index_key, "-inf", ensure_utc(now).timestamp())
        if not ids:
            return []
        # Only the poller whose ZREM removed an id owns that event.
        async with client.pipeline(transaction=False) as pipe:
            for pending_id in ids:
                pipe.zrem(self.index_key, pending_id)
            removed = await pipe.execute()
        claimed = [pending_id for pending_id, count in zip(ids, removed) if count]
        if not claimed:
            return []
        events = await self._load(claimed)
        await client.hdel(self.data_key, *claimed)
        return events
