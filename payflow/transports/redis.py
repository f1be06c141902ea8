"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..config import RedisConfig
from ..events import DomainEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

# (topic, serialized event); enough to push a delivery back on nack
RedisDelivery = Tuple[str, str]


class RedisTransport(BaseTransport[RedisDelivery]):
    """Each topic is a Redis list: producers LPUSH, consumers BRPOP.

    A popped event is gone from the list, so acknowledging is a no-op and a
    negative acknowledgement pushes the event back onto the consuming end.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        key_prefix: str = "payflow",
        poll_timeout: int = 1,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.key_prefix = key_prefix
        self.poll_timeout = poll_timeout
        self._client: Optional[redis.Redis] = None

    @classmethod
    def from_config(cls, settings: RedisConfig) -> "RedisTransport":
        return cls(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
            key_prefix=settings.key_prefix,
        )

    def key(self, topic: str) -> str:
        return f"{self.key_prefix}:{topic}"

    async def connect(self) -> None:
        client = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await client.ping()
        self._client = client
        logger.info(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _redis(self) -> redis.Redis:
        if self._client is None:
            await self.connect()
        return self._client

    async def publish(self, topic: str, event: DomainEvent) -> None:
        client = await self._redis()
        await client.lpush(self.key(topic), event.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RedisDelivery, DomainEvent]]:
        client = await self._redis()
        key = self.key(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            popped = await client.brpop(key, timeout=self.poll_timeout)
            if not popped:
                continue
            _, body = popped
            try:
                event = DomainEvent.from_json(body)
            except ValidationError as e:
                logger.error(f"Dropping malformed event on {key}: {e}")
                continue
            yield (topic, body), event

    async def ack(self, raw_message: RedisDelivery) -> None:
        return None

    async def nack(self, raw_message: RedisDelivery, requeue: bool = True) -> None:
        if not requeue:
            logger.warning(f"Discarding event from {self.key(raw_message[0])}")
            return
        topic, body = raw_message
        client = await self._redis()
        await client.rpush(self.key(topic), body)
