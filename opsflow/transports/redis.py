"""Redis list transport shared by workers in separate processes."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis

from ..contracts import OpsflowMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawMessage]):
    """Redis list-backed queue.

    A popped message is parked on a per-topic processing list until it is
    acked, so a crashed worker leaves it recoverable rather than lost.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "opsflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def _processing(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:processing"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: OpsflowMessage) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, OpsflowMessage]]:
        """Move messages onto the processing list and yield them until ``lifespan``."""
        if not self._redis:
            await self.connect()

        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            message_json = await self._redis.blmove(
                self._queue(topic), self._processing(topic), 1, "RIGHT", "LEFT"
            )
            if not message_json:
                continue
            try:
                message = OpsflowMessage.from_json(message_json)
            except ValueError as e:
                logger.error(f"Dropping unparseable message on {topic}: {e}")
                await self._redis.lrem(self._processing(topic), 1, message_json)
                continue
            yield (topic, message_json), message

    async def ack(self, raw_message: RawMessage) -> None:
        topic, message_json = raw_message
        await self._redis.lrem(self._processing(topic), 1, message_json)

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        topic, message_json = raw_message
        await self._redis.lrem(self._processing(topic), 1, message_json)
        if requeue:
            retry = OpsflowMessage.from_json(message_json).bump_attempt()
            await self._redis.lpush(self._queue(topic), retry.to_json())
