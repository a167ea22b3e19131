"""Redis transport: one list per topic with at-least-once delivery.

A delivery is moved atomically from ``<prefix>:<topic>`` to
``<prefix>:<topic>:processing`` and stays there until it is acked. A nack
either puts it back on the topic or parks it on ``<prefix>:<topic>:dead``.
Envelopes that do not parse go straight to the dead list.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis

from ..contracts import EngineMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedisDelivery:
    topic: str
    payload: str


class RedisTransport(BaseTransport[RedisDelivery]):
    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "crmflow",
        poll_timeout: float = 1.0,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.poll_timeout = poll_timeout
        self._redis: Optional[Any] = None

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def _processing(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:processing"

    def _dead(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:dead"

    async def connect(self) -> None:
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
        logger.info(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: EngineMessage) -> None:
        await self.connect()
        await self._redis.lpush(self._queue(topic), message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RedisDelivery, EngineMessage]]:
        await self.connect()
        await self.recover(topic)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        while deadline is None or loop.time() < deadline:
            payload = await self._redis.blmove(
                self._queue(topic),
                self._processing(topic),
                self.poll_timeout,
                src="RIGHT",
                dest="LEFT",
            )
            if payload is None:
                continue
            delivery = RedisDelivery(topic, payload)
            try:
                message = EngineMessage.model_validate(json.loads(payload))
            except (json.JSONDecodeError, ValueError) as e:
                logger.error(f"Unparsable envelope on {self._queue(topic)}: {e}")
                await self.nack(delivery, requeue=False)
                continue
            yield delivery, message

    async def ack(self, raw_message: RedisDelivery) -> None:
        await self._redis.lrem(self._processing(raw_message.topic), 1, raw_message.payload)

    async def nack(self, raw_message: RedisDelivery, requeue: bool = True) -> None:
        await self.ack(raw_message)
        target = self._queue(raw_message.topic) if requeue else self._dead(raw_message.topic)
        await self._redis.lpush(target, raw_message.payload)

    async def recover(self, topic: str) -> int:
        """Return deliveries left in processing by a crashed consumer to the topic."""
        moved = 0
        while await self._redis.lmove(
            self._processing(topic), self._queue(topic), src="RIGHT", dest="RIGHT"
        ):
            moved += 1
        if moved:
            logger.warning(f"Requeued {moved} unacknowledged messages on {self._queue(topic)}")
        return moved
