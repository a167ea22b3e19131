"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import EngineMessage
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, EngineMessage]]):
    """Simple in-process queue.

    Every published message is also kept in ``published`` so tests can assert
    on emitted lifecycle events without draining the queues.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, EngineMessage]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.published: List[Tuple[str, EngineMessage]] = []

    async def publish(self, topic: str, message: EngineMessage) -> None:
        """Publish message to in-memory queue."""
        raw = (message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)
            self.published.append((topic, message))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, EngineMessage], EngineMessage]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: Tuple[str, EngineMessage]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    def events(self, name: str) -> List[EngineMessage]:
        """Return published messages whose event name equals ``name``."""
        return [message for _, message in self.published if message.event == name]
