"""In-memory transport for tests and single-process use."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple, Union

from ..contracts import OrchestratorEvent
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, str]]):
    """Simple in-process queue per topic."""

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.acked = 0

    async def publish(self, topic: str, event: Union[OrchestratorEvent, str]) -> None:
        """Publish an event body to the topic queue."""
        async with self._lock:
            self._queues[topic].append(self.encode(event))

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], str]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            body = None
            async with self._lock:
                if self._queues[topic]:
                    body = self._queues[topic].popleft()
            if body is not None:
                yield (topic, body), body
                continue

            await asyncio.sleep(0.05)

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        self.acked += 1

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        """Put the message back at the end of its queue when ``requeue``."""
        if not requeue:
            return
        topic, body = raw_message
        async with self._lock:
            self._queues[topic].append(body)
