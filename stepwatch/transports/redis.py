"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple, Union

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from ..contracts import OrchestratorEvent
from .base import BaseTransport

logger = logging.getLogger(__name__)

QUEUE_PREFIX = "stepwatch:"


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis lists used as FIFO queues, one per topic."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
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

    async def publish(self, topic: str, event: Union[OrchestratorEvent, str]) -> None:
        """Push an event body onto the topic list."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(f"{QUEUE_PREFIX}{topic}", self.encode(event))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], str]]:
        """Pop event bodies from the topic list."""
        if not self._redis:
            await self.connect()

        queue_name = f"{QUEUE_PREFIX}{topic}"
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while True:
            if lifespan and start_time is not None:
                if loop.time() - start_time >= lifespan:
                    break

            result = await self._redis.brpop(queue_name, timeout=1)
            if result:
                _, body = result
                yield (queue_name, body), body
                continue

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """No-op acknowledgment (message already popped)."""
        pass

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        """Push the message back to the tail of the queue when ``requeue``."""
        if not requeue:
            return
        if not self._redis:
            await self.connect()
        queue_name, body = raw_message
        await self._redis.lpush(queue_name, body)
        logger.debug(f"Requeued message on {queue_name}")
