"""Feed orchestrator events from a transport into the engine."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .engine import WorkflowEngine
from .errors import InvalidEvent, UnknownWorkflow
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EventConsumer:
    """Subscribe to the orchestrator topic and ingest each event.

    Rejected events (malformed or for unknown workflows) are logged and
    acknowledged; redelivering them cannot succeed. Any other failure is
    negatively acknowledged so the broker can redeliver.
    """

    def __init__(
        self,
        transport: BaseTransport,
        engine: WorkflowEngine,
        topic: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._engine = engine
        self.topic = topic or engine.config.transport.topic
        self.processed = 0
        self.rejected = 0
        self.failed = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume until ``lifespan`` seconds have passed (forever if None)."""
        logger.info(f"Consuming orchestrator events from {self.topic}")
        async for raw_message, body in self._transport.subscribe(
            self.topic, lifespan=lifespan
        ):
            await self._handle(raw_message, body)

    async def _handle(self, raw_message: Any, body: str) -> None:
        try:
            result = await self._engine.handle_event(body)
        except (InvalidEvent, UnknownWorkflow) as e:
            self.rejected += 1
            logger.warning(f"Rejected event: {e}")
            await self._transport.ack(raw_message)
            return
        except Exception as e:
            self.failed += 1
            logger.error(f"Failed to ingest event, requeueing: {e}")
            await self._transport.nack(raw_message, requeue=True)
            return

        self.processed += 1
        if result.duplicate:
            logger.debug(f"Duplicate event {result.record.source_event_id} acknowledged")
        await self._transport.ack(raw_message)
