"""Base transport interface for inbound orchestrator events."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar, Union

from ..contracts import OrchestratorEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract channel carrying JSON event envelopes.

    Bodies are delivered undecoded so the consumer can reject malformed
    payloads itself.
    """

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @staticmethod
    def encode(event: Union[OrchestratorEvent, str]) -> str:
        return event.to_json() if isinstance(event, OrchestratorEvent) else event

    @abc.abstractmethod
    async def publish(self, topic: str, event: Union[OrchestratorEvent, str]) -> None:
        """Send an event (or a raw JSON body) to a topic."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, str]]:
        """Yield raw transport message and JSON body pairs.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)
