"""Best-effort, non-blocking audit trail."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Set

from .config import AuditConfig
from .enums import ActorKind
from .persistence import AuditEvent, EngineRepository
from .utils.retry import schedule_retry
from .utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class AuditEmitter:
    """Append :class:`AuditEvent` rows without blocking the caller.

    Each write runs as a background task, retried up to ``max_attempts``
    times with exponential backoff. Exhausted writes are logged and dropped.
    """

    def __init__(
        self,
        repository: EngineRepository,
        max_attempts: int = 3,
        backoff_base: float = 1.5,
        backoff_jitter: float = 0.5,
        enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_jitter = backoff_jitter
        self.enabled = enabled
        self.dropped = 0
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        repository: EngineRepository,
        config: AuditConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> "AuditEmitter":
        return cls(
            repository,
            max_attempts=config.max_attempts,
            backoff_base=config.backoff_base,
            backoff_jitter=config.backoff_jitter,
            enabled=config.enabled,
            clock=clock,
        )

    def record(self, event: AuditEvent) -> Optional[asyncio.Task]:
        """Schedule ``event`` for persistence; never raises."""
        if not self.enabled:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; dropping audit event {event.action}")
            self.dropped += 1
            return None
        task = loop.create_task(self._write(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def log(
        self,
        action: str,
        resource_kind: str,
        resource_id: str,
        *,
        workflow_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        actor_kind: ActorKind = ActorKind.SYSTEM,
        actor_id: str = "stepwatch",
    ) -> Optional[asyncio.Task]:
        """Build an :class:`AuditEvent` and :meth:`record` it."""
        return self.record(
            AuditEvent(
                actor_kind=actor_kind,
                actor_id=actor_id,
                action=action,
                resource_kind=resource_kind,
                resource_id=resource_id,
                workflow_id=workflow_id,
                payload=payload or {},
                created_at=self._clock(),
            )
        )

    async def _write(self, event: AuditEvent) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await self._repository.append_audit_event(event)
                return
            except Exception as e:
                if attempt >= self.max_attempts:
                    self.dropped += 1
                    logger.error(
                        f"Dropping audit event {event.action} on {event.resource_kind}/"
                        f"{event.resource_id} after {attempt} attempt(s): {e}"
                    )
                    return
                logger.warning(
                    f"Audit write for {event.action} failed (attempt {attempt}): {e}"
                )
                await schedule_retry(attempt, self.backoff_base, self.backoff_jitter)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled audit write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
