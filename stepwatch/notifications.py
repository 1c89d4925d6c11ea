"""Deduplicated per-recipient notification fan-out."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional, Set

from .audit import AuditEmitter
from .enums import NotificationKind, Priority
from .persistence import EngineRepository, Notification
from .utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class NotificationFanout:
    """Create at most one notification per ``(recipient_id, dedup_key)``."""

    def __init__(
        self,
        repository: EngineRepository,
        audit: Optional[AuditEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    async def notify(
        self,
        kind: NotificationKind,
        dedup_key: str,
        recipients: Iterable[Optional[str]],
        payload: Optional[dict[str, Any]] = None,
        *,
        priority: Priority = Priority.NORMAL,
        title: str = "",
        message: str = "",
        workflow_id: Optional[str] = None,
    ) -> List[Notification]:
        """Insert-or-ignore one row per recipient and return the new rows.

        A failure for one recipient is logged and does not affect the others.
        """

        created: List[Notification] = []
        for recipient in dict.fromkeys(r for r in recipients if r):
            notification = Notification(
                recipient_id=recipient,
                kind=kind,
                priority=priority,
                dedup_key=dedup_key,
                title=title,
                message=message,
                workflow_id=workflow_id,
                payload=payload or {},
                created_at=self._clock(),
            )
            try:
                stored, inserted = await self._repository.insert_notification(notification)
            except Exception as e:
                logger.error(
                    f"Failed to notify {recipient} for {dedup_key}: {e}"
                )
                continue
            if not inserted:
                logger.debug(f"Notification {dedup_key} already exists for {recipient}")
                continue
            created.append(stored)
            logger.info(f"Notified {recipient}: {kind.value} ({dedup_key})")
            if self._audit is not None:
                self._audit.log(
                    "notification.created",
                    "notification",
                    stored.id,
                    workflow_id=workflow_id,
                    payload={
                        "recipient_id": recipient,
                        "kind": kind.value,
                        "dedup_key": dedup_key,
                    },
                )
        return created

    def dispatch(self, *args: Any, **kwargs: Any) -> asyncio.Task:
        """Run :meth:`notify` in the background and return its task."""
        task = asyncio.get_running_loop().create_task(self.notify(*args, **kwargs))
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Notification dispatch failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for dispatched notifications to be written."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def notify_mentions(
        self,
        note_id: str,
        author_id: str,
        mentioned_user_ids: Iterable[str],
        *,
        workflow_id: Optional[str] = None,
        excerpt: str = "",
    ) -> List[Notification]:
        """Notify users mentioned in an operator note, once per note and user."""
        created: List[Notification] = []
        for user_id in dict.fromkeys(mentioned_user_ids):
            if not user_id or user_id == author_id:
                continue
            created.extend(
                await self.notify(
                    NotificationKind.HIL_MENTION,
                    f"mention:{note_id}:{user_id}",
                    [user_id],
                    {"note_id": note_id, "author_id": author_id},
                    title="You were mentioned",
                    message=excerpt or f"{author_id} mentioned you in a note",
                    workflow_id=workflow_id,
                )
            )
        return created

    async def list_for(
        self, recipient_id: str, unread_only: bool = False
    ) -> List[Notification]:
        return await self._repository.list_notifications(recipient_id, unread_only)

    async def mark_read(self, notification_id: str) -> bool:
        return await self._repository.mark_notification_read(
            notification_id, self._clock()
        )
