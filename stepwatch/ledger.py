"""Execution ledger: idempotent, append-only record of step facts."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

from .audit import AuditEmitter
from .contracts import OrchestratorEvent
from .enums import ActorKind, ExecutorKind, StepStatus
from .errors import InvalidEvent, UnknownWorkflow
from .models import AppendResult
from .persistence import EngineRepository, StepExecutionRecord, WorkflowInstance
from .utils.timeutil import ensure_aware, utcnow

logger = logging.getLogger(__name__)

_ACTOR_FOR_EXECUTOR = {
    ExecutorKind.AGENT: ActorKind.AGENT,
    ExecutorKind.HUMAN: ActorKind.HUMAN,
    ExecutorKind.SYSTEM: ActorKind.SYSTEM,
}


class ExecutionLedger:
    """Record each orchestrator fact exactly once.

    Attempt numbers are allocated by the store as part of the insert, so
    concurrent deliveries of the same event race to a single row.
    """

    def __init__(
        self,
        repository: EngineRepository,
        audit: Optional[AuditEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._audit = audit
        self._clock = clock

    async def ingest(self, event: OrchestratorEvent) -> AppendResult:
        """Append the fact carried by ``event`` unless it was already recorded."""
        data = event.data
        if not data.source_event_id:
            raise InvalidEvent("Event is missing source_event_id")

        workflow = await self._repository.get_workflow(data.workflow_id)
        if workflow is None:
            if not data.workflow_kind:
                raise UnknownWorkflow(data.workflow_id)
            workflow, created = await self._repository.register_workflow(
                WorkflowInstance(
                    workflow_id=data.workflow_id,
                    workflow_kind=data.workflow_kind,
                    created_at=ensure_aware(event.occurred_at),
                )
            )
            if created:
                logger.info(
                    f"Registered workflow {workflow.workflow_id} ({workflow.workflow_kind}) from event"
                )
                self._audit_log(
                    "workflow.registered",
                    "workflow",
                    workflow.workflow_id,
                    workflow.workflow_id,
                    {"workflow_kind": workflow.workflow_kind, "implicit": True},
                )

        status = event.status
        ended_at = None
        if status.is_outcome:
            ended_at = ensure_aware(data.occurred_at or event.timestamp)
        started_at = ensure_aware(data.started_at or ended_at or event.occurred_at)

        record = StepExecutionRecord(
            workflow_id=data.workflow_id,
            step_type=data.step_type,
            status=status,
            started_at=started_at,
            ended_at=ended_at,
            output=data.result,
            error=data.error or (data.reason if status == StepStatus.INTERRUPT else None),
            source_event_id=data.source_event_id,
            event_type=event.event_type.value,
            executor_kind=ExecutorKind.AGENT,
            executor_id=data.agent_name,
            recorded_at=self._clock(),
        )
        return await self._append(record)

    async def append_synthetic(
        self,
        workflow_id: str,
        step_type: str,
        status: StepStatus,
        source_event_id: str,
        actor_id: str,
        *,
        output: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> AppendResult:
        """Record a fact produced by an operator action rather than the orchestrator.

        The fact is stamped no earlier than the step's latest recorded
        transition, which keeps a retry from reading as a stale start when
        orchestrator clocks run ahead.
        """
        stamp = self._clock()
        previous = [
            r.transition_at
            for r in await self._repository.list_executions(workflow_id)
            if r.step_type == step_type
        ]
        if previous:
            stamp = max(stamp, *previous)
        record = StepExecutionRecord(
            workflow_id=workflow_id,
            step_type=step_type,
            status=status,
            started_at=stamp,
            ended_at=stamp if status.is_outcome else None,
            output=output,
            error=error,
            source_event_id=source_event_id,
            event_type=f"manual_{status.value.lower()}",
            executor_kind=ExecutorKind.HUMAN,
            executor_id=actor_id,
            recorded_at=self._clock(),
        )
        return await self._append(record)

    async def records(self, workflow_id: str) -> List[StepExecutionRecord]:
        return await self._repository.list_executions(workflow_id)

    async def _append(self, record: StepExecutionRecord) -> AppendResult:
        stored, created = await self._repository.append_execution(record)
        if not created:
            logger.debug(
                f"Duplicate event {record.source_event_id} for "
                f"{record.workflow_id}/{record.step_type} ignored"
            )
            return AppendResult(record=stored, duplicate=True)

        logger.info(
            f"Recorded {stored.status.value} for {stored.workflow_id}/{stored.step_type} "
            f"attempt {stored.attempt_number}"
        )
        self._audit_log(
            "ledger.append",
            "step_execution",
            stored.id,
            stored.workflow_id,
            {
                "step_type": stored.step_type,
                "status": stored.status.value,
                "attempt_number": stored.attempt_number,
                "source_event_id": stored.source_event_id,
            },
            actor_kind=_ACTOR_FOR_EXECUTOR[stored.executor_kind],
            actor_id=stored.executor_id or "orchestrator",
        )
        return AppendResult(record=stored)

    def _audit_log(
        self,
        action: str,
        resource_kind: str,
        resource_id: str,
        workflow_id: str,
        payload: dict[str, Any],
        actor_kind: ActorKind = ActorKind.SYSTEM,
        actor_id: str = "stepwatch",
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(
            action,
            resource_kind,
            resource_id,
            workflow_id=workflow_id,
            payload=payload,
            actor_kind=actor_kind,
            actor_id=actor_id,
        )
