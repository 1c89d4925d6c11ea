"""Interrupt and escalation state machine for human-required steps."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from .audit import AuditEmitter
from .enums import (
    ActorKind,
    ExecutorKind,
    InterruptResolution,
    NotificationKind,
    Priority,
    StepStatus,
)
from .errors import IllegalTransition
from .ledger import ExecutionLedger
from .models import AppendResult, MaterializedStepState
from .notifications import NotificationFanout
from .persistence import EngineRepository, InterruptCase, StepExecutionRecord
from .reconciler import Reconciler
from .utils.timeutil import utcnow

logger = logging.getLogger(__name__)


class InterruptController:
    """Open, act on and close :class:`InterruptCase` rows.

    Operator actions are only valid while the step is in ``INTERRUPT``; any
    other state raises :class:`IllegalTransition` before anything is written.
    Synthetic ledger facts use source ids derived from the case id, so a
    repeated action cannot record a second attempt.
    """

    def __init__(
        self,
        repository: EngineRepository,
        ledger: ExecutionLedger,
        reconciler: Reconciler,
        notifications: NotificationFanout,
        audit: Optional[AuditEmitter] = None,
        operators: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._reconciler = reconciler
        self._notifications = notifications
        self._audit = audit
        self._operators = list(operators)
        self._clock = clock

    # ------------------------------------------------------------------
    async def on_record(
        self,
        record: StepExecutionRecord,
        state: MaterializedStepState,
        reason: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> Optional[InterruptCase]:
        """React to a freshly ingested orchestrator fact."""

        if record.status == StepStatus.INTERRUPT:
            if state.current_status != StepStatus.INTERRUPT:
                return None
            return await self._open_case(state, reason or record.error or "", assigned_to)

        if record.status.is_closed and state.current_status.is_closed:
            case = await self._repository.get_open_interrupt_case(
                record.workflow_id, record.step_type
            )
            if case is not None and await self._repository.close_interrupt_case(
                case.id, InterruptResolution.SUPERSEDED, self._clock()
            ):
                logger.info(
                    f"Interrupt case {case.id} superseded by orchestrator "
                    f"{record.status.value} for {record.workflow_id}/{record.step_type}"
                )
                self._audit_log("interrupt.superseded", case, {"status": record.status.value})

        if (
            record.status == StepStatus.FAILED
            and record.executor_kind == ExecutorKind.AGENT
            and state.current_status == StepStatus.FAILED
        ):
            self._notifications.dispatch(
                NotificationKind.AGENT_FAILURE,
                f"failure:{record.id}",
                self._operators,
                {"step_type": record.step_type, "error": record.error, "agent": record.executor_id},
                priority=Priority.HIGH,
                title=f"Step failed: {record.step_type}",
                message=record.error or f"{record.step_type} failed",
                workflow_id=record.workflow_id,
            )
        return None

    async def _open_case(
        self,
        state: MaterializedStepState,
        reason: str,
        assigned_to: Optional[str] = None,
    ) -> InterruptCase:
        case, created = await self._repository.open_interrupt_case(
            InterruptCase(
                workflow_id=state.workflow_id,
                step_type=state.step_type,
                reason=reason,
                attempt_number=state.current_attempt,
                assigned_to=assigned_to,
                opened_at=self._clock(),
            )
        )
        if created:
            logger.info(
                f"Interrupt case {case.id} opened for {case.workflow_id}/{case.step_type}: {reason}"
            )
            self._audit_log("interrupt.opened", case, {"reason": reason, "assigned_to": assigned_to})
            self._notifications.dispatch(
                NotificationKind.TASK_INTERRUPT,
                f"interrupt:{case.id}",
                [*self._operators, assigned_to],
                {"case_id": case.id, "step_type": case.step_type, "reason": reason},
                priority=Priority.HIGH,
                title=f"Action required: {case.step_type}",
                message=reason or f"{case.step_type} needs human attention",
                workflow_id=case.workflow_id,
            )
        return case

    async def _require_interrupt(
        self, workflow_id: str, step_type: str, action: str
    ) -> InterruptCase:
        state = await self._reconciler.step_state(workflow_id, step_type)
        if state.current_status != StepStatus.INTERRUPT:
            raise IllegalTransition(action, step_type, state.current_status.value)
        case = await self._repository.get_open_interrupt_case(workflow_id, step_type)
        if case is None:
            # adopt an interrupt whose case was never opened
            case = await self._open_case(state, "")
        return case

    # ------------------------------------------------------------------
    async def retry(self, workflow_id: str, step_type: str, actor_id: str) -> AppendResult:
        """Start a new attempt; the step returns to ``IN_PROGRESS``."""
        case = await self._require_interrupt(workflow_id, step_type, "retry")
        result = await self._ledger.append_synthetic(
            workflow_id, step_type, StepStatus.IN_PROGRESS, f"retry:{case.id}", actor_id
        )
        await self._close(case, InterruptResolution.RETRIED, actor_id, "interrupt.retried")
        return result

    async def resolve(
        self,
        workflow_id: str,
        step_type: str,
        actor_id: str,
        output: Optional[dict[str, Any]] = None,
    ) -> AppendResult:
        """Complete the step manually on behalf of ``actor_id``."""
        case = await self._require_interrupt(workflow_id, step_type, "resolve")
        result = await self._ledger.append_synthetic(
            workflow_id,
            step_type,
            StepStatus.COMPLETED,
            f"resolve:{case.id}",
            actor_id,
            output=output,
        )
        await self._close(case, InterruptResolution.MANUAL, actor_id, "interrupt.resolved")
        return result

    async def fail(
        self,
        workflow_id: str,
        step_type: str,
        actor_id: str,
        error: Optional[str] = None,
    ) -> AppendResult:
        """Mark the step failed manually."""
        case = await self._require_interrupt(workflow_id, step_type, "fail")
        result = await self._ledger.append_synthetic(
            workflow_id,
            step_type,
            StepStatus.FAILED,
            f"fail:{case.id}",
            actor_id,
            error=error,
        )
        await self._close(case, InterruptResolution.FAILED, actor_id, "interrupt.failed")
        return result

    async def escalate(
        self, workflow_id: str, step_type: str, escalated_to: str, actor_id: str
    ) -> InterruptCase:
        """Hand the case to ``escalated_to``; the step stays in ``INTERRUPT``."""
        case = await self._require_interrupt(workflow_id, step_type, "escalate")
        now = self._clock()
        await self._repository.escalate_interrupt_case(case.id, escalated_to, now)
        case = case.model_copy(update={"escalated_to": escalated_to, "escalated_at": now})
        logger.info(f"Interrupt case {case.id} escalated to {escalated_to} by {actor_id}")
        self._audit_log(
            "interrupt.escalated", case, {"escalated_to": escalated_to}, actor_id=actor_id
        )
        self._notifications.dispatch(
            NotificationKind.TASK_INTERRUPT,
            f"escalation:{case.id}:{escalated_to}",
            [escalated_to],
            {"case_id": case.id, "step_type": step_type, "escalated_by": actor_id},
            priority=Priority.URGENT,
            title=f"Escalated: {step_type}",
            message=f"{actor_id} escalated {step_type} to you",
            workflow_id=workflow_id,
        )
        return case

    async def assign(
        self, workflow_id: str, step_type: str, assignee: str, actor_id: str
    ) -> InterruptCase:
        case = await self._require_interrupt(workflow_id, step_type, "assign")
        await self._repository.assign_interrupt_case(case.id, assignee)
        case = case.model_copy(update={"assigned_to": assignee})
        logger.info(f"Interrupt case {case.id} assigned to {assignee} by {actor_id}")
        self._audit_log("interrupt.assigned", case, {"assigned_to": assignee}, actor_id=actor_id)
        self._notifications.dispatch(
            NotificationKind.TASK_INTERRUPT,
            f"assignment:{case.id}:{assignee}",
            [assignee],
            {"case_id": case.id, "step_type": step_type, "assigned_by": actor_id},
            title=f"Assigned: {step_type}",
            message=f"{actor_id} assigned {step_type} to you",
            workflow_id=workflow_id,
        )
        return case

    async def _close(
        self,
        case: InterruptCase,
        resolution: InterruptResolution,
        actor_id: str,
        action: str,
    ) -> None:
        state = await self._reconciler.step_state(case.workflow_id, case.step_type)
        if state.current_status == StepStatus.INTERRUPT:
            logger.error(
                f"Interrupt case {case.id} left open: {case.workflow_id}/{case.step_type} "
                f"is still INTERRUPT after {action}"
            )
            return
        if await self._repository.close_interrupt_case(
            case.id, resolution, self._clock(), actor_id
        ):
            logger.info(f"Interrupt case {case.id} closed as {resolution.value} by {actor_id}")
            self._audit_log(action, case, {"resolution": resolution.value}, actor_id=actor_id)

    def _audit_log(
        self,
        action: str,
        case: InterruptCase,
        payload: dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> None:
        if self._audit is None:
            return
        self._audit.log(
            action,
            "interrupt_case",
            case.id,
            workflow_id=case.workflow_id,
            payload={"step_type": case.step_type, **payload},
            actor_kind=ActorKind.HUMAN if actor_id else ActorKind.SYSTEM,
            actor_id=actor_id or "stepwatch",
        )
