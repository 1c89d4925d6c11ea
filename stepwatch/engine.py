"""Workflow engine: ingest pipeline, operator actions and query surface."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from .audit import AuditEmitter
from .calendar import BusinessCalendar
from .config import StepwatchConfig, load_config
from .contracts import OrchestratorEvent
from .enums import StepStatus
from .interrupts import InterruptController
from .ledger import ExecutionLedger
from .models import AppendResult, MaterializedStepState, SlaEvaluation
from .notifications import NotificationFanout
from .persistence import (
    EngineRepository,
    InterruptCase,
    Notification,
    SlaTracking,
    WorkflowInstance,
    get_repository,
)
from .reconciler import Reconciler
from .registry import BlueprintRegistry, load_blueprints
from .sla import SlaTracker
from .utils.timeutil import ensure_aware, utcnow

logger = logging.getLogger(__name__)

EventPayload = Union[OrchestratorEvent, Dict[str, Any], str, bytes]


class WorkflowEngine:
    """Turn orchestrator events into step state, SLA clocks and interrupt cases.

    Ingest order per event: ledger append, reconcile, SLA sync and
    evaluation, interrupt handling. Notifications and audit writes are
    scheduled in the background and never fail the ingest.
    """

    def __init__(
        self,
        repository: EngineRepository,
        registry: BlueprintRegistry,
        calendar: BusinessCalendar,
        config: Optional[StepwatchConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or StepwatchConfig()
        self.repository = repository
        self.registry = registry
        self.calendar = calendar
        self._clock = clock

        operators = self.config.notifications.operators
        self.audit = AuditEmitter.from_config(repository, self.config.audit, clock)
        self.notifications = NotificationFanout(repository, self.audit, clock)
        self.ledger = ExecutionLedger(repository, self.audit, clock)
        self.reconciler = Reconciler(repository, registry)
        self.sla = SlaTracker(
            repository,
            registry,
            calendar,
            self.config.sla,
            self.notifications,
            self.audit,
            operators,
            clock,
        )
        self.interrupts = InterruptController(
            repository,
            self.ledger,
            self.reconciler,
            self.notifications,
            self.audit,
            operators,
            clock,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[StepwatchConfig] = None,
        repository: Optional[EngineRepository] = None,
    ) -> "WorkflowEngine":
        """Build an engine from configuration, loading blueprints and storage."""
        config = config or load_config()
        registry = load_blueprints(
            config.blueprints_path, default_sla_hours=config.sla.default_sla_hours
        )
        calendar = BusinessCalendar.from_config(config.calendar)
        repository = repository or get_repository(config=config)
        return cls(repository, registry, calendar, config)

    # ------------------------------------------------------------------
    # Ingest
    async def register_workflow(
        self,
        workflow_id: str,
        workflow_kind: str,
        created_at: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Register a workflow instance; registering twice returns the first."""
        if workflow_kind not in self.registry:
            logger.warning(
                f"Workflow {workflow_id} registered with unknown kind {workflow_kind}"
            )
        workflow, created = await self.repository.register_workflow(
            WorkflowInstance(
                workflow_id=workflow_id,
                workflow_kind=workflow_kind,
                created_at=ensure_aware(created_at or self._clock()),
                metadata=metadata or {},
            )
        )
        if created:
            logger.info(f"Registered workflow {workflow_id} ({workflow_kind})")
            self.audit.log(
                "workflow.registered",
                "workflow",
                workflow_id,
                workflow_id=workflow_id,
                payload={"workflow_kind": workflow_kind},
            )
            await self._refresh(workflow_id)
        return workflow

    async def handle_event(self, payload: EventPayload) -> AppendResult:
        """Ingest one orchestrator event.

        Raises:
            InvalidEvent: The payload is malformed.
            UnknownWorkflow: The workflow is not registered and the event
                carries no ``workflow_kind``.
        """

        event = (
            payload
            if isinstance(payload, OrchestratorEvent)
            else OrchestratorEvent.parse(payload)
        )
        result = await self.ledger.ingest(event)
        record = result.record

        # Derived state is recomputed for duplicates too; every step below is
        # idempotent, and a redelivery repairs work lost after an earlier append.
        states = await self._refresh(record.workflow_id)
        state = next(s for s in states if s.step_type == record.step_type)
        if not state.blueprinted and not result.duplicate:
            logger.warning(
                f"Unblueprinted step {record.step_type} recorded for workflow {record.workflow_id}"
            )
        await self.interrupts.on_record(
            record, state, reason=event.data.reason, assigned_to=event.data.assigned_to
        )
        return result

    async def _refresh(
        self, workflow_id: str, now: Optional[datetime] = None
    ) -> List[MaterializedStepState]:
        """Reconcile a workflow and bring its SLA rows up to date."""
        now = now or self._clock()
        workflow = await self.repository.get_workflow(workflow_id)
        states, records = await self.reconciler.materialize_with_records(workflow_id)
        active = await self.sla.sync(workflow, states, records, now)
        await self.sla.evaluate_workflow(workflow, active, now)
        return states

    # ------------------------------------------------------------------
    # Operator actions
    async def retry(self, workflow_id: str, step_type: str, actor_id: str) -> MaterializedStepState:
        await self.interrupts.retry(workflow_id, step_type, actor_id)
        return await self._state_after_action(workflow_id, step_type)

    async def escalate(
        self, workflow_id: str, step_type: str, escalated_to: str, actor_id: str
    ) -> InterruptCase:
        return await self.interrupts.escalate(workflow_id, step_type, escalated_to, actor_id)

    async def resolve(
        self,
        workflow_id: str,
        step_type: str,
        actor_id: str,
        output: Optional[dict[str, Any]] = None,
    ) -> MaterializedStepState:
        await self.interrupts.resolve(workflow_id, step_type, actor_id, output)
        return await self._state_after_action(workflow_id, step_type)

    async def fail(
        self,
        workflow_id: str,
        step_type: str,
        actor_id: str,
        error: Optional[str] = None,
    ) -> MaterializedStepState:
        await self.interrupts.fail(workflow_id, step_type, actor_id, error)
        return await self._state_after_action(workflow_id, step_type)

    async def assign(
        self, workflow_id: str, step_type: str, assignee: str, actor_id: str
    ) -> InterruptCase:
        return await self.interrupts.assign(workflow_id, step_type, assignee, actor_id)

    async def _state_after_action(
        self, workflow_id: str, step_type: str
    ) -> MaterializedStepState:
        states = await self._refresh(workflow_id)
        return next(s for s in states if s.step_type == step_type)

    async def notify_mentions(
        self,
        note_id: str,
        author_id: str,
        mentioned_user_ids: List[str],
        workflow_id: Optional[str] = None,
        excerpt: str = "",
    ) -> List[Notification]:
        return await self.notifications.notify_mentions(
            note_id, author_id, mentioned_user_ids, workflow_id=workflow_id, excerpt=excerpt
        )

    # ------------------------------------------------------------------
    # SLA sweeps
    async def sweep(self, now: Optional[datetime] = None) -> List[SlaEvaluation]:
        return await self.sla.sweep(now)

    async def run_sweeper(
        self,
        interval: Optional[float] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """Sweep active SLA rows every ``interval`` seconds until ``stop`` is set."""
        interval = interval or self.config.sla.sweep_interval_seconds
        stop = stop or asyncio.Event()
        logger.info(f"SLA sweeper started (interval {interval}s)")
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"SLA sweep failed: {e}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("SLA sweeper stopped")

    # ------------------------------------------------------------------
    # Query surface
    async def step_states(self, workflow_id: str) -> List[MaterializedStepState]:
        return await self.reconciler.materialize(workflow_id)

    async def open_sla(self, workflow_id: str) -> List[SlaTracking]:
        return await self.repository.list_sla_tracking(workflow_id, active_only=True)

    async def open_interrupts(self, workflow_id: str) -> List[InterruptCase]:
        return await self.repository.list_interrupt_cases(workflow_id, open_only=True)

    async def notifications_for(
        self, recipient_id: str, unread_only: bool = False
    ) -> List[Notification]:
        return await self.notifications.list_for(recipient_id, unread_only)

    async def workflow_summary(self, workflow_id: str) -> dict[str, Any]:
        """Dashboard-oriented projection of one workflow."""
        workflow = await self.repository.get_workflow(workflow_id)
        states = await self.step_states(workflow_id)
        blueprinted = [s for s in states if s.blueprinted]
        completed = sum(1 for s in blueprinted if s.current_status == StepStatus.COMPLETED)
        return {
            "workflow": workflow,
            "steps": states,
            "open_sla": await self.open_sla(workflow_id),
            "open_interrupts": await self.open_interrupts(workflow_id),
            "unblueprinted_steps": [s.step_type for s in states if not s.blueprinted],
            "completed_steps": completed,
            "total_steps": len(blueprinted),
            "progress": completed / len(blueprinted) if blueprinted else 0.0,
        }

    async def drain(self) -> None:
        """Wait for background notification and audit writes."""
        await self.notifications.drain()
        await self.audit.drain()
