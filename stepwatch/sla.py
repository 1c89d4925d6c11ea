"""SLA tracking: business-hours deadlines, risk levels and crossing alerts."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .audit import AuditEmitter
from .calendar import BusinessCalendar
from .config import SlaConfig, SlaThresholds
from .enums import NotificationKind, Priority, RiskLevel, StepStatus
from .models import MaterializedStepState, SlaEvaluation
from .notifications import NotificationFanout
from .persistence import (
    EngineRepository,
    SlaTracking,
    StepExecutionRecord,
    WorkflowInstance,
)
from .registry import BlueprintRegistry, WorkflowBlueprint
from .utils.timeutil import ensure_aware, utcnow

logger = logging.getLogger(__name__)

ALERT_PRIORITY = {
    RiskLevel.YELLOW: Priority.NORMAL,
    RiskLevel.ORANGE: Priority.HIGH,
    RiskLevel.RED: Priority.URGENT,
}

# bound on compare-and-set retries when evaluators race on one row
_CAS_ATTEMPTS = 4


def classify(
    elapsed_minutes: int, total_minutes: int, thresholds: SlaThresholds
) -> RiskLevel:
    """Risk level for ``elapsed_minutes`` of a ``total_minutes`` budget."""
    if total_minutes <= 0:
        return RiskLevel.RED
    scaled = elapsed_minutes * 100
    if scaled >= thresholds.red * total_minutes:
        return RiskLevel.RED
    if scaled >= thresholds.orange * total_minutes:
        return RiskLevel.ORANGE
    if scaled >= thresholds.yellow * total_minutes:
        return RiskLevel.YELLOW
    return RiskLevel.GREEN


class SlaTracker:
    """Maintain one :class:`SlaTracking` row per open blueprint step."""

    def __init__(
        self,
        repository: EngineRepository,
        registry: BlueprintRegistry,
        calendar: BusinessCalendar,
        config: SlaConfig,
        notifications: NotificationFanout,
        audit: Optional[AuditEmitter] = None,
        operators: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._calendar = calendar
        self._config = config
        self._notifications = notifications
        self._audit = audit
        self._operators = list(operators)
        self._clock = clock

    def thresholds_for(self, blueprint: Optional[WorkflowBlueprint]) -> SlaThresholds:
        if blueprint is not None and blueprint.thresholds is not None:
            return blueprint.thresholds
        return self._config.thresholds

    # ------------------------------------------------------------------
    async def sync(
        self,
        workflow: WorkflowInstance,
        states: List[MaterializedStepState],
        records: List[StepExecutionRecord],
        now: Optional[datetime] = None,
    ) -> List[SlaTracking]:
        """Open, reopen or retire tracking rows to match ``states``.

        Returns the rows that are active afterwards.
        """

        now = now or self._clock()
        blueprint = self._registry.get(workflow.workflow_kind)
        if blueprint is None:
            return []

        by_step = {s.step_type: s for s in states}
        first_started: Dict[str, datetime] = {}
        for record in records:
            current = first_started.get(record.step_type)
            if current is None or record.started_at < current:
                first_started[record.step_type] = record.started_at

        active: List[SlaTracking] = []
        for entry in blueprint.steps:
            state = by_step.get(entry.step_type)
            if state is None:
                continue
            existing = await self._repository.get_sla_tracking(
                workflow.workflow_id, entry.step_type
            )

            if state.current_status.is_closed:
                if existing is not None and existing.is_active:
                    await self._retire(existing, state, now)
                continue

            start = self._clock_start(
                blueprint, entry.step_type, state, by_step, first_started, workflow
            )
            if start is None:
                if existing is not None and existing.is_active:
                    active.append(existing)
                continue

            sla_hours = self._registry.sla_hours(entry)
            if existing is None:
                tracking = await self._open(workflow, entry.step_type, start, sla_hours)
            elif not existing.is_active:
                tracking = await self._reopen(existing, state, sla_hours)
            else:
                tracking = existing
            if tracking is not None and tracking.is_active:
                active.append(tracking)
        return active

    def _clock_start(
        self,
        blueprint: WorkflowBlueprint,
        step_type: str,
        state: MaterializedStepState,
        by_step: Dict[str, MaterializedStepState],
        first_started: Dict[str, datetime],
        workflow: WorkflowInstance,
    ) -> Optional[datetime]:
        candidates: List[datetime] = []
        if step_type in first_started:
            candidates.append(first_started[step_type])
        first = blueprint.first_step
        if first is not None and first.step_type == step_type:
            candidates.append(workflow.created_at)
        previous = blueprint.predecessor(step_type)
        if previous is not None:
            prev_state = by_step.get(previous.step_type)
            if (
                prev_state is not None
                and prev_state.current_status == StepStatus.COMPLETED
                and prev_state.last_transition_at is not None
            ):
                candidates.append(prev_state.last_transition_at)
        if not candidates:
            return None
        return min(ensure_aware(c) for c in candidates)

    async def _open(
        self,
        workflow: WorkflowInstance,
        step_type: str,
        start: datetime,
        sla_hours: float,
    ) -> SlaTracking:
        due_at = self._calendar.due_at(start, sla_hours)
        tracking, created = await self._repository.insert_sla_tracking(
            SlaTracking(
                workflow_id=workflow.workflow_id,
                step_type=step_type,
                started_at=start,
                due_at=due_at,
                sla_hours=sla_hours,
            )
        )
        if created:
            logger.info(
                f"SLA clock opened for {workflow.workflow_id}/{step_type}, due {due_at.isoformat()}"
            )
            self._audit_log(
                "sla.opened",
                tracking,
                {"started_at": start.isoformat(), "due_at": due_at.isoformat(), "sla_hours": sla_hours},
            )
        return tracking

    async def _reopen(
        self, existing: SlaTracking, state: MaterializedStepState, sla_hours: float
    ) -> Optional[SlaTracking]:
        start = ensure_aware(state.last_transition_at or self._clock())
        due_at = self._calendar.due_at(start, sla_hours)
        reopened = await self._repository.reopen_sla_tracking(
            existing.id, existing.cycle, start, due_at, sla_hours
        )
        tracking = await self._repository.get_sla_tracking(
            existing.workflow_id, existing.step_type
        )
        if reopened and tracking is not None:
            logger.info(
                f"SLA clock reopened for {tracking.workflow_id}/{tracking.step_type} "
                f"(cycle {tracking.cycle}), due {due_at.isoformat()}"
            )
            self._audit_log(
                "sla.reopened",
                tracking,
                {"cycle": tracking.cycle, "due_at": due_at.isoformat()},
            )
        return tracking

    async def _retire(
        self, tracking: SlaTracking, state: MaterializedStepState, now: datetime
    ) -> None:
        if await self._repository.retire_sla_tracking(tracking.id, now):
            logger.info(
                f"SLA clock retired for {tracking.workflow_id}/{tracking.step_type} "
                f"({state.current_status.value})"
            )
            self._audit_log(
                "sla.retired",
                tracking,
                {"status": state.current_status.value, "risk_level": tracking.risk_level.value},
            )

    # ------------------------------------------------------------------
    async def evaluate(
        self,
        tracking: SlaTracking,
        now: Optional[datetime] = None,
        thresholds: Optional[SlaThresholds] = None,
    ) -> SlaEvaluation:
        """Recompute the risk level of ``tracking`` at ``now``.

        The stored level only moves up, via compare-and-set against the level
        read before the write. An alert is raised only by the evaluator whose
        write succeeded.
        """

        now = ensure_aware(now or self._clock())
        thresholds = thresholds or self._config.thresholds
        total_minutes = round(tracking.sla_hours * 60)
        elapsed = self._calendar.elapsed_business_minutes(tracking.started_at, now)
        level = classify(elapsed, total_minutes, thresholds)
        breached = 0
        if now > tracking.due_at:
            breached = self._calendar.elapsed_business_minutes(tracking.due_at, now)

        previous = tracking.risk_level
        current = tracking
        for _ in range(_CAS_ATTEMPTS):
            if level.rank <= current.risk_level.rank:
                await self._repository.touch_sla_tracking(current.id, breached, now)
                break
            if await self._repository.compare_and_set_risk(
                current.id, current.risk_level, level, breached, now
            ):
                updated = current.model_copy(
                    update={
                        "risk_level": level,
                        "breached_minutes": breached,
                        "last_evaluated_at": now,
                    }
                )
                await self._raise_alert(updated, current.risk_level)
                return SlaEvaluation(
                    tracking=updated, previous_level=current.risk_level, alert_raised=True
                )
            reread = await self._repository.get_sla_tracking(
                current.workflow_id, current.step_type
            )
            if reread is None or not reread.is_active or reread.cycle != current.cycle:
                break
            current = reread

        return SlaEvaluation(
            tracking=current.model_copy(
                update={
                    "breached_minutes": max(current.breached_minutes, breached),
                    "last_evaluated_at": now,
                }
            ),
            previous_level=previous,
        )

    async def _raise_alert(self, tracking: SlaTracking, previous: RiskLevel) -> None:
        logger.info(
            f"SLA risk for {tracking.workflow_id}/{tracking.step_type} rose "
            f"{previous.value} -> {tracking.risk_level.value}"
        )
        self._audit_log(
            "sla.risk_changed",
            tracking,
            {
                "from": previous.value,
                "to": tracking.risk_level.value,
                "breached_minutes": tracking.breached_minutes,
            },
        )
        recipients = list(self._operators)
        case = await self._repository.get_open_interrupt_case(
            tracking.workflow_id, tracking.step_type
        )
        if case is not None:
            recipients.extend(r for r in (case.assigned_to, case.escalated_to) if r)
        if not recipients:
            logger.warning(
                f"No recipients for SLA alert on {tracking.workflow_id}/{tracking.step_type}"
            )
            return
        level = tracking.risk_level
        self._notifications.dispatch(
            NotificationKind.SLA_WARNING,
            f"sla:{tracking.id}:{tracking.cycle}:{level.value}",
            recipients,
            {
                "tracking_id": tracking.id,
                "step_type": tracking.step_type,
                "risk_level": level.value,
                "sla_status": level.sla_status,
                "due_at": tracking.due_at.isoformat(),
                "breached_minutes": tracking.breached_minutes,
            },
            priority=ALERT_PRIORITY.get(level, Priority.NORMAL),
            title=f"SLA {level.sla_status.replace('_', ' ').lower()}: {tracking.step_type}",
            message=(
                f"Step {tracking.step_type} of workflow {tracking.workflow_id} is "
                f"{level.value}; due {tracking.due_at.isoformat()}"
            ),
            workflow_id=tracking.workflow_id,
        )

    # ------------------------------------------------------------------
    async def evaluate_workflow(
        self,
        workflow: WorkflowInstance,
        rows: Iterable[SlaTracking],
        now: Optional[datetime] = None,
    ) -> List[SlaEvaluation]:
        thresholds = self.thresholds_for(self._registry.get(workflow.workflow_kind))
        return [await self.evaluate(row, now, thresholds) for row in rows]

    async def sweep(self, now: Optional[datetime] = None) -> List[SlaEvaluation]:
        """Evaluate every active tracking row; the periodic evaluation path."""
        now = now or self._clock()
        thresholds_by_workflow: Dict[str, SlaThresholds] = {}
        results: List[SlaEvaluation] = []
        for row in await self._repository.list_sla_tracking(active_only=True):
            thresholds = thresholds_by_workflow.get(row.workflow_id)
            if thresholds is None:
                workflow = await self._repository.get_workflow(row.workflow_id)
                blueprint = self._registry.get(workflow.workflow_kind) if workflow else None
                thresholds = self.thresholds_for(blueprint)
                thresholds_by_workflow[row.workflow_id] = thresholds
            try:
                results.append(await self.evaluate(row, now, thresholds))
            except Exception as e:
                logger.error(
                    f"SLA evaluation failed for {row.workflow_id}/{row.step_type}: {e}"
                )
        alerts = sum(1 for r in results if r.alert_raised)
        logger.info(f"SLA sweep evaluated {len(results)} row(s), raised {alerts} alert(s)")
        return results

    def _audit_log(self, action: str, tracking: SlaTracking, payload: dict) -> None:
        if self._audit is None:
            return
        self._audit.log(
            action,
            "sla_tracking",
            tracking.id,
            workflow_id=tracking.workflow_id,
            payload={"step_type": tracking.step_type, **payload},
        )
