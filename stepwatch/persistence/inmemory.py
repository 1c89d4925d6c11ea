"""In-memory implementation of the engine repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, List, Tuple

from ..enums import InterruptResolution, RiskLevel, TrackingStatus
from .models import (
    AuditEvent,
    InterruptCase,
    Notification,
    SlaTracking,
    StepExecutionRecord,
    WorkflowInstance,
)
from .repository import EngineRepository


class InMemoryEngineRepository(EngineRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. A single lock makes each
    insert-or-ignore atomic, which stands in for the unique constraints of
    the SQL backends.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._workflows: Dict[str, WorkflowInstance] = {}
        self._ledger: List[StepExecutionRecord] = []
        self._ledger_keys: Dict[Tuple[str, str, str], StepExecutionRecord] = {}
        self._tracking: Dict[Tuple[str, str], SlaTracking] = {}
        self._cases: List[InterruptCase] = []
        self._notifications: Dict[Tuple[str, str], Notification] = {}
        self._audit: List[AuditEvent] = []

    # ------------------------------------------------------------------
    async def register_workflow(
        self, workflow: WorkflowInstance
    ) -> tuple[WorkflowInstance, bool]:
        async with self._lock:
            existing = self._workflows.get(workflow.workflow_id)
            if existing is not None:
                return existing.model_copy(), False
            self._workflows[workflow.workflow_id] = workflow.model_copy()
            return workflow, True

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy() if wf else None

    async def list_workflows(self) -> list[WorkflowInstance]:
        return [wf.model_copy() for wf in self._workflows.values()]

    # ------------------------------------------------------------------
    async def append_execution(
        self, record: StepExecutionRecord
    ) -> tuple[StepExecutionRecord, bool]:
        key = (record.workflow_id, record.step_type, record.source_event_id)
        async with self._lock:
            existing = self._ledger_keys.get(key)
            if existing is not None:
                return existing.model_copy(), False
            attempts = [
                r.attempt_number
                for r in self._ledger
                if r.workflow_id == record.workflow_id
                and r.step_type == record.step_type
            ]
            stored = record.model_copy(
                update={"attempt_number": max(attempts, default=0) + 1}
            )
            self._ledger.append(stored)
            self._ledger_keys[key] = stored
            return stored.model_copy(), True

    async def list_executions(self, workflow_id: str) -> list[StepExecutionRecord]:
        rows = [r for r in self._ledger if r.workflow_id == workflow_id]
        rows.sort(key=lambda r: (r.step_type, r.attempt_number))
        return [r.model_copy() for r in rows]

    # ------------------------------------------------------------------
    async def insert_sla_tracking(
        self, tracking: SlaTracking
    ) -> tuple[SlaTracking, bool]:
        key = (tracking.workflow_id, tracking.step_type)
        async with self._lock:
            existing = self._tracking.get(key)
            if existing is not None:
                return existing.model_copy(), False
            self._tracking[key] = tracking.model_copy()
            return tracking, True

    async def get_sla_tracking(
        self, workflow_id: str, step_type: str
    ) -> SlaTracking | None:
        row = self._tracking.get((workflow_id, step_type))
        return row.model_copy() if row else None

    async def list_sla_tracking(
        self, workflow_id: str | None = None, active_only: bool = True
    ) -> list[SlaTracking]:
        return [
            row.model_copy()
            for row in self._tracking.values()
            if (workflow_id is None or row.workflow_id == workflow_id)
            and (not active_only or row.is_active)
        ]

    def _tracking_by_id(self, tracking_id: str) -> SlaTracking | None:
        for row in self._tracking.values():
            if row.id == tracking_id:
                return row
        return None

    async def compare_and_set_risk(
        self,
        tracking_id: str,
        expected: RiskLevel,
        new: RiskLevel,
        breached_minutes: int,
        evaluated_at: datetime,
    ) -> bool:
        async with self._lock:
            row = self._tracking_by_id(tracking_id)
            if row is None or not row.is_active or row.risk_level != expected:
                return False
            row.risk_level = new
            row.breached_minutes = breached_minutes
            row.last_evaluated_at = evaluated_at
            return True

    async def touch_sla_tracking(
        self, tracking_id: str, breached_minutes: int, evaluated_at: datetime
    ) -> None:
        async with self._lock:
            row = self._tracking_by_id(tracking_id)
            if row is None:
                return
            row.breached_minutes = max(row.breached_minutes, breached_minutes)
            row.last_evaluated_at = evaluated_at

    async def retire_sla_tracking(self, tracking_id: str, retired_at: datetime) -> bool:
        async with self._lock:
            row = self._tracking_by_id(tracking_id)
            if row is None or not row.is_active:
                return False
            row.status = TrackingStatus.RETIRED
            row.retired_at = retired_at
            return True

    async def reopen_sla_tracking(
        self,
        tracking_id: str,
        expected_cycle: int,
        started_at: datetime,
        due_at: datetime,
        sla_hours: float,
    ) -> bool:
        async with self._lock:
            row = self._tracking_by_id(tracking_id)
            if row is None or row.is_active or row.cycle != expected_cycle:
                return False
            row.status = TrackingStatus.ACTIVE
            row.cycle += 1
            row.started_at = started_at
            row.due_at = due_at
            row.sla_hours = sla_hours
            row.risk_level = RiskLevel.GREEN
            row.breached_minutes = 0
            row.retired_at = None
            row.last_evaluated_at = None
            return True

    # ------------------------------------------------------------------
    async def open_interrupt_case(
        self, case: InterruptCase
    ) -> tuple[InterruptCase, bool]:
        async with self._lock:
            for existing in self._cases:
                if (
                    existing.workflow_id == case.workflow_id
                    and existing.step_type == case.step_type
                    and existing.is_open
                ):
                    return existing.model_copy(), False
            self._cases.append(case.model_copy())
            return case, True

    async def get_open_interrupt_case(
        self, workflow_id: str, step_type: str
    ) -> InterruptCase | None:
        for case in self._cases:
            if (
                case.workflow_id == workflow_id
                and case.step_type == step_type
                and case.is_open
            ):
                return case.model_copy()
        return None

    async def list_interrupt_cases(
        self, workflow_id: str | None = None, open_only: bool = True
    ) -> list[InterruptCase]:
        return [
            case.model_copy()
            for case in self._cases
            if (workflow_id is None or case.workflow_id == workflow_id)
            and (not open_only or case.is_open)
        ]

    def _open_case(self, case_id: str) -> InterruptCase | None:
        for case in self._cases:
            if case.id == case_id and case.is_open:
                return case
        return None

    async def assign_interrupt_case(self, case_id: str, assignee: str) -> bool:
        async with self._lock:
            case = self._open_case(case_id)
            if case is None:
                return False
            case.assigned_to = assignee
            return True

    async def escalate_interrupt_case(
        self, case_id: str, escalated_to: str, escalated_at: datetime
    ) -> bool:
        async with self._lock:
            case = self._open_case(case_id)
            if case is None:
                return False
            case.escalated_to = escalated_to
            case.escalated_at = escalated_at
            return True

    async def close_interrupt_case(
        self,
        case_id: str,
        resolution: InterruptResolution,
        resolved_at: datetime,
        resolved_by: str | None = None,
    ) -> bool:
        async with self._lock:
            case = self._open_case(case_id)
            if case is None:
                return False
            case.resolution = resolution
            case.resolved_at = resolved_at
            case.resolved_by = resolved_by
            return True

    # ------------------------------------------------------------------
    async def insert_notification(
        self, notification: Notification
    ) -> tuple[Notification, bool]:
        key = (notification.recipient_id, notification.dedup_key)
        async with self._lock:
            existing = self._notifications.get(key)
            if existing is not None:
                return existing.model_copy(), False
            self._notifications[key] = notification.model_copy()
            return notification, True

    async def list_notifications(
        self, recipient_id: str | None = None, unread_only: bool = False
    ) -> list[Notification]:
        rows = [
            n.model_copy()
            for n in self._notifications.values()
            if (recipient_id is None or n.recipient_id == recipient_id)
            and (not unread_only or n.read_at is None)
        ]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return rows

    async def mark_notification_read(
        self, notification_id: str, read_at: datetime
    ) -> bool:
        async with self._lock:
            for n in self._notifications.values():
                if n.id == notification_id and n.read_at is None:
                    n.read_at = read_at
                    return True
            return False

    # ------------------------------------------------------------------
    async def append_audit_event(self, event: AuditEvent) -> None:
        async with self._lock:
            self._audit.append(event.model_copy())

    async def list_audit_events(
        self, workflow_id: str | None = None
    ) -> list[AuditEvent]:
        return [
            e.model_copy()
            for e in self._audit
            if workflow_id is None or e.workflow_id == workflow_id
        ]
