"""Repository abstraction for engine state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from ..enums import InterruptResolution, RiskLevel
from .models import (
    AuditEvent,
    InterruptCase,
    Notification,
    SlaTracking,
    StepExecutionRecord,
    WorkflowInstance,
)


class EngineRepository(Protocol):
    """Protocol for storage backends.

    Every ``insert``/``open`` style method is insert-or-ignore keyed on a
    natural uniqueness tuple and returns ``(stored_row, created)``. Methods
    returning ``bool`` are conditional writes that report whether they
    applied.
    """

    # -- workflows -----------------------------------------------------
    async def register_workflow(
        self, workflow: WorkflowInstance
    ) -> tuple[WorkflowInstance, bool]:
        """Persist a workflow instance unless one with the same id exists."""

    async def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        """Retrieve the workflow instance by id."""

    async def list_workflows(self) -> list[WorkflowInstance]:
        """Return all registered workflows."""

    # -- execution ledger ----------------------------------------------
    async def append_execution(
        self, record: StepExecutionRecord
    ) -> tuple[StepExecutionRecord, bool]:
        """Append ``record`` with the next attempt number for its step.

        A row with the same (workflow_id, step_type, source_event_id) makes
        the call a no-op that returns the stored row.
        """

    async def list_executions(self, workflow_id: str) -> list[StepExecutionRecord]:
        """Return ledger rows for a workflow ordered by step and attempt."""

    # -- SLA tracking --------------------------------------------------
    async def insert_sla_tracking(
        self, tracking: SlaTracking
    ) -> tuple[SlaTracking, bool]:
        """Create the tracking row for a step unless it already exists."""

    async def get_sla_tracking(
        self, workflow_id: str, step_type: str
    ) -> SlaTracking | None:
        """Return the tracking row for a step."""

    async def list_sla_tracking(
        self, workflow_id: str | None = None, active_only: bool = True
    ) -> list[SlaTracking]:
        """Return tracking rows, optionally for one workflow."""

    async def compare_and_set_risk(
        self,
        tracking_id: str,
        expected: RiskLevel,
        new: RiskLevel,
        breached_minutes: int,
        evaluated_at: datetime,
    ) -> bool:
        """Write ``new`` only if the stored level is still ``expected``."""

    async def touch_sla_tracking(
        self, tracking_id: str, breached_minutes: int, evaluated_at: datetime
    ) -> None:
        """Record an evaluation that did not change the risk level."""

    async def retire_sla_tracking(self, tracking_id: str, retired_at: datetime) -> bool:
        """Mark an active row retired."""

    async def reopen_sla_tracking(
        self,
        tracking_id: str,
        expected_cycle: int,
        started_at: datetime,
        due_at: datetime,
        sla_hours: float,
    ) -> bool:
        """Reactivate a retired row for a new cycle."""

    # -- interrupt cases -----------------------------------------------
    async def open_interrupt_case(
        self, case: InterruptCase
    ) -> tuple[InterruptCase, bool]:
        """Open a case unless the step already has an open one."""

    async def get_open_interrupt_case(
        self, workflow_id: str, step_type: str
    ) -> InterruptCase | None:
        """Return the open case for a step."""

    async def list_interrupt_cases(
        self, workflow_id: str | None = None, open_only: bool = True
    ) -> list[InterruptCase]:
        """Return interrupt cases, optionally for one workflow."""

    async def assign_interrupt_case(self, case_id: str, assignee: str) -> bool:
        """Set ``assigned_to`` on an open case."""

    async def escalate_interrupt_case(
        self, case_id: str, escalated_to: str, escalated_at: datetime
    ) -> bool:
        """Set ``escalated_to`` on an open case."""

    async def close_interrupt_case(
        self,
        case_id: str,
        resolution: InterruptResolution,
        resolved_at: datetime,
        resolved_by: str | None = None,
    ) -> bool:
        """Close an open case."""

    # -- notifications -------------------------------------------------
    async def insert_notification(
        self, notification: Notification
    ) -> tuple[Notification, bool]:
        """Insert unless (recipient_id, dedup_key) already exists."""

    async def list_notifications(
        self, recipient_id: str | None = None, unread_only: bool = False
    ) -> list[Notification]:
        """Return notifications, newest first."""

    async def mark_notification_read(
        self, notification_id: str, read_at: datetime
    ) -> bool:
        """Set ``read_at`` once."""

    # -- audit ---------------------------------------------------------
    async def append_audit_event(self, event: AuditEvent) -> None:
        """Append an audit record."""

    async def list_audit_events(
        self, workflow_id: str | None = None
    ) -> list[AuditEvent]:
        """Return audit records in insertion order."""
