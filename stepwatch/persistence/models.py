"""Data models for persisted engine state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..enums import (
    ActorKind,
    ExecutorKind,
    InterruptResolution,
    NotificationKind,
    Priority,
    RiskLevel,
    StepStatus,
    TrackingStatus,
)
from ..utils.timeutil import utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


class WorkflowInstance(BaseModel):
    """A workflow run registered against a blueprint kind."""

    workflow_id: str
    workflow_kind: str
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StepExecutionRecord(BaseModel):
    """One append-only ledger row.

    ``attempt_number`` is assigned by the store when the row is appended;
    drafts carry ``0`` until then.
    """

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    step_type: str
    attempt_number: int = 0
    status: StepStatus
    started_at: datetime
    ended_at: Optional[datetime] = None
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    source_event_id: str
    event_type: str
    executor_kind: ExecutorKind = ExecutorKind.AGENT
    executor_id: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)

    @property
    def transition_at(self) -> datetime:
        return self.ended_at or self.started_at


class SlaTracking(BaseModel):
    """Deadline and risk bookkeeping for one step."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    step_type: str
    started_at: datetime
    due_at: datetime
    sla_hours: float
    risk_level: RiskLevel = RiskLevel.GREEN
    breached_minutes: int = 0
    status: TrackingStatus = TrackingStatus.ACTIVE
    cycle: int = 1
    last_evaluated_at: Optional[datetime] = None
    retired_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == TrackingStatus.ACTIVE


class InterruptCase(BaseModel):
    """Human follow-up opened when a step enters INTERRUPT."""

    id: str = Field(default_factory=_new_id)
    workflow_id: str
    step_type: str
    reason: str = ""
    attempt_number: int = 0
    assigned_to: Optional[str] = None
    escalated_to: Optional[str] = None
    opened_at: datetime = Field(default_factory=utcnow)
    escalated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[InterruptResolution] = None
    resolved_by: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


class Notification(BaseModel):
    """Per-recipient notification; unique on (recipient_id, dedup_key)."""

    id: str = Field(default_factory=_new_id)
    recipient_id: str
    kind: NotificationKind
    priority: Priority = Priority.NORMAL
    dedup_key: str
    title: str = ""
    message: str = ""
    workflow_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    read_at: Optional[datetime] = None


class AuditEvent(BaseModel):
    """Immutable compliance record of a mutation."""

    id: str = Field(default_factory=_new_id)
    actor_kind: ActorKind = ActorKind.SYSTEM
    actor_id: str = "stepwatch"
    action: str
    resource_kind: str
    resource_id: str
    workflow_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
