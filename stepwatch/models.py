"""Derived state returned by the ledger, reconciler and SLA tracker."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .enums import ExecutorKind, RiskLevel, StepStatus
from .persistence.models import SlaTracking, StepExecutionRecord


class MaterializedStepState(BaseModel):
    """Reconciled view of one step; always re-derived from the ledger."""

    workflow_id: str
    step_type: str
    current_status: StepStatus = StepStatus.NOT_STARTED
    current_attempt: int = 0
    last_transition_at: Optional[datetime] = None
    sequence_order: Optional[int] = None
    blueprinted: bool = True
    executor_kind: Optional[ExecutorKind] = None
    executor_id: Optional[str] = None


class AppendResult(BaseModel):
    """Outcome of a ledger append."""

    record: StepExecutionRecord
    duplicate: bool = False


class SlaEvaluation(BaseModel):
    """Result of evaluating one tracking row at a point in time."""

    tracking: SlaTracking
    previous_level: RiskLevel
    alert_raised: bool = False
