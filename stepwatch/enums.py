"""Enumerations shared by records, derived state and the engine."""

from __future__ import annotations

from enum import Enum


class StepStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    INTERRUPT = "INTERRUPT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_closed(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)

    @property
    def is_outcome(self) -> bool:
        """Statuses that end an attempt (everything but a start)."""
        return self in (StepStatus.INTERRUPT, StepStatus.COMPLETED, StepStatus.FAILED)


class RiskLevel(str, Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    ORANGE = "ORANGE"
    RED = "RED"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    @property
    def sla_status(self) -> str:
        """Coarse ON_TIME / AT_RISK / BREACHED classification."""
        if self is RiskLevel.GREEN:
            return "ON_TIME"
        if self is RiskLevel.RED:
            return "BREACHED"
        return "AT_RISK"


_RISK_ORDER = [RiskLevel.GREEN, RiskLevel.YELLOW, RiskLevel.ORANGE, RiskLevel.RED]


class TrackingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RETIRED = "RETIRED"


class ExecutorKind(str, Enum):
    AGENT = "AGENT"
    HUMAN = "HUMAN"
    SYSTEM = "SYSTEM"


class ExecutorType(str, Enum):
    """Executor a blueprint step expects."""

    AI = "AI"
    HIL = "HIL"


class InterruptResolution(str, Enum):
    RETRIED = "retried"
    MANUAL = "manual"
    FAILED = "failed"
    SUPERSEDED = "superseded"


class NotificationKind(str, Enum):
    SLA_WARNING = "SLA_WARNING"
    TASK_INTERRUPT = "TASK_INTERRUPT"
    HIL_MENTION = "HIL_MENTION"
    AGENT_FAILURE = "AGENT_FAILURE"
    WORKFLOW_UPDATE = "WORKFLOW_UPDATE"


class Priority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ActorKind(str, Enum):
    SYSTEM = "system"
    HUMAN = "human"
    AGENT = "agent"
