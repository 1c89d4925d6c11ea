"""Inbound event contracts exchanged with the orchestrator."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .enums import StepStatus
from .errors import InvalidEvent

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Closed set of orchestrator event kinds."""

    STEP_STARTED = "step_started"
    TASK_ASSIGNED_TO_AGENT = "task_assigned_to_agent"
    STEP_COMPLETED = "step_completed"
    AGENT_STEP_COMPLETED = "agent_step_completed"
    AGENT_TASK_COMPLETED = "agent_task_completed"
    STEP_FAILED = "step_failed"
    AGENT_STEP_FAILED = "agent_step_failed"
    STEP_INTERRUPTED = "step_interrupted"


EVENT_STATUS: Dict[EventType, StepStatus] = {
    EventType.STEP_STARTED: StepStatus.IN_PROGRESS,
    EventType.TASK_ASSIGNED_TO_AGENT: StepStatus.IN_PROGRESS,
    EventType.STEP_COMPLETED: StepStatus.COMPLETED,
    EventType.AGENT_STEP_COMPLETED: StepStatus.COMPLETED,
    EventType.AGENT_TASK_COMPLETED: StepStatus.COMPLETED,
    EventType.STEP_FAILED: StepStatus.FAILED,
    EventType.AGENT_STEP_FAILED: StepStatus.FAILED,
    EventType.STEP_INTERRUPTED: StepStatus.INTERRUPT,
}


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class StepEventData(BaseModel):
    """Body of an orchestrator event; accepts snake_case and camelCase keys."""

    model_config = ConfigDict(extra="ignore")

    workflow_id: str = Field(
        min_length=1,
        validation_alias=_alias("workflow_id", "workflowId", "rexeraWorkflowId"),
    )
    step_type: str = Field(
        min_length=1,
        validation_alias=_alias("step_type", "stepType", "task_type", "taskType"),
    )
    source_event_id: str = Field(
        min_length=1,
        validation_alias=_alias("source_event_id", "sourceEventId", "event_id", "eventId"),
    )
    status: Optional[StepStatus] = None
    started_at: Optional[datetime] = Field(
        default=None, validation_alias=_alias("started_at", "startedAt")
    )
    occurred_at: Optional[datetime] = Field(
        default=None,
        validation_alias=_alias("occurred_at", "occurredAt", "completed_at", "completedAt"),
    )
    result: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=_alias("result", "output")
    )
    error: Optional[str] = Field(
        default=None, validation_alias=_alias("error", "errorMessage", "error_message")
    )
    reason: Optional[str] = None
    agent_name: Optional[str] = Field(
        default=None, validation_alias=_alias("agent_name", "agentName", "agent_id", "agentId")
    )
    assigned_to: Optional[str] = Field(
        default=None, validation_alias=_alias("assigned_to", "assignedTo")
    )
    workflow_kind: Optional[str] = Field(
        default=None,
        validation_alias=_alias("workflow_kind", "workflowKind", "workflow_type", "workflowType"),
    )

    @field_validator("status", mode="before")
    @classmethod
    def _upper_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v

    @field_validator("result", mode="before")
    @classmethod
    def _wrap_result(cls, v: Any) -> Any:
        if v is None or isinstance(v, dict):
            return v
        return {"result": v}


class OrchestratorEvent(BaseModel):
    """Envelope published by the orchestrator: ``{eventType, data}``."""

    event_type: EventType = Field(
        validation_alias=_alias("event_type", "eventType"),
        serialization_alias="eventType",
    )
    data: StepEventData
    message_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        validation_alias=_alias("message_id", "messageId"),
        serialization_alias="messageId",
    )
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _status_matches_event_type(self) -> "OrchestratorEvent":
        expected = EVENT_STATUS[self.event_type]
        if self.data.status is not None and self.data.status != expected:
            raise ValueError(
                f"status {self.data.status.value} does not match event type "
                f"{self.event_type.value} ({expected.value})"
            )
        return self

    @property
    def status(self) -> StepStatus:
        return EVENT_STATUS[self.event_type]

    @property
    def occurred_at(self) -> datetime:
        """When the transition happened according to the orchestrator."""
        return self.data.occurred_at or self.data.started_at or self.timestamp

    @classmethod
    def parse(cls, payload: Union[str, bytes, Dict[str, Any]]) -> "OrchestratorEvent":
        """Validate a raw payload, raising :class:`InvalidEvent` when malformed."""
        try:
            if isinstance(payload, (str, bytes)):
                return cls.model_validate_json(payload)
            return cls.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Rejected malformed event: {e.error_count()} error(s)")
            raise InvalidEvent(
                "Malformed orchestrator event", details=e.errors(include_url=False)
            ) from e

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> "OrchestratorEvent":
        """Deserialize event from JSON."""
        return cls.parse(data)


__all__ = ["EVENT_STATUS", "EventType", "OrchestratorEvent", "StepEventData"]
