"""Exceptions raised by the stepwatch engine."""

from __future__ import annotations


class StepwatchError(Exception):
    """Base class for engine errors."""


class InvalidEvent(StepwatchError):
    """Raised when an inbound event is malformed or lacks an identifier.

    Malformed events are rejected synchronously and are not retried by the
    engine; redelivering a corrected event is the orchestrator's job.
    """

    def __init__(self, message: str, details: list | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class UnknownWorkflow(StepwatchError):
    """Raised when an event references a workflow that was never registered."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Unknown workflow: {workflow_id}")
        self.workflow_id = workflow_id


class IllegalTransition(StepwatchError):
    """Raised when an interrupt action is not valid for the step's state."""

    def __init__(self, action: str, step_type: str, status: str) -> None:
        super().__init__(
            f"Cannot {action} step '{step_type}' while it is {status}"
        )
        self.action = action
        self.step_type = step_type
        self.status = status


class BlueprintError(StepwatchError):
    """Raised when blueprint definitions cannot be loaded."""
