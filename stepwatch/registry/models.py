"""Pydantic models describing workflow blueprints."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ..config import SlaThresholds
from ..enums import ExecutorType


class StepBlueprintEntry(BaseModel):
    """One expected step of a workflow kind."""

    step_type: str
    sequence_order: int
    sla_hours: Optional[float] = None
    required_executor_kind: ExecutorType = ExecutorType.AI
    title: Optional[str] = None

    @field_validator("step_type")
    @classmethod
    def _ensure_step_type(cls, v: str) -> str:
        if not v:
            raise ValueError("step_type must be a non-empty string")
        return v

    @property
    def has_valid_sla(self) -> bool:
        return self.sla_hours is not None and self.sla_hours > 0


class WorkflowBlueprint(BaseModel):
    """Ordered definition of the steps expected for a workflow kind.

    ``thresholds`` optionally overrides the globally configured SLA risk
    thresholds for every step of this kind.
    """

    model_config = {"frozen": True}

    workflow_kind: str
    version: str = "1"
    steps: List[StepBlueprintEntry] = Field(default_factory=list)
    thresholds: Optional[SlaThresholds] = None

    @field_validator("steps")
    @classmethod
    def _ordered_unique(cls, steps: List[StepBlueprintEntry]) -> List[StepBlueprintEntry]:
        seen: set[str] = set()
        for entry in steps:
            if entry.step_type in seen:
                raise ValueError(f"duplicate step_type '{entry.step_type}'")
            seen.add(entry.step_type)
        orders = [entry.sequence_order for entry in steps]
        if any(b <= a for a, b in zip(orders, orders[1:])):
            raise ValueError("sequence_order must be strictly increasing")
        return steps

    def get_step(self, step_type: str) -> Optional[StepBlueprintEntry]:
        return next((s for s in self.steps if s.step_type == step_type), None)

    def predecessor(self, step_type: str) -> Optional[StepBlueprintEntry]:
        """Return the step immediately before ``step_type`` in sequence order."""
        for previous, entry in zip(self.steps, self.steps[1:]):
            if entry.step_type == step_type:
                return previous
        return None

    @property
    def first_step(self) -> Optional[StepBlueprintEntry]:
        return self.steps[0] if self.steps else None


class BlueprintDocument(BaseModel):
    """Root of a blueprint YAML file."""

    blueprints: List[WorkflowBlueprint] = Field(default_factory=list)
