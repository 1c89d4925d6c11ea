"""Shared builders for engine tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from stepwatch import BusinessCalendar, WorkflowEngine
from stepwatch.config import AuditConfig, NotificationConfig, StepwatchConfig
from stepwatch.persistence import InMemoryEngineRepository
from stepwatch.registry import BlueprintRegistry, StepBlueprintEntry, WorkflowBlueprint

# Monday
MONDAY_9 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock injected into the engine."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def w1_registry() -> BlueprintRegistry:
    return BlueprintRegistry(
        [
            WorkflowBlueprint(
                workflow_kind="W",
                steps=[
                    StepBlueprintEntry(step_type="A", sequence_order=1, sla_hours=2),
                    StepBlueprintEntry(step_type="B", sequence_order=2, sla_hours=4),
                ],
            ),
            WorkflowBlueprint(
                workflow_kind="S",
                steps=[StepBlueprintEntry(step_type="X", sequence_order=1, sla_hours=4)],
            ),
        ]
    )


def make_engine(clock: FakeClock, repository=None, operators=("ops",)) -> WorkflowEngine:
    config = StepwatchConfig(
        notifications=NotificationConfig(operators=list(operators)),
        audit=AuditConfig(backoff_base=0, backoff_jitter=0),
    )
    return WorkflowEngine(
        repository or InMemoryEngineRepository(),
        w1_registry(),
        BusinessCalendar(),
        config,
        clock=clock,
    )


def event(
    event_type: str,
    workflow_id: str,
    step_type: str,
    source_event_id: str,
    occurred_at: datetime | None = None,
    **extra,
) -> dict:
    data = {
        "workflowId": workflow_id,
        "taskType": step_type,
        "sourceEventId": source_event_id,
        **extra,
    }
    if occurred_at is not None:
        data["occurred_at"] = occurred_at.isoformat()
    return {"eventType": event_type, "data": data}
