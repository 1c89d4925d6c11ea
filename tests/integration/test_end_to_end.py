"""End-to-end ingest, SLA and interrupt scenarios through the engine."""

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from helpers import MONDAY_9, FakeClock, event, make_engine
from stepwatch import BusinessCalendar, WorkflowEngine
from stepwatch.config import NotificationConfig, StepwatchConfig
from stepwatch.enums import NotificationKind, RiskLevel, StepStatus
from stepwatch.persistence import InMemoryEngineRepository, SQLiteEngineRepository
from stepwatch.registry import load_blueprints

NEW_YORK = ZoneInfo("America/New_York")


@pytest.fixture(params=["memory", "sqlite"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryEngineRepository()
    return SQLiteEngineRepository(tmp_path / "e2e.db")


@pytest.mark.asyncio
async def test_two_step_workflow_lifecycle(repository):
    clock = FakeClock(MONDAY_9)
    engine = make_engine(clock, repository)
    await engine.register_workflow("wf-1", "W")

    # A completes at 10:00
    t0 = clock.advance(hours=1)
    await engine.handle_event(event("step_completed", "wf-1", "A", "a-done", t0))

    a, b = await engine.step_states("wf-1")
    assert a.current_status == StepStatus.COMPLETED
    assert b.current_status == StepStatus.NOT_STARTED
    (b_row,) = await engine.open_sla("wf-1")
    assert b_row.step_type == "B"
    assert b_row.started_at == t0
    assert b_row.due_at == MONDAY_9.replace(hour=14)
    assert b_row.risk_level == RiskLevel.GREEN

    # 13:24 is 204 of 240 minutes
    clock.now = MONDAY_9.replace(hour=13, minute=24)
    results = await engine.sweep()
    assert [(r.tracking.step_type, r.tracking.risk_level, r.alert_raised) for r in results] == [
        ("B", RiskLevel.ORANGE, True)
    ]

    # B completes at 13:54 and the orchestrator delivers it twice
    clock.now = MONDAY_9.replace(hour=13, minute=54)
    first = await engine.handle_event(event("step_completed", "wf-1", "B", "b-done", clock.now))
    second = await engine.handle_event(event("step_completed", "wf-1", "B", "b-done", clock.now))
    await engine.drain()

    assert not first.duplicate and second.duplicate
    b_records = [r for r in await repository.list_executions("wf-1") if r.step_type == "B"]
    assert len(b_records) == 1
    assert await engine.open_sla("wf-1") == []

    summary = await engine.workflow_summary("wf-1")
    assert summary["completed_steps"] == 2
    assert summary["progress"] == 1.0
    assert summary["unblueprinted_steps"] == []

    warnings = [
        n for n in await engine.notifications_for("ops") if n.kind == NotificationKind.SLA_WARNING
    ]
    assert len(warnings) == 1

    actions = [e.action for e in await repository.list_audit_events("wf-1")]
    assert actions.count("ledger.append") == 2
    assert actions.count("sla.retired") == 2
    assert "sla.risk_changed" in actions


@pytest.mark.asyncio
async def test_interrupt_retry_and_completion_across_overnight_calendar():
    # Monday 2024-03-04 16:00 in New York
    start = datetime(2024, 3, 4, 16, 0, tzinfo=NEW_YORK)
    clock = FakeClock(start.astimezone(timezone.utc))
    engine = WorkflowEngine(
        InMemoryEngineRepository(),
        load_blueprints(),
        BusinessCalendar(tz="America/New_York"),
        StepwatchConfig(notifications=NotificationConfig(operators=["ops"])),
        clock=clock,
    )
    await engine.register_workflow("loan-77", "PAYOFF_REQUEST")

    (row,) = await engine.open_sla("loan-77")
    assert row.step_type == "identify_lender_contact"
    # one business hour on Monday, one on Tuesday morning
    assert row.due_at == datetime(2024, 3, 5, 10, 0, tzinfo=NEW_YORK)

    clock.now = datetime(2024, 3, 5, 9, 30, tzinfo=NEW_YORK).astimezone(timezone.utc)
    await engine.handle_event(
        event(
            "step_interrupted",
            "loan-77",
            "identify_lender_contact",
            "n8n-1",
            clock.now,
            reason="lender not found in directory",
            assignedTo="carol",
        )
    )
    assert (await engine.open_interrupts("loan-77"))[0].assigned_to == "carol"

    clock.advance(minutes=18)  # 108 of 120 minutes
    evaluations = await engine.sweep()
    assert evaluations[0].tracking.risk_level == RiskLevel.ORANGE

    state = await engine.retry("loan-77", "identify_lender_contact", "carol")
    assert state.current_status == StepStatus.IN_PROGRESS
    # due date is kept across retries
    assert (await engine.open_sla("loan-77"))[0].due_at == row.due_at

    clock.advance(minutes=5)
    await engine.handle_event(
        event(
            "agent_step_completed",
            "loan-77",
            "identify_lender_contact",
            "n8n-2",
            clock.now,
            agentName="nina",
            result={"lender": "Wells Fargo"},
        )
    )
    await engine.drain()

    states = {s.step_type: s for s in await engine.step_states("loan-77")}
    assert states["identify_lender_contact"].current_status == StepStatus.COMPLETED
    assert states["identify_lender_contact"].current_attempt == 3
    open_rows = await engine.open_sla("loan-77")
    assert [r.step_type for r in open_rows] == ["research_lender_contact"]
    assert open_rows[0].due_at == clock.now + timedelta(hours=4)
    assert await engine.open_interrupts("loan-77") == []

    carol = {n.kind for n in await engine.notifications_for("carol")}
    assert carol == {NotificationKind.TASK_INTERRUPT, NotificationKind.SLA_WARNING}


@pytest.mark.asyncio
async def test_unblueprinted_step_is_recorded_and_flagged(engine, clock):
    await engine.register_workflow("wf-1", "W")

    await engine.handle_event(event("step_completed", "wf-1", "surprise", "s-1", clock.now))

    summary = await engine.workflow_summary("wf-1")
    assert summary["unblueprinted_steps"] == ["surprise"]
    assert summary["total_steps"] == 2
    assert [r.step_type for r in await engine.open_sla("wf-1")] == ["A"]
