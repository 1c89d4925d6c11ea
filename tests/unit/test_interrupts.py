"""Interrupt case lifecycle and operator action tests."""

from datetime import timedelta

import pytest

from helpers import event
from stepwatch.contracts import OrchestratorEvent
from stepwatch.enums import (
    ActorKind,
    ExecutorKind,
    InterruptResolution,
    NotificationKind,
    Priority,
    RiskLevel,
    StepStatus,
)
from stepwatch.errors import IllegalTransition


async def _interrupted(engine, clock, assigned_to=None):
    await engine.register_workflow("wf-s", "S")
    clock.advance(hours=1)
    extra = {"reason": "lender unreachable"}
    if assigned_to:
        extra["assignedTo"] = assigned_to
    await engine.handle_event(
        event("step_interrupted", "wf-s", "X", "int-1", clock.now, **extra)
    )
    clock.advance(minutes=30)


@pytest.mark.asyncio
async def test_interrupt_opens_case_and_notifies(engine, clock):
    await _interrupted(engine, clock, assigned_to="carol")
    await engine.drain()

    cases = await engine.open_interrupts("wf-s")
    assert len(cases) == 1
    assert cases[0].reason == "lender unreachable"
    assert cases[0].assigned_to == "carol"
    assert cases[0].attempt_number == 1

    for recipient in ("ops", "carol"):
        notifications = await engine.notifications_for(recipient)
        assert [n.kind for n in notifications] == [NotificationKind.TASK_INTERRUPT]
        assert notifications[0].priority == Priority.HIGH

    # INTERRUPT is not closed, the SLA clock keeps running
    assert len(await engine.open_sla("wf-s")) == 1


@pytest.mark.asyncio
async def test_redelivered_interrupt_keeps_one_case(engine, clock):
    await _interrupted(engine, clock)

    await engine.handle_event(
        event("step_interrupted", "wf-s", "X", "int-1", reason="lender unreachable")
    )
    await engine.drain()

    assert len(await engine.open_interrupts("wf-s")) == 1
    assert len(await engine.notifications_for("ops")) == 1


@pytest.mark.asyncio
async def test_retry_starts_new_attempt_and_closes_case(engine, clock):
    await _interrupted(engine, clock)

    state = await engine.retry("wf-s", "X", "alice")
    await engine.drain()

    assert state.current_status == StepStatus.IN_PROGRESS
    assert state.current_attempt == 2
    assert state.executor_kind == ExecutorKind.HUMAN
    assert state.executor_id == "alice"

    assert await engine.open_interrupts("wf-s") == []
    case = (await engine.repository.list_interrupt_cases("wf-s", open_only=False))[0]
    assert case.resolution == InterruptResolution.RETRIED
    assert case.resolved_by == "alice"
    assert case.resolved_at == clock.now

    audit = [e for e in await engine.repository.list_audit_events("wf-s") if e.action == "interrupt.retried"]
    assert len(audit) == 1
    assert audit[0].actor_kind == ActorKind.HUMAN
    assert audit[0].actor_id == "alice"


@pytest.mark.asyncio
async def test_retry_after_interrupt_stamped_ahead_of_clock(engine, clock):
    await engine.register_workflow("wf-s", "S")
    ahead = clock.now + timedelta(seconds=2)
    await engine.handle_event(
        event("step_interrupted", "wf-s", "X", "int-1", ahead, reason="lender unreachable")
    )

    state = await engine.retry("wf-s", "X", "alice")
    await engine.drain()

    assert state.current_status == StepStatus.IN_PROGRESS
    assert state.current_attempt == 2
    assert state.last_transition_at == ahead
    assert await engine.open_interrupts("wf-s") == []
    case = (await engine.repository.list_interrupt_cases("wf-s", open_only=False))[0]
    assert case.resolution == InterruptResolution.RETRIED


@pytest.mark.asyncio
async def test_second_retry_is_rejected_without_writing(engine, clock):
    await _interrupted(engine, clock)
    await engine.retry("wf-s", "X", "alice")

    with pytest.raises(IllegalTransition) as exc_info:
        await engine.retry("wf-s", "X", "alice")

    assert exc_info.value.status == "IN_PROGRESS"
    assert len(await engine.repository.list_executions("wf-s")) == 2


@pytest.mark.asyncio
async def test_resolve_completes_step_and_retires_sla(engine, clock):
    await _interrupted(engine, clock)

    state = await engine.resolve("wf-s", "X", "bob", output={"payoff_amount": 1250})

    assert state.current_status == StepStatus.COMPLETED
    assert state.executor_kind == ExecutorKind.HUMAN
    assert state.executor_id == "bob"
    assert await engine.open_sla("wf-s") == []

    records = await engine.repository.list_executions("wf-s")
    assert records[-1].output == {"payoff_amount": 1250}
    assert records[-1].event_type == "manual_completed"
    case = (await engine.repository.list_interrupt_cases("wf-s", open_only=False))[0]
    assert case.resolution == InterruptResolution.MANUAL
    assert case.resolved_by == "bob"


@pytest.mark.asyncio
async def test_fail_marks_step_failed(engine, clock):
    await _interrupted(engine, clock)

    state = await engine.fail("wf-s", "X", "bob", error="lender closed the account")
    await engine.drain()

    assert state.current_status == StepStatus.FAILED
    records = await engine.repository.list_executions("wf-s")
    assert records[-1].error == "lender closed the account"
    case = (await engine.repository.list_interrupt_cases("wf-s", open_only=False))[0]
    assert case.resolution == InterruptResolution.FAILED
    # manual failures are not agent failures
    kinds = {n.kind for n in await engine.notifications_for("ops")}
    assert NotificationKind.AGENT_FAILURE not in kinds


@pytest.mark.asyncio
async def test_escalate_keeps_interrupt_and_notifies_target(engine, clock):
    await _interrupted(engine, clock)

    case = await engine.escalate("wf-s", "X", "dave", "alice")
    await engine.escalate("wf-s", "X", "dave", "alice")
    await engine.drain()

    assert case.escalated_to == "dave"
    assert case.escalated_at == clock.now
    state = (await engine.step_states("wf-s"))[0]
    assert state.current_status == StepStatus.INTERRUPT
    stored = (await engine.open_interrupts("wf-s"))[0]
    assert stored.escalated_to == "dave"

    notifications = await engine.notifications_for("dave")
    assert len(notifications) == 1
    assert notifications[0].priority == Priority.URGENT
    assert notifications[0].payload["escalated_by"] == "alice"


@pytest.mark.asyncio
async def test_assignee_receives_sla_alerts(engine, clock):
    await _interrupted(engine, clock)

    case = await engine.assign("wf-s", "X", "erin", "alice")
    assert case.assigned_to == "erin"

    clock.advance(hours=2)  # 3.5 of 4 business hours
    results = await engine.sweep()
    await engine.drain()

    assert results[0].tracking.risk_level == RiskLevel.ORANGE
    kinds = sorted(n.kind.value for n in await engine.notifications_for("erin"))
    assert kinds == ["SLA_WARNING", "TASK_INTERRUPT"]


@pytest.mark.asyncio
async def test_escalation_target_receives_sla_alerts(engine, clock):
    await _interrupted(engine, clock, assigned_to="carol")
    await engine.escalate("wf-s", "X", "dave", "alice")

    clock.advance(hours=2)  # 3.5 of 4 business hours
    results = await engine.sweep()
    await engine.drain()

    assert results[0].tracking.risk_level == RiskLevel.ORANGE
    for recipient in ("ops", "carol", "dave"):
        warnings = [
            n
            for n in await engine.notifications_for(recipient)
            if n.kind == NotificationKind.SLA_WARNING
        ]
        assert len(warnings) == 1


@pytest.mark.asyncio
async def test_actions_outside_interrupt_are_illegal(engine, clock):
    await engine.register_workflow("wf-1", "W")

    with pytest.raises(IllegalTransition):
        await engine.resolve("wf-1", "A", "bob")

    await engine.handle_event(event("step_completed", "wf-1", "A", "a-done", clock.now))
    for action in (engine.retry, engine.resolve, engine.fail):
        with pytest.raises(IllegalTransition) as exc_info:
            await action("wf-1", "A", "bob")
        assert exc_info.value.status == "COMPLETED"

    with pytest.raises(IllegalTransition):
        await engine.escalate("wf-1", "A", "dave", "bob")

    records = await engine.repository.list_executions("wf-1")
    assert len(records) == 1
    assert records[0].source_event_id == "a-done"


@pytest.mark.asyncio
async def test_orchestrator_completion_supersedes_open_case(engine, clock):
    await _interrupted(engine, clock)

    await engine.handle_event(event("step_completed", "wf-s", "X", "x-done", clock.now))

    assert await engine.open_interrupts("wf-s") == []
    case = (await engine.repository.list_interrupt_cases("wf-s", open_only=False))[0]
    assert case.resolution == InterruptResolution.SUPERSEDED
    assert case.resolved_by is None


@pytest.mark.asyncio
async def test_interrupt_without_case_is_adopted(engine, clock):
    await engine.register_workflow("wf-s", "S")
    # ledger write without the rest of the ingest pipeline
    await engine.ledger.ingest(
        OrchestratorEvent.parse(event("step_interrupted", "wf-s", "X", "int-1", clock.now))
    )
    assert await engine.open_interrupts("wf-s") == []

    state = await engine.retry("wf-s", "X", "alice")

    assert state.current_status == StepStatus.IN_PROGRESS
    cases = await engine.repository.list_interrupt_cases("wf-s", open_only=False)
    assert len(cases) == 1
    assert cases[0].resolution == InterruptResolution.RETRIED


@pytest.mark.asyncio
async def test_agent_failure_notifies_operators(engine, clock):
    await engine.register_workflow("wf-s", "S")

    await engine.handle_event(
        event(
            "agent_step_failed",
            "wf-s",
            "X",
            "fail-1",
            clock.now,
            agentName="nina",
            error="portal timeout",
        )
    )
    await engine.drain()

    notifications = await engine.notifications_for("ops")
    assert len(notifications) == 1
    assert notifications[0].kind == NotificationKind.AGENT_FAILURE
    assert notifications[0].priority == Priority.HIGH
    assert notifications[0].payload["agent"] == "nina"
    assert notifications[0].message == "portal timeout"
