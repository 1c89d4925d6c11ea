"""Behavioural parity of the in-memory and SQLite repositories."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from stepwatch.enums import (
    InterruptResolution,
    NotificationKind,
    RiskLevel,
    StepStatus,
    TrackingStatus,
)
from stepwatch.persistence import (
    AuditEvent,
    InMemoryEngineRepository,
    InterruptCase,
    Notification,
    SlaTracking,
    SQLiteEngineRepository,
    StepExecutionRecord,
    WorkflowInstance,
)

T0 = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "memory":
        return InMemoryEngineRepository()
    return SQLiteEngineRepository(tmp_path / "stepwatch.db")


def _record(source: str, step: str = "A", status: StepStatus = StepStatus.COMPLETED):
    return StepExecutionRecord(
        workflow_id="wf-1",
        step_type=step,
        status=status,
        started_at=T0,
        ended_at=T0 if status.is_outcome else None,
        output={"lender": "Wells Fargo"},
        source_event_id=source,
        event_type="step_completed",
    )


@pytest.mark.asyncio
async def test_register_workflow_is_insert_or_ignore(repo):
    first, created = await repo.register_workflow(
        WorkflowInstance(workflow_id="wf-1", workflow_kind="W", created_at=T0, metadata={"loan": 7})
    )
    again, created_again = await repo.register_workflow(
        WorkflowInstance(workflow_id="wf-1", workflow_kind="OTHER")
    )

    assert created and not created_again
    assert again.workflow_kind == "W"
    assert again.metadata == {"loan": 7}
    assert [w.workflow_id for w in await repo.list_workflows()] == ["wf-1"]


@pytest.mark.asyncio
async def test_append_execution_dedups_and_numbers_attempts(repo):
    first, created = await repo.append_execution(_record("e-1"))
    dup, dup_created = await repo.append_execution(_record("e-1"))
    second, _ = await repo.append_execution(_record("e-2"))
    other_step, _ = await repo.append_execution(_record("e-1", step="B"))

    assert created and not dup_created
    assert dup.id == first.id
    assert first.attempt_number == 1
    assert second.attempt_number == 2
    assert other_step.attempt_number == 1
    rows = await repo.list_executions("wf-1")
    assert [(r.step_type, r.attempt_number) for r in rows] == [("A", 1), ("A", 2), ("B", 1)]
    assert rows[0].output == {"lender": "Wells Fargo"}
    assert rows[0].started_at == T0
    assert rows[0].started_at.tzinfo is not None


@pytest.mark.asyncio
async def test_concurrent_appends_get_distinct_attempts(repo):
    results = await asyncio.gather(
        *(repo.append_execution(_record(f"e-{i}")) for i in range(8))
    )

    attempts = sorted(record.attempt_number for record, _ in results)
    assert attempts == list(range(1, 9))


@pytest.mark.asyncio
async def test_sla_tracking_cas_retire_and_reopen(repo):
    row, created = await repo.insert_sla_tracking(
        SlaTracking(
            workflow_id="wf-1",
            step_type="A",
            started_at=T0,
            due_at=T0 + timedelta(hours=2),
            sla_hours=2,
        )
    )
    _, created_again = await repo.insert_sla_tracking(
        SlaTracking(
            workflow_id="wf-1", step_type="A", started_at=T0, due_at=T0, sla_hours=1
        )
    )
    assert created and not created_again

    now = T0 + timedelta(hours=1)
    assert await repo.compare_and_set_risk(row.id, RiskLevel.GREEN, RiskLevel.YELLOW, 0, now)
    assert not await repo.compare_and_set_risk(row.id, RiskLevel.GREEN, RiskLevel.ORANGE, 0, now)
    await repo.touch_sla_tracking(row.id, 15, now)
    await repo.touch_sla_tracking(row.id, 5, now)

    stored = await repo.get_sla_tracking("wf-1", "A")
    assert stored.risk_level == RiskLevel.YELLOW
    assert stored.breached_minutes == 15
    assert stored.last_evaluated_at == now

    assert await repo.retire_sla_tracking(row.id, now)
    assert not await repo.retire_sla_tracking(row.id, now)
    assert await repo.list_sla_tracking("wf-1") == []
    assert not await repo.compare_and_set_risk(row.id, RiskLevel.YELLOW, RiskLevel.RED, 0, now)

    restart = T0 + timedelta(hours=3)
    assert await repo.reopen_sla_tracking(row.id, 1, restart, restart + timedelta(hours=2), 2)
    assert not await repo.reopen_sla_tracking(row.id, 1, restart, restart, 2)

    reopened = (await repo.list_sla_tracking("wf-1"))[0]
    assert reopened.status == TrackingStatus.ACTIVE
    assert reopened.cycle == 2
    assert reopened.risk_level == RiskLevel.GREEN
    assert reopened.breached_minutes == 0
    assert reopened.started_at == restart
    assert reopened.retired_at is None


@pytest.mark.asyncio
async def test_one_open_interrupt_case_per_step(repo):
    case, created = await repo.open_interrupt_case(
        InterruptCase(workflow_id="wf-1", step_type="A", reason="portal down", opened_at=T0)
    )
    same, created_again = await repo.open_interrupt_case(
        InterruptCase(workflow_id="wf-1", step_type="A", reason="other", opened_at=T0)
    )
    assert created and not created_again
    assert same.id == case.id
    assert same.reason == "portal down"

    assert await repo.assign_interrupt_case(case.id, "carol")
    assert await repo.escalate_interrupt_case(case.id, "dave", T0)
    assert await repo.close_interrupt_case(case.id, InterruptResolution.MANUAL, T0, "bob")
    assert not await repo.close_interrupt_case(case.id, InterruptResolution.FAILED, T0, "bob")
    assert not await repo.assign_interrupt_case(case.id, "erin")
    assert await repo.get_open_interrupt_case("wf-1", "A") is None

    # a closed case frees the step for a new one
    _, reopened = await repo.open_interrupt_case(
        InterruptCase(workflow_id="wf-1", step_type="A", reason="again", opened_at=T0)
    )
    assert reopened
    cases = await repo.list_interrupt_cases("wf-1", open_only=False)
    assert len(cases) == 2
    closed = next(c for c in cases if c.id == case.id)
    assert closed.resolution == InterruptResolution.MANUAL
    assert closed.assigned_to == "carol"
    assert closed.escalated_to == "dave"
    assert closed.resolved_by == "bob"
    assert len(await repo.list_interrupt_cases("wf-1")) == 1


@pytest.mark.asyncio
async def test_notification_unique_per_recipient_and_key(repo):
    first, created = await repo.insert_notification(
        Notification(
            recipient_id="ops",
            kind=NotificationKind.SLA_WARNING,
            dedup_key="sla:t:1:RED",
            payload={"risk_level": "RED"},
            created_at=T0,
        )
    )
    _, created_again = await repo.insert_notification(
        Notification(recipient_id="ops", kind=NotificationKind.SLA_WARNING, dedup_key="sla:t:1:RED")
    )
    _, other = await repo.insert_notification(
        Notification(recipient_id="lead", kind=NotificationKind.SLA_WARNING, dedup_key="sla:t:1:RED")
    )

    assert created and not created_again and other
    rows = await repo.list_notifications("ops")
    assert len(rows) == 1
    assert rows[0].payload == {"risk_level": "RED"}
    assert await repo.mark_notification_read(first.id, T0)
    assert not await repo.mark_notification_read(first.id, T0)
    assert await repo.list_notifications("ops", unread_only=True) == []


@pytest.mark.asyncio
async def test_audit_events_keep_insertion_order(repo):
    for action in ("ledger.append", "sla.opened", "sla.retired"):
        await repo.append_audit_event(
            AuditEvent(action=action, resource_kind="x", resource_id="1", workflow_id="wf-1")
        )
    await repo.append_audit_event(AuditEvent(action="other", resource_kind="x", resource_id="2"))

    assert [e.action for e in await repo.list_audit_events("wf-1")] == [
        "ledger.append",
        "sla.opened",
        "sla.retired",
    ]
    assert len(await repo.list_audit_events()) == 4
