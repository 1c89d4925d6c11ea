"""Execution ledger tests."""

import asyncio

import pytest

from stepwatch.contracts import OrchestratorEvent
from stepwatch.enums import ExecutorKind, StepStatus
from stepwatch.errors import UnknownWorkflow
from stepwatch.ledger import ExecutionLedger
from stepwatch.persistence import InMemoryEngineRepository, WorkflowInstance

from helpers import MONDAY_9, event


async def _ledger_with_workflow() -> tuple[ExecutionLedger, InMemoryEngineRepository]:
    repo = InMemoryEngineRepository()
    await repo.register_workflow(
        WorkflowInstance(workflow_id="wf-1", workflow_kind="W", created_at=MONDAY_9)
    )
    return ExecutionLedger(repo, clock=lambda: MONDAY_9), repo


@pytest.mark.asyncio
async def test_replay_yields_single_record():
    ledger, repo = await _ledger_with_workflow()
    payload = OrchestratorEvent.parse(event("step_completed", "wf-1", "A", "evt-1", MONDAY_9))

    first = await ledger.ingest(payload)
    second = await ledger.ingest(payload)
    third = await ledger.ingest(payload)

    assert not first.duplicate
    assert second.duplicate and third.duplicate
    assert second.record.id == first.record.id
    records = await repo.list_executions("wf-1")
    assert len(records) == 1
    assert records[0].attempt_number == 1
    assert records[0].status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_duplicate_deliveries_race_to_one_row():
    ledger, repo = await _ledger_with_workflow()
    payload = OrchestratorEvent.parse(event("step_failed", "wf-1", "A", "evt-dup", MONDAY_9))

    results = await asyncio.gather(*(ledger.ingest(payload) for _ in range(10)))

    assert sum(1 for r in results if not r.duplicate) == 1
    assert len(await repo.list_executions("wf-1")) == 1


@pytest.mark.asyncio
async def test_new_source_events_get_increasing_attempts():
    ledger, repo = await _ledger_with_workflow()

    for source in ("s-1", "s-2", "s-3"):
        await ledger.ingest(
            OrchestratorEvent.parse(event("step_started", "wf-1", "A", source, MONDAY_9))
        )
    await ledger.ingest(
        OrchestratorEvent.parse(event("step_started", "wf-1", "B", "s-1", MONDAY_9))
    )

    records = await repo.list_executions("wf-1")
    assert [(r.step_type, r.attempt_number) for r in records] == [
        ("A", 1),
        ("A", 2),
        ("A", 3),
        ("B", 1),
    ]


@pytest.mark.asyncio
async def test_event_fields_are_recorded():
    ledger, _ = await _ledger_with_workflow()
    payload = OrchestratorEvent.parse(
        event(
            "agent_step_failed",
            "wf-1",
            "A",
            "evt-9",
            MONDAY_9,
            agentName="nina",
            error="lender portal timeout",
            startedAt="2024-03-04T08:30:00+00:00",
        )
    )

    record = (await ledger.ingest(payload)).record

    assert record.status == StepStatus.FAILED
    assert record.executor_kind == ExecutorKind.AGENT
    assert record.executor_id == "nina"
    assert record.error == "lender portal timeout"
    assert record.started_at.hour == 8
    assert record.ended_at == MONDAY_9
    assert record.event_type == "agent_step_failed"


@pytest.mark.asyncio
async def test_unknown_workflow_is_rejected():
    ledger = ExecutionLedger(InMemoryEngineRepository())

    with pytest.raises(UnknownWorkflow):
        await ledger.ingest(
            OrchestratorEvent.parse(event("step_completed", "nope", "A", "evt-1"))
        )


@pytest.mark.asyncio
async def test_workflow_kind_registers_unknown_workflow():
    repo = InMemoryEngineRepository()
    ledger = ExecutionLedger(repo)

    result = await ledger.ingest(
        OrchestratorEvent.parse(
            event("step_started", "wf-new", "A", "evt-1", MONDAY_9, workflowKind="W")
        )
    )

    workflow = await repo.get_workflow("wf-new")
    assert workflow is not None
    assert workflow.workflow_kind == "W"
    assert workflow.created_at == MONDAY_9
    assert not result.duplicate


@pytest.mark.asyncio
async def test_synthetic_append_is_attributed_and_idempotent():
    ledger, repo = await _ledger_with_workflow()

    first = await ledger.append_synthetic(
        "wf-1", "A", StepStatus.COMPLETED, "resolve:case-1", "alice"
    )
    again = await ledger.append_synthetic(
        "wf-1", "A", StepStatus.COMPLETED, "resolve:case-1", "alice"
    )

    assert first.record.executor_kind == ExecutorKind.HUMAN
    assert first.record.executor_id == "alice"
    assert first.record.ended_at == MONDAY_9
    assert again.duplicate
    assert len(await repo.list_executions("wf-1")) == 1
