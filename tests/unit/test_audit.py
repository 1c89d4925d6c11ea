"""Audit emitter tests."""

import logging

import pytest

from helpers import MONDAY_9, event
from stepwatch.audit import AuditEmitter
from stepwatch.enums import ActorKind
from stepwatch.persistence import InMemoryEngineRepository


class FailingAuditRepository(InMemoryEngineRepository):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def append_audit_event(self, event):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("audit store down")
        await super().append_audit_event(event)


@pytest.mark.asyncio
async def test_log_writes_in_background():
    repo = InMemoryEngineRepository()
    audit = AuditEmitter(repo, backoff_base=0, backoff_jitter=0)

    task = audit.log(
        "interrupt.resolved",
        "interrupt_case",
        "case-1",
        workflow_id="wf-1",
        payload={"resolution": "manual"},
        actor_kind=ActorKind.HUMAN,
        actor_id="bob",
    )
    assert task is not None
    await audit.drain()

    events = await repo.list_audit_events("wf-1")
    assert len(events) == 1
    assert events[0].action == "interrupt.resolved"
    assert events[0].actor_id == "bob"
    assert events[0].payload == {"resolution": "manual"}
    assert audit.pending == 0


@pytest.mark.asyncio
async def test_transient_failure_is_retried():
    repo = FailingAuditRepository(failures=2)
    audit = AuditEmitter(repo, max_attempts=3, backoff_base=0, backoff_jitter=0)

    audit.log("ledger.append", "step_execution", "rec-1")
    await audit.drain()

    assert repo.calls == 3
    assert len(await repo.list_audit_events()) == 1
    assert audit.dropped == 0


@pytest.mark.asyncio
async def test_exhausted_write_is_dropped_and_logged(caplog):
    repo = FailingAuditRepository(failures=10)
    audit = AuditEmitter(repo, max_attempts=2, backoff_base=0, backoff_jitter=0)

    with caplog.at_level(logging.ERROR):
        audit.log("sla.retired", "sla_tracking", "t-1")
        await audit.drain()

    assert repo.calls == 2
    assert audit.dropped == 1
    assert await repo.list_audit_events() == []
    assert "Dropping audit event sla.retired" in caplog.text


@pytest.mark.asyncio
async def test_disabled_emitter_records_nothing():
    repo = InMemoryEngineRepository()
    audit = AuditEmitter(repo, enabled=False)

    assert audit.log("workflow.registered", "workflow", "wf-1") is None
    await audit.drain()
    assert await repo.list_audit_events() == []


def test_log_without_running_loop_drops():
    audit = AuditEmitter(InMemoryEngineRepository())

    assert audit.log("workflow.registered", "workflow", "wf-1") is None
    assert audit.dropped == 1


@pytest.mark.asyncio
async def test_events_are_stamped_from_injected_clock():
    repo = InMemoryEngineRepository()
    audit = AuditEmitter(repo, backoff_base=0, backoff_jitter=0, clock=lambda: MONDAY_9)

    audit.log("sla.retired", "sla_tracking", "row-1", workflow_id="wf-1")
    await audit.drain()

    (stored,) = await repo.list_audit_events("wf-1")
    assert stored.created_at == MONDAY_9


@pytest.mark.asyncio
async def test_engine_audit_follows_engine_clock(engine, clock):
    clock.advance(hours=1)
    await engine.register_workflow("wf-1", "W")
    await engine.handle_event(event("step_completed", "wf-1", "A", "a-1", clock.now))
    await engine.drain()

    events = await engine.repository.list_audit_events("wf-1")
    assert events
    assert {e.created_at for e in events} == {clock.now}
