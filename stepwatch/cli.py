"""Command line interface for the stepwatch engine."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer

from stepwatch import WorkflowEngine, get_repository, get_transport
from stepwatch.config import load_config
from stepwatch.consume import EventConsumer
from stepwatch.errors import StepwatchError
from stepwatch.registry import load_blueprints
from stepwatch.utils.timeutil import parse_timestamp

T = TypeVar("T")

app = typer.Typer(help="CLI for the stepwatch workflow SLA engine")

# Command groups
events_app = typer.Typer(help="Ingest and consume orchestrator events")
workflow_app = typer.Typer(help="Inspect and register workflows")
sla_app = typer.Typer(help="SLA tracking commands")
interrupt_app = typer.Typer(help="Act on interrupted steps")
notifications_app = typer.Typer(help="Read operator notifications")
blueprint_app = typer.Typer(help="Inspect loaded blueprints")

app.add_typer(events_app, name="events")
app.add_typer(workflow_app, name="workflow")
app.add_typer(sla_app, name="sla")
app.add_typer(interrupt_app, name="interrupt")
app.add_typer(notifications_app, name="notifications")
app.add_typer(blueprint_app, name="blueprint")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Python logging level"),
) -> None:
    """stepwatch CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> WorkflowEngine:
    return WorkflowEngine.from_config(load_config(), repository=get_repository())


def _run(action: Callable[[WorkflowEngine], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh engine, waiting for side effects."""

    async def runner() -> T:
        engine = _engine()
        try:
            return await action(engine)
        finally:
            await engine.drain()

    try:
        return asyncio.run(runner())
    except StepwatchError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _load_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        typer.secho(f"Cannot read {path}: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# events
@events_app.command("ingest")
def events_ingest(path: Path) -> None:
    """
    Ingest orchestrator events from a JSON file.

    The file holds one ``{eventType, data}`` envelope or a list of them.
    Duplicates are reported and skipped; rejected events make the command
    exit with status 1 after the remaining events were processed.

    Example:
        stepwatch events ingest ./events.json
        # Output: recorded  wf-1/identify_lender_contact attempt 1 (COMPLETED)
    """
    payload = _load_json(path)
    events = payload if isinstance(payload, list) else [payload]

    async def ingest(engine: WorkflowEngine) -> int:
        rejected = 0
        for item in events:
            try:
                result = await engine.handle_event(item)
            except StepwatchError as e:
                rejected += 1
                typer.secho(f"rejected  {e}", fg=typer.colors.RED)
                continue
            record = result.record
            label = "duplicate" if result.duplicate else "recorded "
            typer.echo(
                f"{label} {record.workflow_id}/{record.step_type} "
                f"attempt {record.attempt_number} ({record.status.value})"
            )
        return rejected

    if _run(ingest):
        raise typer.Exit(code=1)


@events_app.command("publish")
def events_publish(path: Path, topic: Optional[str] = None) -> None:
    """Publish events from a JSON file onto the configured transport."""
    payload = _load_json(path)
    events = payload if isinstance(payload, list) else [payload]
    config = load_config()
    transport = get_transport(config=config)

    async def publish() -> None:
        await transport.connect()
        try:
            for item in events:
                await transport.publish(topic or config.transport.topic, json.dumps(item))
        finally:
            await transport.disconnect()

    asyncio.run(publish())
    typer.echo(f"Published {len(events)} event(s)")


@events_app.command("consume")
def events_consume(
    lifespan: Optional[float] = None,
    sweep: bool = typer.Option(True, help="Run the periodic SLA sweeper alongside"),
) -> None:
    """
    Consume orchestrator events from the configured transport.

    Example:
        stepwatch events consume --lifespan 300
    """
    transport = get_transport()

    async def consume(engine: WorkflowEngine) -> EventConsumer:
        consumer = EventConsumer(transport, engine)
        stop = asyncio.Event()
        sweeper = asyncio.create_task(engine.run_sweeper(stop=stop)) if sweep else None
        try:
            await consumer.start(lifespan=lifespan)
        finally:
            stop.set()
            if sweeper is not None:
                await sweeper
            await transport.disconnect()
        return consumer

    consumer = _run(consume)
    typer.echo(
        f"Processed {consumer.processed}, rejected {consumer.rejected}, failed {consumer.failed}"
    )


# ----------------------------------------------------------------------
# workflow
@workflow_app.command("register")
def workflow_register(workflow_id: str, workflow_kind: str) -> None:
    """Register a workflow instance against a blueprint kind."""
    workflow = _run(lambda engine: engine.register_workflow(workflow_id, workflow_kind))
    typer.echo(f"Workflow {workflow.workflow_id}: {workflow.workflow_kind}")


@workflow_app.command("list")
def workflow_list() -> None:
    """List registered workflows."""
    workflows = _run(lambda engine: engine.repository.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.workflow_id}\t{wf.workflow_kind}\t{wf.created_at.isoformat()}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show step states, open SLA clocks and open interrupts for a workflow.

    Example:
        stepwatch workflow show wf-1
        # Output: Workflow wf-1 (PAYOFF_REQUEST) 1/4 steps completed
        #         - identify_lender_contact: COMPLETED (attempt 1)
        #         - research_lender_contact: IN_PROGRESS (attempt 1) SLA YELLOW due ...
    """
    summary = _run(lambda engine: engine.workflow_summary(workflow_id))
    workflow = summary["workflow"]
    typer.echo(
        f"Workflow {workflow.workflow_id} ({workflow.workflow_kind}) "
        f"{summary['completed_steps']}/{summary['total_steps']} steps completed"
    )
    sla_by_step = {row.step_type: row for row in summary["open_sla"]}
    for state in summary["steps"]:
        line = f"- {state.step_type}: {state.current_status.value}"
        if state.current_attempt:
            line += f" (attempt {state.current_attempt})"
        if not state.blueprinted:
            line += " [unblueprinted]"
        row = sla_by_step.get(state.step_type)
        if row is not None:
            line += f" SLA {row.risk_level.value} due {row.due_at.isoformat()}"
        typer.echo(line)
    for case in summary["open_interrupts"]:
        typer.echo(
            f"! interrupt {case.id} on {case.step_type}: {case.reason or '(no reason)'}"
            + (f" assigned to {case.assigned_to}" if case.assigned_to else "")
            + (f" escalated to {case.escalated_to}" if case.escalated_to else "")
        )


# ----------------------------------------------------------------------
# sla
@sla_app.command("sweep")
def sla_sweep(
    at: Optional[str] = typer.Option(None, help="Evaluate as of this ISO timestamp"),
) -> None:
    """Evaluate every active SLA clock once."""
    now: Optional[datetime] = parse_timestamp(at) if at else None
    results = _run(lambda engine: engine.sweep(now))
    for result in results:
        row = result.tracking
        marker = " ALERT" if result.alert_raised else ""
        typer.echo(
            f"{row.workflow_id}/{row.step_type}\t{row.risk_level.value}\t"
            f"breached {row.breached_minutes}m{marker}"
        )
    typer.echo(f"Evaluated {len(results)} clock(s)")


@sla_app.command("list")
def sla_list(workflow_id: Optional[str] = None, all_rows: bool = False) -> None:
    """List SLA tracking rows (active only unless --all-rows)."""
    rows = _run(
        lambda engine: engine.repository.list_sla_tracking(
            workflow_id, active_only=not all_rows
        )
    )
    if not rows:
        typer.echo("No SLA clocks found")
        return
    for row in rows:
        typer.echo(
            f"{row.workflow_id}/{row.step_type}\t{row.status.value}\t"
            f"{row.risk_level.value}\tdue {row.due_at.isoformat()}"
        )


# ----------------------------------------------------------------------
# interrupt
@interrupt_app.command("list")
def interrupt_list(workflow_id: Optional[str] = None) -> None:
    """List open interrupt cases."""
    cases = _run(lambda engine: engine.repository.list_interrupt_cases(workflow_id))
    if not cases:
        typer.echo("No open interrupts")
        return
    for case in cases:
        typer.echo(f"{case.id}\t{case.workflow_id}/{case.step_type}\t{case.reason}")


@interrupt_app.command("retry")
def interrupt_retry(workflow_id: str, step_type: str, actor: str = typer.Option(...)) -> None:
    """Start a new attempt of an interrupted step."""
    state = _run(lambda engine: engine.retry(workflow_id, step_type, actor))
    typer.echo(f"{step_type}: {state.current_status.value} (attempt {state.current_attempt})")


@interrupt_app.command("resolve")
def interrupt_resolve(
    workflow_id: str,
    step_type: str,
    actor: str = typer.Option(...),
    output: Optional[str] = typer.Option(None, help="JSON object recorded as step output"),
) -> None:
    """Complete an interrupted step manually."""
    data = json.loads(output) if output else None
    state = _run(lambda engine: engine.resolve(workflow_id, step_type, actor, data))
    typer.echo(f"{step_type}: {state.current_status.value} by {state.executor_id}")


@interrupt_app.command("fail")
def interrupt_fail(
    workflow_id: str,
    step_type: str,
    actor: str = typer.Option(...),
    error: Optional[str] = None,
) -> None:
    """Mark an interrupted step as failed."""
    state = _run(lambda engine: engine.fail(workflow_id, step_type, actor, error))
    typer.echo(f"{step_type}: {state.current_status.value} by {state.executor_id}")


@interrupt_app.command("escalate")
def interrupt_escalate(
    workflow_id: str, step_type: str, to: str, actor: str = typer.Option(...)
) -> None:
    """Escalate an interrupted step to another user."""
    case = _run(lambda engine: engine.escalate(workflow_id, step_type, to, actor))
    typer.echo(f"Case {case.id} escalated to {case.escalated_to}")


@interrupt_app.command("assign")
def interrupt_assign(
    workflow_id: str, step_type: str, assignee: str, actor: str = typer.Option(...)
) -> None:
    """Assign an interrupted step to an operator."""
    case = _run(lambda engine: engine.assign(workflow_id, step_type, assignee, actor))
    typer.echo(f"Case {case.id} assigned to {case.assigned_to}")


# ----------------------------------------------------------------------
# notifications
@notifications_app.command("list")
def notifications_list(recipient_id: str, unread: bool = False) -> None:
    """List notifications for a recipient, newest first."""
    rows = _run(lambda engine: engine.notifications_for(recipient_id, unread_only=unread))
    if not rows:
        typer.echo("No notifications")
        return
    for n in rows:
        flag = " " if n.read_at else "*"
        typer.echo(f"{flag} {n.id}\t{n.kind.value}\t{n.priority.value}\t{n.title}")


@notifications_app.command("read")
def notifications_read(notification_id: str) -> None:
    """Mark a notification as read."""
    changed = _run(lambda engine: engine.notifications.mark_read(notification_id))
    typer.echo("Marked as read" if changed else "Already read or not found")


# ----------------------------------------------------------------------
# blueprint
@blueprint_app.command("list")
def blueprint_list(kind: Optional[str] = None) -> None:
    """List loaded blueprints and their steps."""
    config = load_config()
    try:
        registry = load_blueprints(
            config.blueprints_path, default_sla_hours=config.sla.default_sla_hours
        )
    except StepwatchError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    kinds: List[str] = [kind] if kind else registry.kinds()
    for name in kinds:
        blueprint = registry.get(name)
        if blueprint is None:
            typer.secho(f"Unknown workflow kind: {name}", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        typer.echo(f"{blueprint.workflow_kind} v{blueprint.version}")
        for entry in blueprint.steps:
            typer.echo(
                f"  {entry.sequence_order}. {entry.step_type} "
                f"[{entry.required_executor_kind.value}] {registry.sla_hours(entry):g}h"
            )


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
