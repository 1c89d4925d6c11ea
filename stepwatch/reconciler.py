"""Derive per-step state from the blueprint and the execution ledger."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from .enums import StepStatus
from .errors import UnknownWorkflow
from .models import MaterializedStepState
from .persistence import EngineRepository, StepExecutionRecord
from .registry import BlueprintRegistry, WorkflowBlueprint

logger = logging.getLogger(__name__)


def _is_stale_start(
    record: StepExecutionRecord, records: List[StepExecutionRecord]
) -> bool:
    """A start that happened before an already recorded outcome ended."""
    if record.status != StepStatus.IN_PROGRESS:
        return False
    return any(
        other.status.is_outcome
        and other.ended_at is not None
        and record.started_at < other.ended_at
        for other in records
    )


def current_record(
    records: List[StepExecutionRecord],
) -> Optional[StepExecutionRecord]:
    """Pick the record that decides a step's status.

    The highest ``attempt_number`` wins, except that a start delivered after
    the outcome it precedes does not reopen the step.
    """

    ordered = sorted(records, key=lambda r: r.attempt_number, reverse=True)
    for record in ordered:
        if not _is_stale_start(record, records):
            return record
    return ordered[0] if ordered else None


def _state(
    workflow_id: str,
    step_type: str,
    records: List[StepExecutionRecord],
    sequence_order: Optional[int],
    blueprinted: bool,
) -> MaterializedStepState:
    latest = current_record(records)
    if latest is None:
        return MaterializedStepState(
            workflow_id=workflow_id,
            step_type=step_type,
            sequence_order=sequence_order,
            blueprinted=blueprinted,
        )
    return MaterializedStepState(
        workflow_id=workflow_id,
        step_type=step_type,
        current_status=latest.status,
        current_attempt=latest.attempt_number,
        last_transition_at=latest.transition_at,
        sequence_order=sequence_order,
        blueprinted=blueprinted,
        executor_kind=latest.executor_kind,
        executor_id=latest.executor_id,
    )


def reconcile(
    workflow_id: str,
    blueprint: Optional[WorkflowBlueprint],
    records: Iterable[StepExecutionRecord],
) -> List[MaterializedStepState]:
    """Pure merge of a blueprint with the ledger rows of one workflow.

    Blueprint steps come first in ``sequence_order``; ledger steps the
    blueprint does not know follow in name order with ``blueprinted=False``.
    """

    by_step: Dict[str, List[StepExecutionRecord]] = defaultdict(list)
    for record in records:
        by_step[record.step_type].append(record)

    states: List[MaterializedStepState] = []
    known: set[str] = set()
    if blueprint is not None:
        for entry in blueprint.steps:
            known.add(entry.step_type)
            states.append(
                _state(
                    workflow_id,
                    entry.step_type,
                    by_step.get(entry.step_type, []),
                    entry.sequence_order,
                    True,
                )
            )

    for step_type in sorted(set(by_step) - known):
        states.append(_state(workflow_id, step_type, by_step[step_type], None, False))
    return states


class Reconciler:
    """Materialize step state for stored workflows."""

    def __init__(self, repository: EngineRepository, registry: BlueprintRegistry) -> None:
        self._repository = repository
        self._registry = registry

    async def materialize(self, workflow_id: str) -> List[MaterializedStepState]:
        states, _ = await self.materialize_with_records(workflow_id)
        return states

    async def materialize_with_records(
        self, workflow_id: str
    ) -> tuple[List[MaterializedStepState], List[StepExecutionRecord]]:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise UnknownWorkflow(workflow_id)
        blueprint = self._registry.get(workflow.workflow_kind)
        if blueprint is None:
            logger.debug(
                f"Workflow {workflow_id} has no blueprint for kind {workflow.workflow_kind}"
            )
        records = await self._repository.list_executions(workflow_id)
        return reconcile(workflow_id, blueprint, records), records

    async def step_state(self, workflow_id: str, step_type: str) -> MaterializedStepState:
        for state in await self.materialize(workflow_id):
            if state.step_type == step_type:
                return state
        return MaterializedStepState(
            workflow_id=workflow_id, step_type=step_type, blueprinted=False
        )
