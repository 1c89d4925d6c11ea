"""Blueprint registry: static step definitions per workflow kind."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import ValidationError

from ..errors import BlueprintError
from .models import BlueprintDocument, StepBlueprintEntry, WorkflowBlueprint

logger = logging.getLogger(__name__)

DEFAULT_BLUEPRINTS_PATH = Path(__file__).with_name("blueprints.yaml")


class BlueprintRegistry:
    """Read-only lookup of blueprints keyed by ``workflow_kind``.

    Blueprints are registered once at startup. Re-registering a kind is
    rejected so runtime traffic can never alter a loaded definition.
    """

    def __init__(
        self,
        blueprints: Iterable[WorkflowBlueprint] = (),
        default_sla_hours: float = 24.0,
    ) -> None:
        self._blueprints: Dict[str, WorkflowBlueprint] = {}
        self.default_sla_hours = default_sla_hours
        for blueprint in blueprints:
            self.register(blueprint)

    def register(self, blueprint: WorkflowBlueprint) -> None:
        if blueprint.workflow_kind in self._blueprints:
            raise BlueprintError(
                f"Blueprint for '{blueprint.workflow_kind}' already registered"
            )
        for entry in blueprint.steps:
            if not entry.has_valid_sla:
                logger.warning(
                    f"Step {blueprint.workflow_kind}/{entry.step_type} has invalid "
                    f"sla_hours={entry.sla_hours}; using default of {self.default_sla_hours}h"
                )
        self._blueprints[blueprint.workflow_kind] = blueprint

    def get(self, workflow_kind: str) -> Optional[WorkflowBlueprint]:
        return self._blueprints.get(workflow_kind)

    def kinds(self) -> List[str]:
        return sorted(self._blueprints)

    def __contains__(self, workflow_kind: str) -> bool:
        return workflow_kind in self._blueprints

    def __len__(self) -> int:
        return len(self._blueprints)

    def sla_hours(self, entry: StepBlueprintEntry | None) -> float:
        """Effective SLA for a step, falling back to the configured default."""
        if entry is None or not entry.has_valid_sla:
            return self.default_sla_hours
        return float(entry.sla_hours)


def load_blueprints(
    path: Optional[str | Path] = None, default_sla_hours: float = 24.0
) -> BlueprintRegistry:
    """Load blueprints from YAML.

    Args:
        path: Optional blueprint file. Falls back to the definitions bundled
            with the package.
        default_sla_hours: SLA applied to steps without a usable ``sla_hours``.
    """

    blueprint_path = Path(path) if path else DEFAULT_BLUEPRINTS_PATH
    try:
        with open(blueprint_path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise BlueprintError(f"Cannot read blueprints from {blueprint_path}: {e}") from e

    try:
        document = BlueprintDocument(**data)
    except ValidationError as e:
        raise BlueprintError(f"Invalid blueprints in {blueprint_path}: {e}") from e

    registry = BlueprintRegistry(document.blueprints, default_sla_hours=default_sla_hours)
    logger.info(f"Loaded {len(registry)} blueprint(s) from {blueprint_path}")
    return registry


__all__ = [
    "BlueprintDocument",
    "BlueprintRegistry",
    "DEFAULT_BLUEPRINTS_PATH",
    "StepBlueprintEntry",
    "WorkflowBlueprint",
    "load_blueprints",
]
