"""stepwatch: step ledger, business-hours SLA tracking and interrupt handling for orchestrated workflows."""

from .calendar import BusinessCalendar
from .contracts import EventType, OrchestratorEvent, StepEventData
from .engine import WorkflowEngine
from .persistence import get_repository
from .registry import BlueprintRegistry, load_blueprints
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "BlueprintRegistry",
    "BusinessCalendar",
    "EventType",
    "OrchestratorEvent",
    "StepEventData",
    "WorkflowEngine",
    "get_repository",
    "get_transport",
    "load_blueprints",
]
