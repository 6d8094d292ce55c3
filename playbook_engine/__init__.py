"""Playbook engine: durable execution of multi-step business processes."""

from .actions import ActionRegistry, ActionRequest, ActionResult
from .config import EngineConfig, load_config
from .definitions import DefinitionStore, load_definitions_file
from .engine import ExecutionEngine
from .models import (
    Assignee,
    ExecutionStatus,
    PlaybookDefinition,
    StepDefinition,
    StepType,
)
from .operations import OperationRegistry
from .persistence import get_repository
from .scheduler import Scheduler

__version__ = "0.1.0"
__all__ = [
    "ActionRegistry",
    "ActionRequest",
    "ActionResult",
    "Assignee",
    "DefinitionStore",
    "EngineConfig",
    "ExecutionEngine",
    "ExecutionStatus",
    "OperationRegistry",
    "PlaybookDefinition",
    "Scheduler",
    "StepDefinition",
    "StepType",
    "get_repository",
    "load_config",
    "load_definitions_file",
]
