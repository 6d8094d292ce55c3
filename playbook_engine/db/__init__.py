from .database import Database, normalize_url
from .models import (
    DedupClaimRow,
    DefinitionRow,
    EffectRow,
    InstanceRow,
    SLAAuditRow,
    StatusChangeRow,
    StepInstanceRow,
    TaskReassignmentRow,
    TaskRow,
    TimerRow,
)

__all__ = [
    "Database",
    "normalize_url",
    "DedupClaimRow",
    "DefinitionRow",
    "EffectRow",
    "InstanceRow",
    "SLAAuditRow",
    "StatusChangeRow",
    "StepInstanceRow",
    "TaskReassignmentRow",
    "TaskRow",
    "TimerRow",
]
