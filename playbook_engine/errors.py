"""Exception hierarchy for the playbook engine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class PlaybookEngineError(Exception):
    """Base class for engine errors.

    Carries the tenancy scope and the execution or resource involved so that
    callers and log lines get enough context to act on the failure.
    """

    def __init__(
        self,
        message: str,
        organization_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.organization_id = organization_id
        self.execution_id = execution_id
        self.resource_id = resource_id

    def __str__(self) -> str:
        context_parts = []
        if self.organization_id:
            context_parts.append(f"organization_id={self.organization_id}")
        if self.execution_id:
            context_parts.append(f"execution_id={self.execution_id}")
        if self.resource_id:
            context_parts.append(f"resource_id={self.resource_id}")
        if context_parts:
            return f"{self.message} ({', '.join(context_parts)})"
        return self.message


class ValidationError(PlaybookEngineError):
    """Malformed or incomplete input. Never retried."""

    def __init__(
        self,
        message: str,
        errors: Optional[List[Dict[str, Any]]] = None,
        **context: Any,
    ) -> None:
        super().__init__(message, **context)
        self.errors = errors or []


class DefinitionError(ValidationError):
    """A published definition cannot be executed as written."""


class NotFoundError(PlaybookEngineError):
    """Unknown instance, task, timer, effect or definition."""

    def __init__(self, resource_type: str, resource_id: str, **context: Any) -> None:
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            resource_id=resource_id,
            **context,
        )
        self.resource_type = resource_type


class InvalidStateTransition(PlaybookEngineError):
    """Operation is illegal in the current state."""

    def __init__(
        self,
        operation: str,
        current_status: str,
        message: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message or f"Cannot {operation} while in state '{current_status}'",
            **context,
        )
        self.operation = operation
        self.current_status = current_status


class DuplicateExecutionError(PlaybookEngineError):
    """An identical start request is already running."""

    def __init__(self, existing_execution_id: str, **context: Any) -> None:
        super().__init__(
            f"Identical execution already in progress: {existing_execution_id}",
            execution_id=existing_execution_id,
            **context,
        )
        self.existing_execution_id = existing_execution_id


class PermissionDenied(PlaybookEngineError):
    """The authorization adapter refused the operation."""

    def __init__(self, actor: str, action: str, resource: str, **context: Any) -> None:
        super().__init__(
            f"Actor '{actor}' may not perform '{action}' on '{resource}'",
            resource_id=resource,
            **context,
        )
        self.actor = actor
        self.action = action


class EffectExecutionError(PlaybookEngineError):
    """An automated step's action failed."""

    def __init__(self, message: str, retryable: bool = True, **context: Any) -> None:
        super().__init__(message, **context)
        self.retryable = retryable


class ConcurrentModificationError(PlaybookEngineError):
    """A version-checked write lost a race."""

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            f"{resource_type} '{resource_id}' was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            resource_id=resource_id,
            **context,
        )
        self.resource_type = resource_type
        self.expected_version = expected_version
        self.actual_version = actual_version


class TimerClaimExpiredError(PlaybookEngineError):
    """A worker's timer claim lapsed before it could mark the timer fired."""

    def __init__(self, timer_id: str, worker_id: str, **context: Any) -> None:
        super().__init__(
            f"Claim on timer '{timer_id}' by worker '{worker_id}' has expired",
            resource_id=timer_id,
            **context,
        )
        self.timer_id = timer_id
        self.worker_id = worker_id
