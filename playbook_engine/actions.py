"""Action adapters invoked by automated steps."""

from __future__ import annotations

import importlib
import logging
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from .errors import EffectExecutionError

logger = logging.getLogger(__name__)


class ActionRequest(BaseModel):
    """Everything an action needs to perform one attempt."""

    organization_id: str
    execution_id: str
    step_id: str
    step_instance_id: str
    effect_id: str
    action: str
    attempt: int
    parameters: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)


class ActionResult(BaseModel):
    """Outcome of an action attempt.

    ``pending`` means the action was accepted and will report back through
    :meth:`~playbook_engine.engine.ExecutionEngine.report_effect`.
    """

    status: Literal["succeeded", "pending", "failed"] = "succeeded"
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    retryable: bool = True

    @classmethod
    def ok(cls, output: Optional[Dict[str, Any]] = None) -> "ActionResult":
        return cls(status="succeeded", output=output or {})

    @classmethod
    def accepted(cls) -> "ActionResult":
        return cls(status="pending")

    @classmethod
    def failure(cls, error: str, retryable: bool = True) -> "ActionResult":
        return cls(status="failed", error=error, retryable=retryable)


class ActionAdapter(Protocol):
    async def invoke(self, request: ActionRequest) -> ActionResult:
        """Run one attempt of the requested action."""


ActionHandler = Callable[[ActionRequest], Awaitable[Any]]


class ActionRegistry:
    """Routes action names to async handlers.

    A handler may return an :class:`ActionResult`, a dict (taken as the
    output of a successful attempt) or ``None``. Raising
    :class:`EffectExecutionError` reports a failure with its ``retryable``
    flag; any other exception is reported as a retryable failure.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def action(self, name: str) -> Callable[[ActionHandler], ActionHandler]:
        def decorator(handler: ActionHandler) -> ActionHandler:
            self.register(name, handler)
            return handler

        return decorator

    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def invoke(self, request: ActionRequest) -> ActionResult:
        handler = self._handlers.get(request.action)
        if handler is None:
            return ActionResult.failure(
                f"No handler registered for action '{request.action}'", retryable=False
            )
        try:
            result = await handler(request)
        except EffectExecutionError as e:
            return ActionResult.failure(e.message, retryable=e.retryable)
        except Exception as e:
            logger.warning(
                f"Action {request.action} raised {type(e).__name__} "
                f"for execution_id={request.execution_id}: {e}"
            )
            return ActionResult.failure(str(e) or type(e).__name__, retryable=True)

        if isinstance(result, ActionResult):
            return result
        if result is None:
            return ActionResult.ok()
        if isinstance(result, dict):
            return ActionResult.ok(result)
        return ActionResult.ok({"result": result})


def load_actions(reference: str) -> ActionAdapter:
    """Import an action adapter given as ``module:attribute``."""
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Action reference must look like 'module:attribute', got '{reference}'")
    module = importlib.import_module(module_name)
    try:
        adapter = getattr(module, attribute)
    except AttributeError as e:
        raise ValueError(f"Module '{module_name}' has no attribute '{attribute}'") from e
    return adapter() if isinstance(adapter, type) else adapter
