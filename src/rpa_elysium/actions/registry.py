"""Action registry and the handler contract."""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import structlog

from ..core.errors import (
    DuplicateActionError,
    RegistryFrozenError,
    UnknownActionError,
    ValidationError,
)


logger = structlog.get_logger()


@dataclass
class ActionContext:
    """What a handler knows about the step it is executing."""
    run_id: str
    workflow_id: str
    step_id: str
    action: str
    attempt: int = 1
    variables: dict[str, Any] = field(default_factory=dict)


class ActionHandler(ABC):
    """
    Capability contract for an action type.

    Concrete automation adapters (browser, desktop, documents, email) are
    external collaborators implementing this interface.
    """

    #: Safe to invoke more than once with the same params
    idempotent: bool = False

    #: Human-readable name, defaults to the class name
    name: str = ""

    def validate(self, params: dict[str, Any]) -> None:
        """Raise ValidationError if params are unusable. Default accepts anything."""
        return None

    @abstractmethod
    async def execute(self, params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        """Perform the action and return its output mapping.

        Failures are raised as ExecutionError; any other exception is
        treated by the engine as a transient ExecutionError.
        """


ActionFunction = Callable[[dict[str, Any], ActionContext], Awaitable[Optional[dict[str, Any]]]]


class FunctionAction(ActionHandler):
    """Adapts a plain async function into an ActionHandler."""

    def __init__(
        self,
        func: ActionFunction,
        name: Optional[str] = None,
        required: Iterable[str] = (),
        validator: Optional[Callable[[dict[str, Any]], None]] = None,
        idempotent: bool = False,
    ):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Action function must be async: {func!r}")
        self._func = func
        self.name = name or func.__name__
        self.required = tuple(required)
        self._validator = validator
        self.idempotent = idempotent

    def validate(self, params: dict[str, Any]) -> None:
        for key in self.required:
            if params.get(key) in (None, ""):
                raise ValidationError(
                    f"Missing required parameter '{key}'",
                    action=self.name,
                    field=key,
                )
        if self._validator:
            self._validator(params)

    async def execute(self, params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        return await self._func(params, context) or {}


class ActionRegistry:
    """
    Maps action-type identifiers to handlers.

    Registration happens during initialization; once ``freeze()`` is
    called the mapping is read-only and can be shared by every worker
    without locking.
    """

    def __init__(self):
        self._handlers: dict[str, ActionHandler] = {}
        self._frozen = False

    def register(
        self,
        action_type: str,
        handler: Union[ActionHandler, ActionFunction],
    ) -> None:
        """Register a handler. Plain async functions are wrapped in FunctionAction."""
        if self._frozen:
            raise RegistryFrozenError(
                f"Registry is frozen; cannot register '{action_type}'",
                action_type=action_type,
            )
        if action_type in self._handlers:
            raise DuplicateActionError(
                f"Action already registered: {action_type}",
                action_type=action_type,
            )
        if not isinstance(handler, ActionHandler):
            handler = FunctionAction(handler, name=action_type)
        self._handlers[action_type] = handler
        logger.debug("action_registered", action=action_type, idempotent=handler.idempotent)

    def register_function(
        self,
        action_type: str,
        func: ActionFunction,
        required: Iterable[str] = (),
        validator: Optional[Callable[[dict[str, Any]], None]] = None,
        idempotent: bool = False,
    ) -> None:
        """Register an async function with optional parameter checks."""
        self.register(
            action_type,
            FunctionAction(
                func,
                name=action_type,
                required=required,
                validator=validator,
                idempotent=idempotent,
            ),
        )

    def resolve(self, action_type: str) -> ActionHandler:
        """Get handler for action type."""
        handler = self._handlers.get(action_type)
        if handler is None:
            raise UnknownActionError(
                f"Unknown action type: {action_type}",
                action_type=action_type,
            )
        return handler

    def freeze(self) -> None:
        """Close registration."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def list_actions(self) -> list[str]:
        """List all registered action types."""
        return sorted(self._handlers.keys())

    def __contains__(self, action_type: str) -> bool:
        return action_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
