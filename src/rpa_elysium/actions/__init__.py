"""Action registry and built-in handlers."""

from .registry import ActionContext, ActionHandler, ActionRegistry, FunctionAction
from .builtin import register_builtin_actions
from .filesystem import register_filesystem_actions

__all__ = [
    "ActionContext",
    "ActionHandler",
    "ActionRegistry",
    "FunctionAction",
    "register_builtin_actions",
    "register_filesystem_actions",
    "default_registry",
]


def default_registry(freeze: bool = False) -> ActionRegistry:
    """Registry with every built-in action installed."""
    registry = ActionRegistry()
    register_builtin_actions(registry)
    register_filesystem_actions(registry)
    if freeze:
        registry.freeze()
    return registry
