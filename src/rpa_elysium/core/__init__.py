"""Core framework components."""

from .config import ConfigLoader, FrameworkConfig
from .models import (
    RetryPolicy,
    Run,
    RunStatus,
    RunTrigger,
    Step,
    StepResult,
    StepStatus,
    WatchTrigger,
    Workflow,
)
from .state import StateStore
from .errors import (
    FrameworkError,
    ConfigError,
    ScheduleError,
    ValidationError,
    ExecutionError,
    RunTimeoutError,
    RegistryError,
    UnknownActionError,
    DuplicateActionError,
    RegistryFrozenError,
    StateStoreError,
    WorkflowNotFoundError,
    WorkflowInUseError,
)

__all__ = [
    "ConfigLoader",
    "FrameworkConfig",
    "RetryPolicy",
    "Run",
    "RunStatus",
    "RunTrigger",
    "Step",
    "StepResult",
    "StepStatus",
    "WatchTrigger",
    "Workflow",
    "StateStore",
    "FrameworkError",
    "ConfigError",
    "ScheduleError",
    "ValidationError",
    "ExecutionError",
    "RunTimeoutError",
    "RegistryError",
    "UnknownActionError",
    "DuplicateActionError",
    "RegistryFrozenError",
    "StateStoreError",
    "WorkflowNotFoundError",
    "WorkflowInUseError",
]
