"""Framework error definitions."""

import hashlib
from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Transient, retry immediately
    MEDIUM = "medium"     # Retry with backoff
    HIGH = "high"         # Step or run cannot proceed
    CRITICAL = "critical" # Engine-level fault


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    TRANSIENT = "transient"       # Network, flaky target - will likely resolve
    PERMANENT = "permanent"       # Bad definition, missing handler - won't resolve
    RESOURCE = "resource"         # Timeouts, budgets exhausted
    EXTERNAL = "external"         # Third-party service issue
    VALIDATION = "validation"     # Input/output validation failure
    STORAGE = "storage"           # State store unavailable


class FrameworkError(Exception):
    """Base exception for all framework errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def fingerprint(self) -> str:
        """Generate error fingerprint for deduplication."""
        components = [
            self.__class__.__name__,
            self.category.value,
            str(self.context.get("workflow_id", "")),
            str(self.context.get("step_id", "")),
            str(self.context.get("action", "")),
        ]
        return hashlib.sha256(":".join(components).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
            "fingerprint": self.fingerprint(),
        }


class ConfigError(FrameworkError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class ScheduleError(ConfigError):
    """Invalid cron schedule expression."""

    def __init__(self, message: str, expression: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.context["expression"] = expression


class ValidationError(FrameworkError):
    """Step parameters rejected by a handler. Never retried."""

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        field: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)
        self.context["action"] = action
        self.context["field"] = field


class ExecutionError(FrameworkError):
    """Handler failure, retried per the step's retry policy unless permanent."""

    def __init__(
        self,
        message: str,
        action: Optional[str] = None,
        permanent: bool = False,
        **kwargs
    ):
        if permanent:
            kwargs.setdefault("category", ErrorCategory.PERMANENT)
            kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("retryable", not permanent)
        super().__init__(message, **kwargs)
        self.context.setdefault("action", action)


class RunTimeoutError(FrameworkError):
    """Run-level time budget exceeded; remaining steps are aborted."""

    def __init__(self, message: str, budget_seconds: Optional[float] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.RESOURCE)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["budget_seconds"] = budget_seconds


class RegistryError(FrameworkError):
    """Action registry misuse."""

    def __init__(self, message: str, action_type: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["action"] = action_type


class UnknownActionError(RegistryError):
    """No handler registered for an action type."""


class DuplicateActionError(RegistryError):
    """A handler is already registered for the action type."""


class RegistryFrozenError(RegistryError):
    """Registration attempted after initialization finished."""


class StateStoreError(FrameworkError):
    """State store unavailable or rejected a write."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("category", ErrorCategory.STORAGE)
        super().__init__(message, **kwargs)


class WorkflowNotFoundError(StateStoreError):
    """Workflow id not present in the store."""

    def __init__(self, workflow_id: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("retryable", False)
        super().__init__(f"Workflow not found: {workflow_id}", **kwargs)
        self.context["workflow_id"] = workflow_id


class WorkflowInUseError(StateStoreError):
    """Workflow is referenced by run history and cannot be deleted."""

    def __init__(self, workflow_id: str, run_count: int = 0, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("retryable", False)
        super().__init__(
            f"Workflow {workflow_id} is referenced by {run_count} run(s)",
            **kwargs
        )
        self.context["workflow_id"] = workflow_id
        self.context["run_count"] = run_count
