"""Workflow, run and step result models."""

import fnmatch
import hashlib
import json
import os
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class RunStatus(Enum):
    """Run lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)


class StepStatus(Enum):
    """Final status of a single step."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunTrigger(Enum):
    """What started a run."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WATCH = "watch"


@dataclass(frozen=True)
class RetryPolicy:
    """Per-step retry policy: attempt ceiling and exponential backoff shape."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    exponential_base: float = 2.0
    jitter: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("backoff delays must be >= 0")

    @classmethod
    def from_dict(
        cls,
        data: Optional[dict[str, Any]],
        defaults: Optional["RetryPolicy"] = None,
    ) -> "RetryPolicy":
        """Build a policy, filling missing fields from defaults.

        An integer is accepted as shorthand for ``max_attempts``.
        """
        base = defaults or cls()
        if data is None:
            return base
        if isinstance(data, int):
            return replace(base, max_attempts=data)
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return replace(base, **known)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "base_delay_seconds": self.base_delay_seconds,
            "max_delay_seconds": self.max_delay_seconds,
            "exponential_base": self.exponential_base,
            "jitter": self.jitter,
        }


@dataclass(frozen=True)
class Step:
    """A single action invocation within a workflow."""
    id: str
    action: str
    params: dict[str, Any] = field(default_factory=dict)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    continue_on_error: bool = False
    timeout_seconds: Optional[float] = None

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        index: int,
        retry_defaults: Optional[RetryPolicy] = None,
    ) -> "Step":
        return cls(
            id=data.get("id") or f"step_{index}",
            action=data["action"],
            params=dict(data.get("params") or {}),
            retry=RetryPolicy.from_dict(data.get("retry"), retry_defaults),
            continue_on_error=bool(data.get("continue_on_error", False)),
            timeout_seconds=data.get("timeout_seconds"),
        )

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "action": self.action,
            "params": self.params,
            "retry": self.retry.to_dict(),
            "continue_on_error": self.continue_on_error,
        }
        if self.timeout_seconds is not None:
            data["timeout_seconds"] = self.timeout_seconds
        return data


WATCH_EVENTS = ("created", "modified", "deleted", "renamed")


@dataclass(frozen=True)
class WatchTrigger:
    """Filesystem paths whose changes start a workflow run."""
    paths: tuple[str, ...]
    patterns: tuple[str, ...] = ()
    events: tuple[str, ...] = ("created", "modified")
    recursive: bool = True

    def __post_init__(self):
        for name in ("paths", "patterns", "events"):
            value = getattr(self, name)
            if isinstance(value, str):
                value = (value,)
            object.__setattr__(self, name, tuple(value))
        if not self.paths:
            raise ValueError("watch needs at least one path")
        unknown = [e for e in self.events if e not in WATCH_EVENTS]
        if unknown:
            raise ValueError(f"Unknown watch events: {', '.join(unknown)}")

    def matches(self, event_type: str, path: str, dest_path: Optional[str] = None) -> bool:
        """Event type filter, then glob on the file name. Renames match on the new name."""
        if event_type not in self.events:
            return False
        if not self.patterns:
            return True
        filename = os.path.basename(dest_path if event_type == "renamed" and dest_path else path)
        return any(fnmatch.fnmatch(filename, pattern) for pattern in self.patterns)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WatchTrigger":
        paths = data.get("paths") or ()
        return cls(
            paths=paths,
            patterns=data.get("patterns") or (),
            events=data.get("events") or ("created", "modified"),
            recursive=bool(data.get("recursive", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "paths": list(self.paths),
            "patterns": list(self.patterns),
            "events": list(self.events),
            "recursive": self.recursive,
        }


@dataclass(frozen=True)
class Workflow:
    """
    A named, ordered definition of automation steps plus its triggers.

    Workflows are immutable values. Edits go through the state store,
    which assigns a new version whenever the content changes.
    """
    id: str
    name: str
    steps: tuple[Step, ...] = ()
    schedule: Optional[str] = None
    description: str = ""
    enabled: bool = True
    parameters: dict[str, Any] = field(default_factory=dict)
    watch: Optional[WatchTrigger] = None
    version: int = 1

    def __post_init__(self):
        # Accept lists from callers; step order is fixed from here on
        if not isinstance(self.steps, tuple):
            object.__setattr__(self, "steps", tuple(self.steps))
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id in workflow {self.id}: {step.id}")
            seen.add(step.id)

    @property
    def content_hash(self) -> str:
        """Hash of everything an edit can change (version excluded)."""
        content = {
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "schedule": self.schedule,
            "parameters": self.parameters,
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.watch is not None:
            content["watch"] = self.watch.to_dict()
        encoded = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode()).hexdigest()[:16]

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        retry_defaults: Optional[RetryPolicy] = None,
    ) -> "Workflow":
        name = data["name"]
        return cls(
            id=data.get("id") or name,
            name=name,
            description=data.get("description") or "",
            enabled=data.get("enabled", True),
            schedule=data.get("schedule"),
            parameters=dict(data.get("parameters") or {}),
            watch=WatchTrigger.from_dict(data["watch"]) if data.get("watch") else None,
            steps=tuple(
                Step.from_dict(s, i, retry_defaults)
                for i, s in enumerate(data.get("steps") or [])
            ),
            version=int(data.get("version", 1)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "schedule": self.schedule,
            "parameters": self.parameters,
            "steps": [s.to_dict() for s in self.steps],
            "watch": self.watch.to_dict() if self.watch else None,
            "version": self.version,
        }


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step within a run. Immutable once the step concludes."""
    step_id: str
    position: int
    action: str
    status: StepStatus
    attempts: int
    output: Optional[dict[str, Any]] = None
    error: Optional[dict[str, Any]] = None
    started_at: float = 0.0
    ended_at: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatus.SUCCEEDED

    @property
    def retried(self) -> bool:
        return self.attempts > 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "position": self.position,
            "action": self.action,
            "status": self.status.value,
            "attempts": self.attempts,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
        }


@dataclass
class Run:
    """One execution instance of a workflow."""
    workflow_id: str
    workflow_version: int = 1
    run_id: str = field(default_factory=lambda: f"run_{uuid.uuid4().hex[:12]}")
    status: RunStatus = RunStatus.PENDING
    trigger: RunTrigger = RunTrigger.MANUAL
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    step_results: list[StepResult] = field(default_factory=list)
    error: Optional[dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.ended_at is None:
            return None
        return self.ended_at - self.started_at

    def result_for(self, step_id: str) -> Optional[StepResult]:
        return next((r for r in self.step_results if r.step_id == step_id), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "workflow_version": self.workflow_version,
            "status": self.status.value,
            "trigger": self.trigger.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "step_results": [r.to_dict() for r in self.step_results],
        }
