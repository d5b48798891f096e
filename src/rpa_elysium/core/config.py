"""Configuration loading and validation."""

import hashlib
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field
import jsonschema

from .errors import ConfigError, ScheduleError
from .models import WATCH_EVENTS, RetryPolicy, Workflow


class EngineConfig(BaseModel):
    """Execution engine limits."""
    max_concurrent_runs: int = Field(default=4, ge=1, le=256)
    run_timeout_seconds: float = Field(default=3600.0, gt=0)
    default_step_timeout_seconds: Optional[float] = Field(default=None, gt=0)


class RetryConfig(BaseModel):
    """Default retry policy for steps that don't declare one."""
    max_attempts: int = Field(default=3, ge=1, le=100)
    base_delay_seconds: float = Field(default=1.0, ge=0.0)
    max_delay_seconds: float = Field(default=300.0, ge=0.0)
    exponential_base: float = Field(default=2.0, ge=1.0, le=10.0)
    jitter: bool = Field(default=True)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.model_dump())


class SchedulerConfig(BaseModel):
    """Cron scheduler settings."""
    enabled: bool = Field(default=True)
    tick_interval_seconds: float = Field(default=30.0, gt=0)


class WatcherConfig(BaseModel):
    """Filesystem watch triggers."""
    enabled: bool = Field(default=True)
    debounce_seconds: float = Field(default=1.0, ge=0.0)
    create_missing_paths: bool = Field(default=True)


class StateConfig(BaseModel):
    """State store location."""
    db_path: str = Field(default="./data/state.db")


class HealthConfig(BaseModel):
    """Health/status HTTP server."""
    enabled: bool = Field(default=True)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)


class FrameworkConfig(BaseModel):
    """Main framework configuration."""
    name: str = Field(default="rpa-elysium")
    version: str = Field(default="0.1.0")

    engine: EngineConfig = Field(default_factory=EngineConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Paths
    workflows_directory: str = Field(default="./config/workflows")

    def config_hash(self) -> str:
        """Generate hash of config for change detection."""
        return hashlib.sha256(
            self.model_dump_json().encode()
        ).hexdigest()[:16]


# JSON Schema for a workflow definition document
WORKFLOW_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name", "steps"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "description": {"type": "string"},
        "enabled": {"type": "boolean"},
        "schedule": {"type": ["string", "null"]},
        "parameters": {"type": "object"},
        "watch": {
            "type": ["object", "null"],
            "required": ["paths"],
            "properties": {
                "paths": {
                    "oneOf": [
                        {"type": "string", "minLength": 1},
                        {"type": "array", "minItems": 1, "items": {"type": "string", "minLength": 1}},
                    ]
                },
                "patterns": {"type": "array", "items": {"type": "string"}},
                "events": {
                    "type": "array",
                    "minItems": 1,
                    "items": {"enum": list(WATCH_EVENTS)},
                },
                "recursive": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "steps": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["action"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "action": {"type": "string", "minLength": 1},
                    "params": {"type": "object"},
                    "continue_on_error": {"type": "boolean"},
                    "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
                    "retry": {
                        "oneOf": [
                            {"type": "integer", "minimum": 1},
                            {
                                "type": "object",
                                "properties": {
                                    "max_attempts": {"type": "integer", "minimum": 1},
                                    "base_delay_seconds": {"type": "number", "minimum": 0},
                                    "max_delay_seconds": {"type": "number", "minimum": 0},
                                    "exponential_base": {"type": "number", "minimum": 1},
                                    "jitter": {"type": "boolean"},
                                },
                                "additionalProperties": False,
                            },
                        ]
                    },
                },
            },
        },
    },
}


class ConfigLoader:
    """Loads and validates YAML/JSON configurations and workflow documents."""

    def __init__(self, config_dir: str = "./config"):
        self.config_dir = Path(config_dir)

    def load_framework_config(self, path: Optional[str] = None) -> FrameworkConfig:
        """Load main framework configuration."""
        if path is None:
            path = self.config_dir / "framework.yaml"
        else:
            path = Path(path)

        data = self._load_file(path)
        try:
            return FrameworkConfig(**data)
        except Exception as e:
            raise ConfigError(f"Invalid framework config: {e}", config_path=str(path))

    def parse_workflow(
        self,
        data: dict[str, Any],
        retry_defaults: Optional[RetryPolicy] = None,
        source: Optional[str] = None,
    ) -> Workflow:
        """Validate a workflow document and build the Workflow."""
        try:
            jsonschema.validate(instance=data, schema=WORKFLOW_SCHEMA)
        except jsonschema.ValidationError as e:
            location = "/".join(str(p) for p in e.absolute_path) or "<root>"
            raise ConfigError(
                f"Invalid workflow definition at {location}: {e.message}",
                config_path=source,
            )

        try:
            workflow = Workflow.from_dict(data, retry_defaults)
        except ValueError as e:
            raise ConfigError(f"Invalid workflow definition: {e}", config_path=source)

        if workflow.schedule:
            # Local import: cron lives with the scheduler
            from ..orchestrator.cron import CronExpression
            try:
                CronExpression.parse(workflow.schedule).next_after(datetime.now())
            except ScheduleError as e:
                e.context["config_path"] = source
                raise

        return workflow

    def load_workflow_file(
        self,
        path: str,
        retry_defaults: Optional[RetryPolicy] = None,
    ) -> list[Workflow]:
        """Load one or more workflows from a single file."""
        path = Path(path)
        data = self._load_file(path)

        # Support both a single workflow and a list under "workflows"
        documents = data.get("workflows", [data] if "name" in data else [])
        if not documents:
            raise ConfigError("No workflow definitions found", config_path=str(path))

        return [
            self.parse_workflow(doc, retry_defaults, source=str(path))
            for doc in documents
        ]

    def load_workflows(
        self,
        directory: Optional[str] = None,
        retry_defaults: Optional[RetryPolicy] = None,
    ) -> list[Workflow]:
        """Load all workflow definitions from directory."""
        if directory is None:
            directory = self.config_dir / "workflows"
        else:
            directory = Path(directory)

        workflows: list[Workflow] = []
        if not directory.exists():
            return workflows

        files = sorted(
            list(directory.glob("**/*.yaml"))
            + list(directory.glob("**/*.yml"))
            + list(directory.glob("**/*.json"))
        )
        seen: dict[str, Path] = {}
        for file_path in files:
            for workflow in self.load_workflow_file(str(file_path), retry_defaults):
                if workflow.id in seen:
                    raise ConfigError(
                        f"Duplicate workflow id '{workflow.id}' (also in {seen[workflow.id]})",
                        config_path=str(file_path),
                    )
                seen[workflow.id] = file_path
                workflows.append(workflow)

        return workflows

    def _load_file(self, path: Path) -> dict[str, Any]:
        """Load YAML or JSON file."""
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", config_path=str(path))

        try:
            content = path.read_text()

            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content) or {}
            elif path.suffix == ".json":
                data = json.loads(content)
            else:
                raise ConfigError(
                    f"Unsupported config format: {path.suffix}",
                    config_path=str(path)
                )
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML: {e}", config_path=str(path))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}", config_path=str(path))

        if not isinstance(data, dict):
            raise ConfigError("Top-level document must be a mapping", config_path=str(path))
        return data


def example_workflow() -> dict[str, Any]:
    """A minimal workflow document used by ``rpa-elysium init``."""
    return {
        "id": "backup-reports",
        "name": "Backup reports",
        "description": "Archive the reports directory every night",
        "schedule": "0 2 * * *",
        "parameters": {
            "source": "/tmp/reports",
            "destination": "/tmp/backup",
        },
        "steps": [
            {
                "id": "announce",
                "action": "log",
                "params": {"message": "Backing up {{params.source}}"},
            },
            {
                "id": "archive",
                "action": "file.archive",
                "params": {
                    "source": "{{params.source}}",
                    "destination": "{{params.destination}}",
                    "format": "tar.gz",
                },
                "retry": {"max_attempts": 3, "base_delay_seconds": 5},
            },
            {
                "id": "report",
                "action": "log",
                "params": {"message": "Created {{steps.archive.output.archive}}"},
                "continue_on_error": True,
            },
        ],
    }
