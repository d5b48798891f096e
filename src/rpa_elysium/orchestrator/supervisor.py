"""
Supervisor - wires configuration, state store, actions, engine and scheduler.

Owns startup order, workflow authoring, and graceful shutdown.
"""

import time
from enum import Enum
from typing import Any, Optional, Union

import structlog

from ..actions import ActionHandler, ActionRegistry, default_registry
from ..actions.registry import ActionFunction
from ..core.config import ConfigLoader, FrameworkConfig
from ..core.errors import ConfigError
from ..core.models import Run, RunStatus, Workflow
from ..core.state import StateStore
from .cron import CronExpression
from .executor import ExecutionEngine, RunHandle
from .scheduler import Scheduler
from .watcher import Watcher


logger = structlog.get_logger()


class SupervisorState(Enum):
    """Supervisor operational states."""
    INITIALIZING = "initializing"
    RUNNING = "running"
    PAUSED = "paused"      # Scheduler stopped, manual runs still accepted
    DRAINING = "draining"  # Completing current runs, not accepting new
    SHUTDOWN = "shutdown"


class Supervisor:
    """
    Central orchestration supervisor.

    Responsibilities:
    - Load configuration and workflow definitions
    - Own the state store, action registry, engine, scheduler and watcher
    - Keep the schedule and watch triggers in step with workflow edits
    - Handle graceful shutdown
    """

    def __init__(
        self,
        config: Optional[FrameworkConfig] = None,
        config_path: Optional[str] = None,
        registry: Optional[ActionRegistry] = None,
    ):
        self.config_path = config_path
        self.config_loader = ConfigLoader()
        if config is None:
            config = (
                self.config_loader.load_framework_config(config_path)
                if config_path else FrameworkConfig()
            )
        self.config = config

        self._state = SupervisorState.INITIALIZING
        self._start_time: Optional[float] = None
        self._startup_errors: list[str] = []

        self.registry = registry or default_registry()
        self.state_store: Optional[StateStore] = None
        self.engine: Optional[ExecutionEngine] = None
        self.scheduler: Optional[Scheduler] = None
        self.watcher: Optional[Watcher] = None

    @property
    def state(self) -> SupervisorState:
        return self._state

    def register_action(self, action: str, handler: Union[ActionHandler, ActionFunction]) -> None:
        """Register a handler for an action type. Only valid before start()."""
        self.registry.register(action, handler)

    async def start(self) -> None:
        """Initialize and start the supervisor."""
        logger.info("supervisor_starting", config_hash=self.config.config_hash())

        self.state_store = StateStore(self.config.state.db_path)
        await self.state_store.initialize()

        # No registrations after this point; workers read without locks
        self.registry.freeze()

        self.engine = ExecutionEngine(
            self.registry,
            state_store=self.state_store,
            config=self.config.engine,
        )
        self.scheduler = Scheduler(self.engine, config=self.config.scheduler)
        self.watcher = Watcher(self.engine, config=self.config.watcher)

        # Don't crash on bad definitions - start with what loads
        self._startup_errors = await self.reload_workflows(raise_on_error=False)

        self._state = SupervisorState.RUNNING
        self._start_time = time.time()
        if self.config.scheduler.enabled:
            self.scheduler.start()
        if self.config.watcher.enabled:
            self.watcher.start()

        logger.info(
            "supervisor_started",
            actions=len(self.registry),
            scheduled=len(self.scheduler.table),
            watched=len(self.watcher.entries),
            max_concurrent_runs=self.config.engine.max_concurrent_runs,
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Gracefully stop the supervisor."""
        if self._state == SupervisorState.SHUTDOWN:
            return
        if self._state == SupervisorState.INITIALIZING:
            # start() never finished; release whatever it opened
            if self.state_store and self.state_store.is_open:
                await self.state_store.close()
            self._state = SupervisorState.SHUTDOWN
            logger.info("supervisor_stopped", started=False)
            return

        logger.info("supervisor_stopping")
        self._state = SupervisorState.DRAINING

        if self.scheduler and self.scheduler.running:
            await self.scheduler.stop()

        if self.watcher and self.watcher.running:
            await self.watcher.stop()

        if self.engine:
            await self.engine.shutdown(timeout=timeout, cancel_running=True)

        if self.state_store:
            await self.state_store.close()

        self._state = SupervisorState.SHUTDOWN
        logger.info("supervisor_stopped")

    async def pause(self) -> None:
        """Stop scheduled and watch dispatch; manual runs still allowed."""
        if self._state == SupervisorState.RUNNING:
            await self.scheduler.stop()
            await self.watcher.stop()
            self._state = SupervisorState.PAUSED
            logger.info("supervisor_paused")

    async def resume(self) -> None:
        if self._state == SupervisorState.PAUSED:
            if self.config.scheduler.enabled:
                self.scheduler.start()
            if self.config.watcher.enabled:
                self.watcher.start()
            self._state = SupervisorState.RUNNING
            logger.info("supervisor_resumed")

    # ==================== Workflows ====================

    async def reload_workflows(self, raise_on_error: bool = True) -> list[str]:
        """
        Load workflow files into the store and resync the scheduler and watcher.

        Returns list of error messages (empty if successful).
        """
        errors = []
        try:
            workflows = self.config_loader.load_workflows(
                self.config.workflows_directory,
                retry_defaults=self.config.retry.to_policy(),
            )
        except ConfigError as e:
            errors.append(f"Workflows: {e}")
            logger.error("workflows_load_error", error=str(e), path=e.context.get("config_path"))
            if raise_on_error:
                raise
            workflows = []

        for workflow in workflows:
            await self.state_store.save_workflow(workflow)

        enabled = await self.state_store.list_workflows(enabled_only=True)
        errors.extend(self.scheduler.sync(enabled))
        errors.extend(self.watcher.sync(enabled))
        logger.info(
            "workflows_loaded",
            loaded=len(workflows),
            scheduled=len(self.scheduler.table),
            watched=len(self.watcher.entries),
            errors=len(errors),
        )
        return errors

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Create or edit a workflow; the store assigns the version."""
        if workflow.schedule:
            # Reject schedules that never fire before anything is stored
            CronExpression.parse(workflow.schedule).next_after(self.scheduler.clock())
        if workflow.watch and workflow.enabled:
            self.watcher.prepare_paths(workflow.watch)
        stored = await self.state_store.save_workflow(workflow)
        self.scheduler.add(stored)
        self.watcher.add(stored)
        return stored

    async def delete_workflow(self, workflow_id: str) -> None:
        await self.state_store.delete_workflow(workflow_id)
        self.scheduler.remove(workflow_id)
        self.watcher.remove(workflow_id)

    # ==================== Runs ====================

    def _require_accepting(self) -> None:
        if self._state not in (SupervisorState.RUNNING, SupervisorState.PAUSED):
            raise RuntimeError(f"Cannot start runs in state: {self._state.value}")

    async def run_workflow(
        self,
        workflow_id: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> Run:
        """Run a stored workflow now and wait for the result."""
        self._require_accepting()
        workflow = await self.state_store.get_workflow(workflow_id)
        if not workflow.enabled:
            raise ConfigError(f"Workflow is disabled: {workflow_id}")
        return await self.engine.execute(workflow, parameters)

    async def submit_workflow(
        self,
        workflow_id: str,
        parameters: Optional[dict[str, Any]] = None,
    ) -> RunHandle:
        """Start a stored workflow in the background."""
        self._require_accepting()
        workflow = await self.state_store.get_workflow(workflow_id)
        if not workflow.enabled:
            raise ConfigError(f"Workflow is disabled: {workflow_id}")
        return self.engine.submit(workflow, parameters)

    def cancel_run(self, run_id: str) -> bool:
        return self.engine.cancel(run_id) if self.engine else False

    async def get_run(self, run_id: str) -> Optional[Run]:
        """Recorded run, or None if it never finished or doesn't exist."""
        return await self.state_store.get_run(run_id)

    # ==================== Status & Diagnostics ====================

    async def get_status(self) -> dict[str, Any]:
        """Get supervisor status for diagnostics."""
        store_open = self.state_store is not None and self.state_store.is_open
        return {
            "state": self._state.value,
            "uptime_seconds": time.time() - self._start_time if self._start_time else 0,
            "actions": self.registry.list_actions(),
            "active_runs": [r.run_id for r in self.engine.active_runs()] if self.engine else [],
            "schedule": self.scheduler.status() if self.scheduler else [],
            "watches": self.watcher.status() if self.watcher else [],
            "failed_runs": await self.state_store.count_runs(status=RunStatus.FAILED) if store_open else 0,
            "startup_errors": self._startup_errors,
        }
