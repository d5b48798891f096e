"""Workflow execution engine with retry, backoff, timeouts and cancellation."""

import asyncio
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

from ..actions.registry import ActionContext, ActionHandler, ActionRegistry
from ..core.config import EngineConfig
from ..core.errors import (
    ErrorCategory,
    ExecutionError,
    FrameworkError,
    RunTimeoutError,
    StateStoreError,
    UnknownActionError,
    ValidationError,
)
from ..core.models import (
    RetryPolicy,
    Run,
    RunStatus,
    RunTrigger,
    Step,
    StepResult,
    StepStatus,
    Workflow,
)
from ..core.state import StateStore


logger = structlog.get_logger()

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")


@dataclass
class RetryState:
    """
    Retry bookkeeping for one step: attempts made and the next backoff delay.

    ``begin_attempt`` is called before each handler invocation and
    ``record_failure`` after each failed one; it returns the delay to wait
    before the next attempt, or None when retrying is over.
    """
    policy: RetryPolicy
    attempt: int = 0
    next_delay: Optional[float] = None
    rng: Callable[[], float] = field(default=random.random, repr=False)

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.policy.max_attempts

    def begin_attempt(self) -> int:
        self.attempt += 1
        self.next_delay = None
        return self.attempt

    def record_failure(self, retryable: bool = True) -> Optional[float]:
        if not retryable or self.exhausted:
            self.next_delay = None
        else:
            self.next_delay = self.backoff(self.attempt)
        return self.next_delay

    def backoff(self, attempt: int) -> float:
        """Exponential backoff with optional jitter (0.5x to 1.5x)."""
        policy = self.policy
        delay = policy.base_delay_seconds * (policy.exponential_base ** (attempt - 1))
        delay = min(delay, policy.max_delay_seconds)
        if policy.jitter:
            delay *= 0.5 + self.rng()
        return delay


@dataclass
class RunHandle:
    """A run submitted for background execution."""
    run: Run
    task: asyncio.Task

    @property
    def run_id(self) -> str:
        return self.run.run_id

    async def wait(self) -> Run:
        return await self.task

    def done(self) -> bool:
        return self.task.done()


@dataclass
class _ActiveRun:
    run: Run
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


class ExecutionEngine:
    """
    Executes workflow runs.

    Steps within a run execute strictly in order; separate runs execute
    concurrently up to ``max_concurrent_runs``. Each step is retried per
    its policy, all attempts share the run's time budget, and a cancelled
    run stops before its next step.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        state_store: Optional[StateStore] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.state = state_store
        self.config = config or EngineConfig()
        self._clock = clock

        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_runs)
        self._active: dict[str, _ActiveRun] = {}
        self._tasks: set[asyncio.Task] = set()
        self._shutdown = False

    # ==================== Public API ====================

    async def execute(
        self,
        workflow: Workflow,
        parameters: Optional[dict[str, Any]] = None,
        trigger: RunTrigger = RunTrigger.MANUAL,
        run_id: Optional[str] = None,
    ) -> Run:
        """Execute a workflow once and return the terminal Run.

        Raises StateStoreError if the finished run cannot be recorded.
        """
        run = self._new_run(workflow, trigger, run_id)
        return await self._run_with_slot(workflow, run, parameters)

    def submit(
        self,
        workflow: Workflow,
        parameters: Optional[dict[str, Any]] = None,
        trigger: RunTrigger = RunTrigger.MANUAL,
        run_id: Optional[str] = None,
    ) -> RunHandle:
        """Start a run in the background and return its handle."""
        run = self._new_run(workflow, trigger, run_id)
        task = asyncio.create_task(
            self._run_with_slot(workflow, run, parameters),
            name=run.run_id,
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return RunHandle(run=run, task=task)

    def cancel(self, run_id: str) -> bool:
        """Request cooperative cancellation. Returns False if the run isn't active."""
        active = self._active.get(run_id)
        if active is None:
            return False
        active.cancel_event.set()
        logger.info("run_cancel_requested", run_id=run_id)
        return True

    def active_runs(self) -> list[Run]:
        return [a.run for a in self._active.values()]

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    async def shutdown(self, timeout: float = 30.0, cancel_running: bool = False) -> None:
        """Stop accepting runs and wait for background runs to finish."""
        self._shutdown = True
        if cancel_running:
            for run_id in list(self._active):
                self.cancel(run_id)
        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=timeout)

    # ==================== Run lifecycle ====================

    def _new_run(self, workflow: Workflow, trigger: RunTrigger, run_id: Optional[str]) -> Run:
        if self._shutdown:
            raise RuntimeError("Execution engine is shutting down")

        run = Run(workflow_id=workflow.id, workflow_version=workflow.version, trigger=trigger)
        if run_id is not None:
            if run_id in self._active:
                raise ValueError(f"Run already active: {run_id}")
            run.run_id = run_id
        self._active[run.run_id] = _ActiveRun(run=run)
        return run

    async def _run_with_slot(
        self,
        workflow: Workflow,
        run: Run,
        parameters: Optional[dict[str, Any]],
    ) -> Run:
        active = self._active[run.run_id]
        try:
            async with self._semaphore:
                if active.cancel_event.is_set():
                    run.status = RunStatus.CANCELLED
                    run.started_at = run.ended_at = time.time()
                    logger.info("run_cancelled_before_start", run_id=run.run_id)
                else:
                    await self._execute_run(workflow, run, parameters, active.cancel_event)
            await self._persist(run)
            return run
        finally:
            self._active.pop(run.run_id, None)

    async def _persist(self, run: Run) -> None:
        if self.state is None:
            return
        try:
            await self.state.record_run(run)
        except StateStoreError as e:
            logger.error(
                "run_persist_failed",
                run_id=run.run_id,
                workflow_id=run.workflow_id,
                error=e.message,
            )
            e.context["run_id"] = run.run_id
            e.context["workflow_id"] = run.workflow_id
            raise

    async def _execute_run(
        self,
        workflow: Workflow,
        run: Run,
        parameters: Optional[dict[str, Any]],
        cancel_event: asyncio.Event,
    ) -> None:
        log = logger.bind(run_id=run.run_id, workflow_id=workflow.id)
        budget = self.config.run_timeout_seconds
        deadline = self._clock() + budget

        params = dict(workflow.parameters)
        if parameters:
            params.update(parameters)
        variables: dict[str, Any] = {
            "params": params,
            "steps": {},
            "workflow": {"id": workflow.id, "name": workflow.name, "version": workflow.version},
            "run": {"id": run.run_id, "trigger": run.trigger.value},
        }

        run.status = RunStatus.RUNNING
        run.started_at = time.time()
        log.info("run_started", steps=len(workflow.steps), trigger=run.trigger.value)

        failed_steps = 0
        for position, step in enumerate(workflow.steps):
            if cancel_event.is_set():
                run.status = RunStatus.CANCELLED
                log.info("run_cancelled", completed_steps=position)
                break

            if self._clock() >= deadline:
                error = RunTimeoutError(
                    f"Run exceeded {budget}s before step {step.id}",
                    budget_seconds=budget,
                    context={"workflow_id": workflow.id, "step_id": step.id},
                )
                run.status = RunStatus.FAILED
                run.error = error.to_dict()
                log.warning("run_timed_out", step_id=step.id, budget_seconds=budget)
                break

            result, timed_out = await self._execute_step(
                workflow, run, step, position, variables, deadline, cancel_event
            )
            run.step_results.append(result)
            variables["steps"][step.id] = {
                "status": result.status.value,
                "attempts": result.attempts,
                "output": result.output or {},
                "error": result.error,
            }

            if result.succeeded:
                continue

            if timed_out:
                run.status = RunStatus.FAILED
                run.error = result.error
                log.warning("run_timed_out", step_id=step.id, budget_seconds=budget)
                break

            failed_steps += 1
            if cancel_event.is_set():
                run.status = RunStatus.CANCELLED
                log.info("run_cancelled", completed_steps=position + 1)
                break
            if not step.continue_on_error:
                run.status = RunStatus.FAILED
                run.error = result.error
                log.warning("run_aborted", step_id=step.id)
                break
        else:
            if failed_steps == 0:
                run.status = RunStatus.SUCCEEDED
            elif failed_steps < len(run.step_results):
                run.status = RunStatus.PARTIALLY_SUCCEEDED
            else:
                run.status = RunStatus.FAILED

        run.ended_at = time.time()
        log.info(
            "run_finished",
            status=run.status.value,
            steps_executed=len(run.step_results),
            duration_seconds=round(run.ended_at - run.started_at, 3),
        )

    # ==================== Steps ====================

    async def _execute_step(
        self,
        workflow: Workflow,
        run: Run,
        step: Step,
        position: int,
        variables: dict[str, Any],
        deadline: float,
        cancel_event: asyncio.Event,
    ) -> tuple[StepResult, bool]:
        """Run one step to completion. Returns the result and whether the run budget ran out."""
        log = logger.bind(run_id=run.run_id, step_id=step.id, action=step.action)
        started_at = time.time()
        error_context = {"workflow_id": workflow.id, "step_id": step.id, "action": step.action}

        def finish(status: StepStatus, attempts: int, output=None, error: Optional[FrameworkError] = None) -> StepResult:
            if error is not None:
                error.context.update(error_context)
            return StepResult(
                step_id=step.id,
                position=position,
                action=step.action,
                status=status,
                attempts=attempts,
                output=output,
                error=error.to_dict() if error is not None else None,
                started_at=started_at,
                ended_at=time.time(),
            )

        try:
            handler = self.registry.resolve(step.action)
        except UnknownActionError as e:
            log.error("step_unknown_action")
            return finish(StepStatus.FAILED, 0, error=e), False

        try:
            params = self._interpolate(step.params, variables)
            handler.validate(params)
        except ValidationError as e:
            log.warning("step_validation_failed", error=e.message)
            return finish(StepStatus.FAILED, 0, error=e), False
        except Exception as e:
            error = ValidationError(f"Parameter validation raised: {e}", action=step.action)
            log.warning("step_validation_failed", error=error.message)
            return finish(StepStatus.FAILED, 0, error=error), False

        retry = RetryState(step.retry)
        step_timeout = step.timeout_seconds or self.config.default_step_timeout_seconds
        last_error: Optional[FrameworkError] = None

        while not retry.exhausted:
            attempt = retry.begin_attempt()
            remaining = deadline - self._clock()
            if remaining <= 0:
                return finish(StepStatus.FAILED, attempt - 1, error=self._run_timeout()), True

            context = ActionContext(
                run_id=run.run_id,
                workflow_id=workflow.id,
                step_id=step.id,
                action=step.action,
                attempt=attempt,
                variables=variables,
            )
            run_limited = step_timeout is None or remaining <= step_timeout
            attempt_timeout = remaining if run_limited else step_timeout

            timer = asyncio.timeout(attempt_timeout)
            try:
                async with timer:
                    output = await self._invoke(handler, params, context)
                log.info("step_succeeded", attempt=attempt)
                return finish(StepStatus.SUCCEEDED, attempt, output=output), False
            except TimeoutError as e:
                if not timer.expired():
                    # Raised by the handler itself, e.g. a socket timeout
                    last_error = ExecutionError(
                        str(e) or type(e).__name__,
                        action=step.action,
                        context={"exception_type": type(e).__name__},
                    )
                elif run_limited:
                    log.warning("step_run_budget_exhausted", attempt=attempt)
                    return finish(StepStatus.FAILED, attempt, error=self._run_timeout()), True
                else:
                    last_error = ExecutionError(
                        f"Step timed out after {step_timeout}s",
                        action=step.action,
                        category=ErrorCategory.RESOURCE,
                    )
            except FrameworkError as e:
                last_error = e
            except Exception as e:
                last_error = ExecutionError(
                    str(e) or type(e).__name__,
                    action=step.action,
                    context={"exception_type": type(e).__name__},
                )

            last_error.context["attempt"] = attempt
            delay = retry.record_failure(last_error.retryable)
            log.warning(
                "step_attempt_failed",
                attempt=attempt,
                max_attempts=step.retry.max_attempts,
                error=last_error.message,
                retry_in=delay,
            )
            if delay is None:
                break

            if self._clock() + delay >= deadline:
                log.warning("step_backoff_exceeds_budget", attempt=attempt, delay=delay)
                return finish(StepStatus.FAILED, attempt, error=self._run_timeout()), True

            if await self._wait_backoff(delay, cancel_event):
                log.info("step_retry_cancelled", attempt=attempt)
                break

        log.warning("step_failed", attempts=retry.attempt)
        return finish(StepStatus.FAILED, retry.attempt, error=last_error), False

    async def _invoke(
        self,
        handler: ActionHandler,
        params: dict[str, Any],
        context: ActionContext,
    ) -> dict[str, Any]:
        output = await handler.execute(params, context)
        if output is None:
            return {}
        if not isinstance(output, dict):
            return {"result": output}
        return output

    async def _wait_backoff(self, delay: float, cancel_event: asyncio.Event) -> bool:
        """Sleep for the backoff delay. Returns True if cancelled meanwhile."""
        if delay <= 0:
            return cancel_event.is_set()
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    def _run_timeout(self) -> RunTimeoutError:
        budget = self.config.run_timeout_seconds
        return RunTimeoutError(f"Run exceeded its {budget}s time budget", budget_seconds=budget)

    # ==================== Templating ====================

    def _interpolate(self, params: dict[str, Any], variables: dict[str, Any]) -> dict[str, Any]:
        """
        Interpolate ``{{path}}`` references in params.

        A string that is exactly one reference takes the referenced value
        with its type; references inside longer strings are substituted as
        text. Unresolvable references raise ValidationError.
        """

        def resolve(path: str) -> Any:
            current: Any = variables
            for key in path.split("."):
                if isinstance(current, dict) and key in current:
                    current = current[key]
                elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
                    current = current[int(key)]
                else:
                    raise ValidationError(f"Unresolved template reference: {{{{{path}}}}}", field=path)
            return current

        def replace_vars(value: Any) -> Any:
            if isinstance(value, str):
                whole = TEMPLATE_PATTERN.fullmatch(value.strip())
                if whole:
                    return resolve(whole.group(1))
                return TEMPLATE_PATTERN.sub(lambda m: str(resolve(m.group(1))), value)
            elif isinstance(value, dict):
                return {k: replace_vars(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [replace_vars(v) for v in value]
            return value

        return replace_vars(params)
