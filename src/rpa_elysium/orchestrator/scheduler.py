"""Cron-driven scheduling of workflow runs."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Optional

import structlog

from ..core.config import SchedulerConfig
from ..core.errors import FrameworkError, ScheduleError
from ..core.models import RunTrigger, Workflow
from .cron import CronExpression
from .executor import ExecutionEngine, RunHandle


logger = structlog.get_logger()


@dataclass
class ScheduleEntry:
    """A scheduled workflow and when it fires next."""
    workflow: Workflow
    cron: CronExpression
    next_fire_at: datetime
    last_fired_at: Optional[datetime] = None
    last_run_id: Optional[str] = None
    dispatch_failures: int = 0


class ScheduleTable:
    """workflow id -> schedule entry."""

    def __init__(self):
        self._entries: dict[str, ScheduleEntry] = {}

    def get(self, workflow_id: str) -> Optional[ScheduleEntry]:
        return self._entries.get(workflow_id)

    def put(self, entry: ScheduleEntry) -> None:
        self._entries[entry.workflow.id] = entry

    def remove(self, workflow_id: str) -> bool:
        return self._entries.pop(workflow_id, None) is not None

    def due(self, now: datetime) -> list[ScheduleEntry]:
        """Entries whose fire time has elapsed, earliest first."""
        return sorted(
            (e for e in self._entries.values() if e.next_fire_at <= now),
            key=lambda e: (e.next_fire_at, e.workflow.id),
        )

    def ids(self) -> list[str]:
        return list(self._entries)

    def __iter__(self) -> Iterator[ScheduleEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._entries


class Scheduler:
    """
    Fires workflow runs on their cron schedule.

    On each tick every workflow whose next fire time has elapsed is handed
    to the execution engine once, and its next fire time is recomputed
    from the current time. Intervals missed while the scheduler was down
    or stalled are not replayed.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
        table: Optional[ScheduleTable] = None,
    ):
        self.engine = engine
        self.config = config or SchedulerConfig()
        self.clock = clock
        self.table = table if table is not None else ScheduleTable()

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    # ==================== Table maintenance ====================

    def add(self, workflow: Workflow) -> Optional[datetime]:
        """Track (or re-track) a workflow. Returns its next fire time, or None if unscheduled."""
        if not workflow.enabled or not workflow.schedule:
            self.remove(workflow.id)
            return None

        cron = CronExpression.parse(workflow.schedule)
        existing = self.table.get(workflow.id)
        if existing and existing.cron.expression == cron.expression:
            # Keep the pending fire time, pick up the new definition
            existing.workflow = workflow
            return existing.next_fire_at

        next_fire = cron.next_after(self.clock())
        self.table.put(ScheduleEntry(workflow=workflow, cron=cron, next_fire_at=next_fire))
        logger.info(
            "workflow_scheduled",
            workflow_id=workflow.id,
            schedule=workflow.schedule,
            next_fire_at=next_fire.isoformat(),
        )
        return next_fire

    def remove(self, workflow_id: str) -> bool:
        removed = self.table.remove(workflow_id)
        if removed:
            logger.info("workflow_unscheduled", workflow_id=workflow_id)
        return removed

    def sync(self, workflows: Iterable[Workflow]) -> list[str]:
        """
        Make the table match the given workflow set.

        A workflow whose schedule can't be tracked is left out and reported;
        the others are still scheduled. Returns list of error messages.
        """
        workflows = list(workflows)
        wanted = {w.id for w in workflows}
        for workflow_id in self.table.ids():
            if workflow_id not in wanted:
                self.remove(workflow_id)

        errors = []
        for workflow in workflows:
            try:
                self.add(workflow)
            except ScheduleError as e:
                self.remove(workflow.id)
                errors.append(f"{workflow.id}: {e}")
                logger.error(
                    "workflow_schedule_invalid",
                    workflow_id=workflow.id,
                    schedule=workflow.schedule,
                    error=str(e),
                )
        return errors

    def next_fire_time(self, workflow_id: str) -> Optional[datetime]:
        entry = self.table.get(workflow_id)
        return entry.next_fire_at if entry else None

    # ==================== Dispatch ====================

    async def tick(self) -> list[str]:
        """Dispatch every due workflow once. Returns the dispatched workflow ids."""
        now = self.clock()
        dispatched: list[str] = []

        for entry in self.table.due(now):
            workflow_id = entry.workflow.id
            try:
                handle = self.engine.submit(entry.workflow, trigger=RunTrigger.SCHEDULED)
            except (FrameworkError, RuntimeError) as e:
                entry.dispatch_failures += 1
                logger.error(
                    "scheduled_dispatch_failed",
                    workflow_id=workflow_id,
                    error=str(e),
                    failures=entry.dispatch_failures,
                )
            else:
                entry.last_fired_at = now
                entry.last_run_id = handle.run_id
                handle.task.add_done_callback(
                    lambda task, e=entry, h=handle: self._on_run_done(e, h, task)
                )
                dispatched.append(workflow_id)
                logger.info(
                    "scheduled_run_dispatched",
                    workflow_id=workflow_id,
                    run_id=handle.run_id,
                    scheduled_for=entry.next_fire_at.isoformat(),
                )

            entry.next_fire_at = entry.cron.next_after(now)

        return dispatched

    def _on_run_done(self, entry: ScheduleEntry, handle: RunHandle, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            entry.dispatch_failures = 0
            return
        # Retried at the next fire time, never immediately
        entry.dispatch_failures += 1
        logger.error(
            "scheduled_run_failed",
            workflow_id=entry.workflow.id,
            run_id=handle.run_id,
            error=str(error),
            failures=entry.dispatch_failures,
            next_fire_at=entry.next_fire_at.isoformat(),
        )

    # ==================== Background loop ====================

    def start(self) -> None:
        """Start ticking in the background."""
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        logger.info("scheduler_started", workflows=len(self.table))

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("scheduler_stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        interval = self.config.tick_interval_seconds
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("scheduler_tick_error")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    def status(self) -> list[dict[str, Any]]:
        return [
            {
                "workflow_id": e.workflow.id,
                "schedule": e.cron.expression,
                "next_fire_at": e.next_fire_at.isoformat(),
                "last_fired_at": e.last_fired_at.isoformat() if e.last_fired_at else None,
                "last_run_id": e.last_run_id,
                "dispatch_failures": e.dispatch_failures,
            }
            for e in self.table
        ]
