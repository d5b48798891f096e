"""Orchestrator: execution engine, scheduler, file watcher and supervisor."""

from .cron import CronExpression
from .executor import ExecutionEngine, RetryState, RunHandle
from .scheduler import ScheduleEntry, Scheduler, ScheduleTable
from .supervisor import Supervisor, SupervisorState
from .watcher import FileEvent, Watcher, WatchEntry

__all__ = [
    "CronExpression",
    "ExecutionEngine",
    "FileEvent",
    "RetryState",
    "RunHandle",
    "ScheduleEntry",
    "Scheduler",
    "ScheduleTable",
    "Supervisor",
    "SupervisorState",
    "WatchEntry",
    "Watcher",
]
