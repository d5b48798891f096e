"""
Filesystem watch triggers.

Watches the paths a workflow declares under ``watch`` and starts a run
for each matching change. watchdog delivers events on its observer
thread; they are handed to the event loop before any matching or
dispatch happens, so all watcher state is touched from the loop only.
"""

import asyncio
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..core.config import WatcherConfig
from ..core.errors import ConfigError, FrameworkError
from ..core.models import RunTrigger, WatchTrigger, Workflow
from .executor import ExecutionEngine, RunHandle


logger = structlog.get_logger()


# watchdog event type -> watch trigger event name
EVENT_TYPES = {
    "created": "created",
    "modified": "modified",
    "deleted": "deleted",
    "moved": "renamed",
}


@dataclass(frozen=True)
class FileEvent:
    """A file change, as passed to the triggered run under ``params.event``."""
    event_type: str
    path: str
    dest_path: Optional[str] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.dest_path or self.path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "path": self.path,
            "dest_path": self.dest_path,
            "name": self.name,
        }


@dataclass
class WatchEntry:
    """A watched workflow and its dispatch bookkeeping."""
    workflow: Workflow
    paths: list[str]
    watches: list[Any] = field(default_factory=list)
    last_dispatch: dict[str, float] = field(default_factory=dict)
    events_matched: int = 0
    runs_started: int = 0
    last_run_id: Optional[str] = None
    dispatch_failures: int = 0


class _EventForwarder(FileSystemEventHandler):
    """Runs on the observer thread; forwards file events to the loop."""

    def __init__(self, watcher: "Watcher", workflow_id: str, loop: asyncio.AbstractEventLoop):
        super().__init__()
        self.watcher = watcher
        self.workflow_id = workflow_id
        self.loop = loop

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        event_type = EVENT_TYPES.get(event.event_type)
        if event_type is None:
            return  # opened / closed

        dest_path = os.fsdecode(event.dest_path) if event_type == "renamed" and event.dest_path else None
        file_event = FileEvent(event_type, os.fsdecode(event.src_path), dest_path)
        if not self.loop.is_closed():
            self.loop.call_soon_threadsafe(self.watcher.dispatch, self.workflow_id, file_event)


class Watcher:
    """
    Starts workflow runs when watched files change.

    Matching follows the workflow's watch trigger: the event type must be
    listed, and if patterns are given the file name (the new name for a
    rename) must match one of them. Repeated events for the same file
    within ``debounce_seconds`` of a dispatched run are dropped, so a file
    written in several chunks starts one run.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        config: Optional[WatcherConfig] = None,
        observer_factory: Callable[[], Any] = Observer,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.config = config or WatcherConfig()
        self.observer_factory = observer_factory
        self.clock = clock

        self.entries: dict[str, WatchEntry] = {}
        self._observer: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ==================== Entries ====================

    def prepare_paths(self, watch: WatchTrigger) -> list[str]:
        """Resolve watch paths, creating missing directories if configured to."""
        resolved = []
        for raw in watch.paths:
            path = Path(raw).expanduser()
            if not path.exists():
                if not self.config.create_missing_paths:
                    raise ConfigError(f"Watch path does not exist: {path}")
                try:
                    path.mkdir(parents=True, exist_ok=True)
                except OSError as e:
                    raise ConfigError(f"Cannot create watch path {path}: {e}")
                logger.warning("watch_path_created", path=str(path))
            resolved.append(str(path))
        return resolved

    def add(self, workflow: Workflow) -> bool:
        """Track (or re-track) a workflow. Returns False if it has no active watch trigger."""
        if not workflow.enabled or workflow.watch is None:
            self.remove(workflow.id)
            return False

        existing = self.entries.get(workflow.id)
        if existing and existing.workflow.watch == workflow.watch:
            existing.workflow = workflow
            return True

        paths = self.prepare_paths(workflow.watch)
        self.remove(workflow.id)
        entry = WatchEntry(workflow=workflow, paths=paths)
        self.entries[workflow.id] = entry
        if self._observer is not None:
            self._schedule(entry)

        logger.info(
            "workflow_watched",
            workflow_id=workflow.id,
            paths=paths,
            events=list(workflow.watch.events),
            patterns=list(workflow.watch.patterns),
        )
        return True

    def remove(self, workflow_id: str) -> bool:
        entry = self.entries.pop(workflow_id, None)
        if entry is None:
            return False
        self._unschedule(entry)
        logger.info("workflow_unwatched", workflow_id=workflow_id)
        return True

    def sync(self, workflows: Iterable[Workflow]) -> list[str]:
        """Make the watched set match the given workflows. Returns list of error messages."""
        workflows = list(workflows)
        wanted = {w.id for w in workflows}
        for workflow_id in list(self.entries):
            if workflow_id not in wanted:
                self.remove(workflow_id)

        errors = []
        for workflow in workflows:
            try:
                self.add(workflow)
            except ConfigError as e:
                self.remove(workflow.id)
                errors.append(f"{workflow.id}: {e}")
                logger.error("workflow_watch_invalid", workflow_id=workflow.id, error=str(e))
        return errors

    def _schedule(self, entry: WatchEntry) -> None:
        handler = _EventForwarder(self, entry.workflow.id, self._loop)
        for path in entry.paths:
            try:
                watch = self._observer.schedule(handler, path, recursive=entry.workflow.watch.recursive)
            except OSError as e:
                self._unschedule(entry)
                raise ConfigError(f"Cannot watch {path}: {e}")
            entry.watches.append(watch)

    def _unschedule(self, entry: WatchEntry) -> None:
        if self._observer is not None:
            for watch in entry.watches:
                self._observer.unschedule(watch)
        entry.watches.clear()

    # ==================== Dispatch ====================

    def dispatch(self, workflow_id: str, event: FileEvent) -> Optional[RunHandle]:
        """Start a run for a file event if the workflow's trigger accepts it."""
        entry = self.entries.get(workflow_id)
        if entry is None:
            return None
        if not entry.workflow.watch.matches(event.event_type, event.path, event.dest_path):
            return None
        entry.events_matched += 1

        now = self.clock()
        window = self.config.debounce_seconds
        entry.last_dispatch = {p: t for p, t in entry.last_dispatch.items() if now - t < window}
        key = event.dest_path or event.path
        if key in entry.last_dispatch:
            logger.debug("watch_event_debounced", workflow_id=workflow_id, path=key)
            return None
        entry.last_dispatch[key] = now

        try:
            handle = self.engine.submit(
                entry.workflow,
                {"event": event.to_dict()},
                trigger=RunTrigger.WATCH,
            )
        except (FrameworkError, RuntimeError) as e:
            entry.dispatch_failures += 1
            logger.error(
                "watch_dispatch_failed",
                workflow_id=workflow_id,
                error=str(e),
                failures=entry.dispatch_failures,
            )
            return None

        entry.runs_started += 1
        entry.last_run_id = handle.run_id
        handle.task.add_done_callback(
            lambda task, e=entry, h=handle: self._on_run_done(e, h, task)
        )
        logger.info(
            "watch_run_dispatched",
            workflow_id=workflow_id,
            run_id=handle.run_id,
            event_type=event.event_type,
            path=key,
        )
        return handle

    def _on_run_done(self, entry: WatchEntry, handle: RunHandle, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        entry.dispatch_failures += 1
        logger.error(
            "watch_run_failed",
            workflow_id=entry.workflow.id,
            run_id=handle.run_id,
            error=str(error),
            failures=entry.dispatch_failures,
        )

    # ==================== Observer ====================

    def start(self) -> None:
        """Start the observer thread. Must be called from the event loop."""
        if self._observer is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._observer = self.observer_factory()
        for entry in list(self.entries.values()):
            try:
                self._schedule(entry)
            except ConfigError as e:
                self.entries.pop(entry.workflow.id, None)
                logger.error("workflow_watch_invalid", workflow_id=entry.workflow.id, error=str(e))
        self._observer.start()
        logger.info("watcher_started", workflows=len(self.entries))

    async def stop(self, timeout: float = 5.0) -> None:
        if self._observer is None:
            return
        observer = self._observer
        for entry in self.entries.values():
            self._unschedule(entry)
        self._observer = None
        observer.stop()
        await asyncio.to_thread(observer.join, timeout)
        logger.info("watcher_stopped")

    @property
    def running(self) -> bool:
        return self._observer is not None

    def status(self) -> list[dict[str, Any]]:
        return [
            {
                "workflow_id": workflow_id,
                "paths": e.paths,
                "events": list(e.workflow.watch.events),
                "patterns": list(e.workflow.watch.patterns),
                "events_matched": e.events_matched,
                "runs_started": e.runs_started,
                "last_run_id": e.last_run_id,
                "dispatch_failures": e.dispatch_failures,
            }
            for workflow_id, e in self.entries.items()
        ]
