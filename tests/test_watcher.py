"""Tests for filesystem watch triggers."""

import asyncio

import pytest

from rpa_elysium.actions import default_registry
from rpa_elysium.core.config import ConfigLoader, WatcherConfig
from rpa_elysium.core.errors import ConfigError
from rpa_elysium.core.models import RunStatus, RunTrigger, Step, WatchTrigger, Workflow
from rpa_elysium.orchestrator.executor import ExecutionEngine
from rpa_elysium.orchestrator.watcher import FileEvent, Watcher


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class FakeObserver:
    """Records schedule/unschedule calls instead of starting a thread."""

    def __init__(self):
        self.scheduled = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        watch = (handler, path, recursive)
        self.scheduled.append(watch)
        return watch

    def unschedule(self, watch):
        self.scheduled.remove(watch)

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass


def watched(directory, workflow_id="inbox", **watch) -> Workflow:
    return Workflow(
        id=workflow_id,
        name=workflow_id,
        watch=WatchTrigger(paths=(str(directory),), **watch),
        steps=[Step(id="show", action="echo", params={"file": "{{params.event.name}}"})],
    )


class TestWatchTrigger:
    """Test event matching."""

    def test_default_events(self):
        trigger = WatchTrigger(paths=("/in",))
        assert trigger.matches("created", "/in/a.pdf")
        assert trigger.matches("modified", "/in/a.pdf")
        assert not trigger.matches("deleted", "/in/a.pdf")

    def test_patterns_match_file_name(self):
        trigger = WatchTrigger(paths=("/in",), patterns=("*.pdf", "report-*"))
        assert trigger.matches("created", "/in/sub/a.pdf")
        assert trigger.matches("created", "/in/report-1.txt")
        assert not trigger.matches("created", "/in/pdf/notes.txt")

    def test_rename_matches_new_name(self):
        trigger = WatchTrigger(paths=("/in",), patterns=("*.done",), events=("renamed",))
        assert trigger.matches("renamed", "/in/a.tmp", "/in/a.done")
        assert not trigger.matches("renamed", "/in/a.done", "/in/a.tmp")

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            WatchTrigger(paths=("/in",), events=("touched",))

    def test_workflow_document(self):
        workflow = ConfigLoader().parse_workflow({
            "name": "inbox",
            "watch": {"paths": "/in", "patterns": ["*.csv"], "events": ["created"]},
            "steps": [{"action": "noop"}],
        })

        assert workflow.watch == WatchTrigger(paths=("/in",), patterns=("*.csv",), events=("created",))
        assert Workflow.from_dict(workflow.to_dict()).watch == workflow.watch

    def test_bad_watch_document_rejected(self):
        with pytest.raises(ConfigError):
            ConfigLoader().parse_workflow({
                "name": "inbox",
                "watch": {"paths": ["/in"], "events": ["touched"]},
                "steps": [{"action": "noop"}],
            })

    def test_watch_changes_content_hash(self, tmp_path):
        plain = Workflow(id="wf", name="wf", steps=[Step(id="s", action="noop")])
        assert plain.content_hash != watched(tmp_path, "wf").content_hash


class TestWatcher:
    """Test matching, debouncing and dispatch into the engine."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def engine(self):
        return ExecutionEngine(default_registry())

    @pytest.fixture
    def watcher(self, engine, clock):
        return Watcher(engine, config=WatcherConfig(debounce_seconds=1.0),
                       observer_factory=FakeObserver, clock=clock)

    async def test_matching_event_starts_run(self, watcher, tmp_path):
        watcher.add(watched(tmp_path, patterns=("*.pdf",)))

        handle = watcher.dispatch("inbox", FileEvent("created", str(tmp_path / "a.pdf")))
        run = await handle.wait()

        assert run.trigger == RunTrigger.WATCH
        assert run.status == RunStatus.SUCCEEDED
        assert run.result_for("show").output == {"echo": {"file": "a.pdf"}}
        assert watcher.entries["inbox"].last_run_id == run.run_id

    async def test_non_matching_events_ignored(self, watcher, tmp_path):
        watcher.add(watched(tmp_path, patterns=("*.pdf",)))

        assert watcher.dispatch("inbox", FileEvent("created", str(tmp_path / "a.txt"))) is None
        assert watcher.dispatch("inbox", FileEvent("deleted", str(tmp_path / "a.pdf"))) is None
        assert watcher.dispatch("other", FileEvent("created", str(tmp_path / "a.pdf"))) is None
        assert watcher.entries["inbox"].runs_started == 0

    async def test_debounce_per_file(self, watcher, clock, tmp_path):
        watcher.add(watched(tmp_path))
        first = tmp_path / "a.csv"

        handles = [
            watcher.dispatch("inbox", FileEvent("created", str(first))),
            watcher.dispatch("inbox", FileEvent("modified", str(first))),
            watcher.dispatch("inbox", FileEvent("created", str(tmp_path / "b.csv"))),
        ]
        clock.now += 1.5
        handles.append(watcher.dispatch("inbox", FileEvent("modified", str(first))))

        assert [h is not None for h in handles] == [True, False, True, True]
        await asyncio.gather(*(h.wait() for h in handles if h))
        assert watcher.entries["inbox"].runs_started == 3

    async def test_disabled_or_unwatched_workflow_not_tracked(self, watcher, tmp_path):
        assert not watcher.add(Workflow(id="plain", name="plain", steps=[Step(id="s", action="noop")]))
        assert not watcher.add(Workflow(
            id="off", name="off", enabled=False,
            watch=WatchTrigger(paths=(str(tmp_path),)),
            steps=[Step(id="s", action="noop")],
        ))
        assert watcher.entries == {}

    def test_missing_path_created(self, watcher, tmp_path):
        target = tmp_path / "drop" / "inbox"
        watcher.add(watched(target))
        assert target.is_dir()

    def test_missing_path_rejected_when_not_created(self, engine, tmp_path):
        watcher = Watcher(engine, config=WatcherConfig(create_missing_paths=False),
                          observer_factory=FakeObserver)
        with pytest.raises(ConfigError):
            watcher.add(watched(tmp_path / "missing"))

    def test_sync_reports_bad_entries(self, engine, tmp_path):
        watcher = Watcher(engine, config=WatcherConfig(create_missing_paths=False),
                          observer_factory=FakeObserver)
        watcher.add(watched(tmp_path, "stale"))

        errors = watcher.sync([watched(tmp_path, "good"), watched(tmp_path / "missing", "bad")])

        assert len(errors) == 1 and errors[0].startswith("bad: ")
        assert list(watcher.entries) == ["good"]

    async def test_observer_schedules_and_unschedules(self, watcher, tmp_path):
        watcher.add(watched(tmp_path, recursive=False))
        watcher.start()
        observer = watcher._observer

        assert observer.started
        assert [(path, recursive) for _, path, recursive in observer.scheduled] == [(str(tmp_path), False)]

        watcher.remove("inbox")
        assert observer.scheduled == []

        await watcher.stop()
        assert observer.stopped
        assert not watcher.running

    async def test_status(self, watcher, tmp_path):
        watcher.add(watched(tmp_path, patterns=("*.pdf",)))
        [entry] = watcher.status()

        assert entry["workflow_id"] == "inbox"
        assert entry["paths"] == [str(tmp_path)]
        assert entry["patterns"] == ["*.pdf"]
        assert entry["runs_started"] == 0


class TestWatcherObserver:
    """End-to-end with a real watchdog observer."""

    async def test_file_creation_triggers_run(self, tmp_path):
        engine = ExecutionEngine(default_registry())
        watcher = Watcher(engine, config=WatcherConfig(debounce_seconds=5.0))
        watcher.add(watched(tmp_path, patterns=("*.pdf",), events=("created",)))
        watcher.start()
        try:
            await asyncio.sleep(0.2)
            (tmp_path / "ignored.txt").write_text("skip")
            (tmp_path / "invoice.pdf").write_text("%PDF")

            entry = watcher.entries["inbox"]
            for _ in range(100):
                if entry.last_run_id:
                    break
                await asyncio.sleep(0.05)
        finally:
            await watcher.stop()

        assert entry.runs_started == 1
        assert entry.events_matched >= 1
