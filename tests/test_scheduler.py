"""Tests for the cron scheduler."""

import asyncio
from datetime import datetime, timedelta

import pytest

from rpa_elysium.actions import default_registry
from rpa_elysium.core.config import SchedulerConfig
from rpa_elysium.core.errors import StateStoreError
from rpa_elysium.core.models import RunTrigger, Step, Workflow
from rpa_elysium.orchestrator.executor import ExecutionEngine
from rpa_elysium.orchestrator.scheduler import Scheduler, ScheduleTable


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingStore:
    """Collects recorded runs in memory."""

    def __init__(self):
        self.runs = []

    async def record_run(self, run):
        self.runs.append(run)


def scheduled(workflow_id: str = "wf", schedule: str = "*/5 * * * *", **kwargs) -> Workflow:
    return Workflow(
        id=workflow_id,
        name=workflow_id,
        schedule=schedule,
        steps=[Step(id="a", action="noop")],
        **kwargs,
    )


class TestScheduleTable:
    """Test table maintenance."""

    @pytest.fixture
    def clock(self):
        return FakeClock(datetime(2024, 1, 1, 10, 0, 30))

    @pytest.fixture
    def scheduler(self, clock):
        return Scheduler(ExecutionEngine(default_registry()), clock=clock)

    def test_add_computes_next_fire(self, scheduler):
        assert scheduler.add(scheduled()) == datetime(2024, 1, 1, 10, 5)
        assert "wf" in scheduler.table
        assert scheduler.next_fire_time("wf") == datetime(2024, 1, 1, 10, 5)

    def test_unscheduled_and_disabled_skipped(self, scheduler):
        assert scheduler.add(scheduled(schedule=None)) is None
        assert scheduler.add(scheduled("off", enabled=False)) is None
        assert len(scheduler.table) == 0

    def test_disabling_removes_entry(self, scheduler):
        scheduler.add(scheduled())
        scheduler.add(scheduled(enabled=False))
        assert "wf" not in scheduler.table

    def test_same_schedule_keeps_fire_time(self, scheduler, clock):
        scheduler.add(scheduled())
        clock.advance(minutes=2)
        edited = Workflow(id="wf", name="renamed", schedule="*/5 * * * *",
                          steps=[Step(id="b", action="noop")], version=2)

        assert scheduler.add(edited) == datetime(2024, 1, 1, 10, 5)
        assert scheduler.table.get("wf").workflow.version == 2

    def test_changed_schedule_recomputes(self, scheduler):
        scheduler.add(scheduled())
        assert scheduler.add(scheduled(schedule="0 12 * * *")) == datetime(2024, 1, 1, 12, 0)

    def test_sync(self, scheduler):
        scheduler.add(scheduled("old"))
        scheduler.sync([scheduled("a"), scheduled("b")])

        assert sorted(scheduler.table.ids()) == ["a", "b"]

    def test_sync_skips_never_firing_schedule(self, scheduler):
        """One workflow that can never fire doesn't keep the others off the table."""
        scheduler.add(scheduled("feb31"))

        errors = scheduler.sync([
            scheduled("a"),
            scheduled("feb31", schedule="0 0 31 2 *"),
            scheduled("b"),
        ])

        assert len(errors) == 1
        assert errors[0].startswith("feb31: ")
        assert sorted(scheduler.table.ids()) == ["a", "b"]

    def test_status(self, scheduler):
        scheduler.add(scheduled())
        [entry] = scheduler.status()

        assert entry["workflow_id"] == "wf"
        assert entry["next_fire_at"] == "2024-01-01T10:05:00"
        assert entry["last_run_id"] is None


class TestDispatch:
    """Test tick semantics."""

    @pytest.fixture
    def clock(self):
        return FakeClock(datetime(2024, 1, 1, 10, 0, 30))

    @pytest.fixture
    def store(self):
        return RecordingStore()

    @pytest.fixture
    def engine(self, store):
        return ExecutionEngine(default_registry(), state_store=store)

    @pytest.fixture
    def scheduler(self, engine, clock):
        return Scheduler(engine, clock=clock)

    async def test_not_due_yet(self, scheduler, clock):
        scheduler.add(scheduled())
        clock.advance(minutes=4)

        assert await scheduler.tick() == []

    async def test_due_dispatches_once(self, scheduler, engine, store, clock):
        scheduler.add(scheduled())
        clock.now = datetime(2024, 1, 1, 10, 5, 1)

        assert await scheduler.tick() == ["wf"]
        assert await scheduler.tick() == []
        await engine.shutdown()

        assert len(store.runs) == 1
        assert store.runs[0].trigger == RunTrigger.SCHEDULED
        assert scheduler.table.get("wf").last_run_id == store.runs[0].run_id
        assert scheduler.next_fire_time("wf") == datetime(2024, 1, 1, 10, 10)

    async def test_no_backfill_after_stall(self, scheduler, engine, store, clock):
        """Many missed intervals produce one run, and the next fire is in the future."""
        scheduler.add(scheduled())
        clock.advance(hours=3)

        assert await scheduler.tick() == ["wf"]
        assert await scheduler.tick() == []
        await engine.shutdown()

        assert len(store.runs) == 1
        assert scheduler.next_fire_time("wf") > clock.now

    async def test_restart_after_downtime(self, engine, store, clock):
        """A fresh scheduler schedules exactly one future run per workflow."""
        first = Scheduler(engine, clock=clock)
        first.sync([scheduled("a"), scheduled("b", schedule="@hourly")])

        clock.advance(days=2)
        table = ScheduleTable()
        restarted = Scheduler(engine, clock=clock, table=table)
        restarted.sync([scheduled("a"), scheduled("b", schedule="@hourly")])

        assert sorted(table.ids()) == ["a", "b"]
        assert all(entry.next_fire_at > clock.now for entry in table)
        assert await restarted.tick() == []

        clock.advance(hours=1)
        assert sorted(await restarted.tick()) == ["a", "b"]
        await engine.shutdown()
        assert len(store.runs) == 2

    async def test_dispatch_failure_counted(self, scheduler, engine, clock):
        scheduler.add(scheduled())
        await engine.shutdown()
        clock.advance(minutes=10)

        assert await scheduler.tick() == []
        entry = scheduler.table.get("wf")
        assert entry.dispatch_failures == 1
        assert entry.next_fire_at > clock.now

    async def test_run_failure_waits_for_next_fire(self, clock):
        class BrokenStore:
            async def record_run(self, run):
                raise StateStoreError("database is locked")

        engine = ExecutionEngine(default_registry(), state_store=BrokenStore())
        scheduler = Scheduler(engine, clock=clock)
        scheduler.add(scheduled())
        clock.advance(minutes=5)

        assert await scheduler.tick() == ["wf"]
        await engine.shutdown()
        await asyncio.sleep(0)

        entry = scheduler.table.get("wf")
        assert entry.dispatch_failures == 1
        assert await scheduler.tick() == []

    async def test_background_loop(self, engine, store, clock):
        scheduler = Scheduler(engine, config=SchedulerConfig(tick_interval_seconds=0.01), clock=clock)
        scheduler.add(scheduled())
        clock.advance(minutes=5)

        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.05)
        await scheduler.stop()
        await engine.shutdown()

        assert not scheduler.running
        assert len(store.runs) == 1
