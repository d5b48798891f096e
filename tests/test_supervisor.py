"""Tests for the supervisor and health server."""

import pytest
import yaml
from aiohttp.test_utils import TestClient, TestServer

from rpa_elysium.core.config import FrameworkConfig
from rpa_elysium.core.errors import (
    ConfigError,
    RegistryFrozenError,
    ScheduleError,
    WorkflowInUseError,
    WorkflowNotFoundError,
)
from rpa_elysium.core.models import RunStatus, RunTrigger, Step, WatchTrigger, Workflow
from rpa_elysium.core.state import StateStore
from rpa_elysium.main import HealthServer
from rpa_elysium.orchestrator.supervisor import Supervisor, SupervisorState
from rpa_elysium.orchestrator.watcher import FileEvent


def write_workflow(directory, workflow_id, schedule=None, enabled=True):
    document = {
        "id": workflow_id,
        "name": workflow_id,
        "enabled": enabled,
        "steps": [
            {"id": "hello", "action": "echo", "params": {"who": "{{params.who}}"}},
        ],
        "parameters": {"who": "world"},
    }
    if schedule:
        document["schedule"] = schedule
    (directory / f"{workflow_id}.yaml").write_text(yaml.safe_dump(document))


class TestSupervisor:
    """Test supervisor lifecycle and workflow management."""

    @pytest.fixture
    def config(self, tmp_path):
        workflows = tmp_path / "workflows"
        workflows.mkdir()
        write_workflow(workflows, "greet")
        write_workflow(workflows, "nightly", schedule="0 2 * * *")
        write_workflow(workflows, "parked", schedule="0 3 * * *", enabled=False)
        return FrameworkConfig(
            state={"db_path": str(tmp_path / "state.db")},
            workflows_directory=str(workflows),
            scheduler={"enabled": False},
        )

    @pytest.fixture
    async def supervisor(self, config):
        supervisor = Supervisor(config=config)
        await supervisor.start()
        yield supervisor
        await supervisor.stop()

    async def test_start_loads_workflows(self, supervisor):
        assert supervisor.state == SupervisorState.RUNNING
        stored = await supervisor.state_store.list_workflows()

        assert [w.id for w in stored] == ["greet", "nightly", "parked"]
        assert supervisor.scheduler.table.ids() == ["nightly"]
        assert supervisor.registry.frozen

    async def test_register_after_start_rejected(self, supervisor):
        async def late(params, context):
            return {}

        with pytest.raises(RegistryFrozenError):
            supervisor.register_action("late", late)

    async def test_register_before_start(self, config):
        async def shout(params, context):
            return {"text": params["text"].upper()}

        supervisor = Supervisor(config=config)
        supervisor.register_action("shout", shout)
        await supervisor.start()
        try:
            await supervisor.save_workflow(Workflow(
                id="loud", name="loud",
                steps=[Step(id="s", action="shout", params={"text": "hi"})],
            ))
            run = await supervisor.run_workflow("loud")
            assert run.result_for("s").output == {"text": "HI"}
        finally:
            await supervisor.stop()

    async def test_run_workflow(self, supervisor):
        run = await supervisor.run_workflow("greet", {"who": "team"})

        assert run.status == RunStatus.SUCCEEDED
        assert run.result_for("hello").output == {"echo": {"who": "team"}}
        assert (await supervisor.get_run(run.run_id)).status == RunStatus.SUCCEEDED

    async def test_disabled_workflow_not_runnable(self, supervisor):
        with pytest.raises(ConfigError):
            await supervisor.run_workflow("parked")

    async def test_submit_workflow(self, supervisor):
        handle = await supervisor.submit_workflow("greet")
        run = await handle.wait()
        assert run.status == RunStatus.SUCCEEDED

    async def test_edit_reschedules(self, supervisor):
        edited = Workflow(
            id="greet", name="greet", schedule="*/10 * * * *",
            steps=[Step(id="hello", action="noop")],
        )
        stored = await supervisor.save_workflow(edited)

        assert stored.version == 2
        assert "greet" in supervisor.scheduler.table

    async def test_delete_workflow(self, supervisor):
        await supervisor.delete_workflow("nightly")
        assert "nightly" not in supervisor.scheduler.table

        await supervisor.run_workflow("greet")
        with pytest.raises(WorkflowInUseError):
            await supervisor.delete_workflow("greet")

    async def test_reload_picks_up_new_files(self, supervisor, config, tmp_path):
        write_workflow(tmp_path / "workflows", "weekly", schedule="@weekly")

        errors = await supervisor.reload_workflows()

        assert errors == []
        assert "weekly" in supervisor.scheduler.table

    async def test_bad_definitions_do_not_block_startup(self, config, tmp_path):
        (tmp_path / "workflows" / "broken.yaml").write_text("name: broken\n")
        supervisor = Supervisor(config=config)
        await supervisor.start()
        try:
            status = await supervisor.get_status()
            assert status["state"] == "running"
            assert len(status["startup_errors"]) == 1
        finally:
            await supervisor.stop()

    async def test_never_firing_stored_schedule_does_not_block_startup(self, config):
        """A stored workflow whose schedule can't fire is reported, the rest are scheduled."""
        store = StateStore(config.state.db_path)
        await store.initialize()
        await store.save_workflow(Workflow(
            id="feb31", name="feb31", schedule="0 0 31 2 *",
            steps=[Step(id="s", action="noop")],
        ))
        await store.close()

        supervisor = Supervisor(config=config)
        await supervisor.start()
        try:
            status = await supervisor.get_status()
            assert status["state"] == "running"
            assert [e for e in status["startup_errors"] if e.startswith("feb31")]
            assert supervisor.scheduler.table.ids() == ["nightly"]
        finally:
            await supervisor.stop()

    async def test_save_rejects_never_firing_schedule(self, supervisor):
        with pytest.raises(ScheduleError):
            await supervisor.save_workflow(Workflow(
                id="feb31", name="feb31", schedule="0 0 31 2 *",
                steps=[Step(id="s", action="noop")],
            ))
        with pytest.raises(WorkflowNotFoundError):
            await supervisor.state_store.get_workflow("feb31")

    async def test_stop_after_failed_start_closes_store(self, config, monkeypatch):
        supervisor = Supervisor(config=config)

        async def broken_reload(raise_on_error=True):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(supervisor, "reload_workflows", broken_reload)
        with pytest.raises(RuntimeError):
            await supervisor.start()
        assert supervisor.state_store.is_open

        await supervisor.stop()

        assert supervisor.state == SupervisorState.SHUTDOWN
        assert not supervisor.state_store.is_open

    async def test_watch_trigger_lifecycle(self, supervisor, tmp_path):
        inbox = tmp_path / "inbox"
        stored = await supervisor.save_workflow(Workflow(
            id="inbox", name="inbox",
            watch=WatchTrigger(paths=(str(inbox),), patterns=("*.csv",)),
            steps=[Step(id="s", action="noop")],
        ))

        assert inbox.is_dir()
        assert supervisor.watcher.running
        status = await supervisor.get_status()
        assert [w["workflow_id"] for w in status["watches"]] == ["inbox"]

        handle = supervisor.watcher.dispatch("inbox", FileEvent("created", str(inbox / "a.csv")))
        run = await handle.wait()
        assert run.trigger == RunTrigger.WATCH
        assert run.workflow_version == stored.version

        await supervisor.pause()
        assert not supervisor.watcher.running
        await supervisor.resume()
        assert supervisor.watcher.running

        await supervisor.save_workflow(Workflow(
            id="inbox", name="inbox", steps=[Step(id="s", action="noop")],
        ))
        assert "inbox" not in supervisor.watcher.entries

    async def test_pause_resume(self, supervisor):
        await supervisor.pause()
        assert supervisor.state == SupervisorState.PAUSED
        run = await supervisor.run_workflow("greet")
        assert run.status == RunStatus.SUCCEEDED

        await supervisor.resume()
        assert supervisor.state == SupervisorState.RUNNING

    async def test_stop_rejects_runs(self, config):
        supervisor = Supervisor(config=config)
        await supervisor.start()
        await supervisor.stop()

        assert supervisor.state == SupervisorState.SHUTDOWN
        with pytest.raises(RuntimeError):
            await supervisor.run_workflow("greet")

    async def test_status(self, supervisor):
        status = await supervisor.get_status()

        assert status["state"] == "running"
        assert "file.archive" in status["actions"]
        assert status["active_runs"] == []
        assert [s["workflow_id"] for s in status["schedule"]] == ["nightly"]
        assert status["failed_runs"] == 0


class TestHealthServer:
    """Test health endpoints."""

    @pytest.fixture
    async def supervisor(self, tmp_path):
        config = FrameworkConfig(
            state={"db_path": str(tmp_path / "state.db")},
            workflows_directory=str(tmp_path / "workflows"),
            scheduler={"enabled": False},
        )
        supervisor = Supervisor(config=config)
        await supervisor.start()
        yield supervisor
        await supervisor.stop()

    async def test_endpoints(self, supervisor):
        server = HealthServer(supervisor)
        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            assert (await resp.json())["status"] == "healthy"

            resp = await client.get("/ready")
            assert resp.status == 200
            assert (await resp.json())["state"] == "running"

            resp = await client.get("/status")
            assert resp.status == 200
            assert "actions" in await resp.json()

    async def test_not_ready_when_stopped(self, supervisor):
        server = HealthServer(supervisor)
        await supervisor.stop()

        async with TestClient(TestServer(server.build_app())) as client:
            resp = await client.get("/ready")
            assert resp.status == 503
