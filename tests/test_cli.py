"""Tests for the command line interface."""

import logging

import pytest
import yaml
from typer.testing import CliRunner

from rpa_elysium.main import app


runner = CliRunner()


@pytest.fixture(autouse=True)
def detach_log_handlers():
    """The CLI binds logging to the runner's stderr; drop it once the runner is gone."""
    yield
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)


def write_workflow(path, steps, **extra):
    document = {"id": "cli-test", "name": "CLI test", "steps": steps, **extra}
    path.write_text(yaml.safe_dump(document))
    return path


def test_init_writes_example(tmp_path):
    target = tmp_path / "wf.yaml"

    result = runner.invoke(app, ["init", str(target)])

    assert result.exit_code == 0, result.output
    assert yaml.safe_load(target.read_text())["id"] == "backup-reports"


def test_init_refuses_overwrite(tmp_path):
    target = tmp_path / "wf.yaml"
    target.write_text("keep me")

    result = runner.invoke(app, ["init", str(target)])

    assert result.exit_code == 1
    assert target.read_text() == "keep me"


def test_validate_example(tmp_path):
    target = tmp_path / "wf.yaml"
    runner.invoke(app, ["init", str(target)])

    result = runner.invoke(app, ["validate", str(target)])

    assert result.exit_code == 0, result.output
    assert "backup-reports: 3 steps, schedule=0 2 * * *" in result.output
    assert "Valid" in result.output


def test_validate_rejects_unknown_action(tmp_path):
    target = write_workflow(tmp_path / "wf.yaml", [{"id": "x", "action": "desktop.click"}])

    result = runner.invoke(app, ["validate", str(target)])

    assert result.exit_code == 1
    assert "cli-test.x: desktop.click" in result.output


def test_validate_rejects_bad_schema(tmp_path):
    target = tmp_path / "wf.yaml"
    target.write_text(yaml.safe_dump({"name": "no steps"}))

    result = runner.invoke(app, ["validate", str(target)])

    assert result.exit_code == 1
    assert "Invalid" in result.output


def test_run_and_history(tmp_path):
    db = str(tmp_path / "state.db")
    target = write_workflow(
        tmp_path / "wf.yaml",
        [{"id": "say", "action": "echo", "params": {"n": "{{params.n}}"}}],
    )

    result = runner.invoke(app, ["run", str(target), "--param", "n=3", "--db", db])

    assert result.exit_code == 0, result.output
    assert "succeeded" in result.output
    assert "say (echo): succeeded, attempts=1" in result.output

    history = runner.invoke(app, ["history", "cli-test", "--db", db])
    assert history.exit_code == 0, history.output
    assert "cli-test\tv1\tsucceeded\tmanual" in history.output


def test_run_failure_exit_code(tmp_path):
    target = write_workflow(
        tmp_path / "wf.yaml",
        [{"id": "boom", "action": "fail", "params": {"permanent": True}}],
    )

    result = runner.invoke(app, ["run", str(target), "--db", str(tmp_path / "state.db")])

    assert result.exit_code == 1
    assert "boom (fail): failed, attempts=1" in result.output


def test_run_rejects_malformed_param(tmp_path):
    target = write_workflow(tmp_path / "wf.yaml", [{"action": "noop"}])

    result = runner.invoke(app, ["run", str(target), "--param", "novalue", "--db", str(tmp_path / "s.db")])

    assert result.exit_code != 0


def test_history_empty(tmp_path):
    result = runner.invoke(app, ["history", "--db", str(tmp_path / "state.db")])

    assert result.exit_code == 0
    assert "No runs found" in result.output


def test_history_store_error(tmp_path):
    """An unusable database path is reported instead of crashing."""
    blocker = tmp_path / "file.txt"
    blocker.write_text("not a directory")

    result = runner.invoke(app, ["history", "--db", str(blocker / "state.db")])

    assert result.exit_code == 1
    assert "Error:" in result.output
    assert isinstance(result.exception, SystemExit)
