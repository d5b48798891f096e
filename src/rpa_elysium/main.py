"""
Main entry point for rpa-elysium.

Command line interface, structured logging setup, and the long-running
service (supervisor, scheduler, health server, signal handlers).
"""

import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import structlog
import typer
import yaml
from aiohttp import web
from dotenv import load_dotenv

from .actions import default_registry
from .core.config import ConfigLoader, FrameworkConfig, example_workflow
from .core.errors import ConfigError, FrameworkError
from .core.models import Run, RunStatus, Workflow
from .core.state import StateStore
from .orchestrator.executor import ExecutionEngine
from .orchestrator.supervisor import Supervisor


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structured logging. LOG_FORMAT=json switches to JSON lines."""
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if os.getenv("LOG_FORMAT") == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


class HealthServer:
    """Simple HTTP health check server."""

    def __init__(self, supervisor: Supervisor, host: str = "0.0.0.0", port: int = 8080):
        self.supervisor = supervisor
        self.host = host
        self.port = port
        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_get("/ready", self._ready_handler)
        return app

    async def start(self) -> None:
        """Start the health server."""
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info("health_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        """Stop the health server."""
        if self._runner:
            await self._runner.cleanup()
            logger.info("health_server_stopped")

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Basic health check - is the process alive."""
        return web.json_response({"status": "healthy"})

    async def _ready_handler(self, request: web.Request) -> web.Response:
        """Readiness check - is the supervisor ready for work."""
        status = await self.supervisor.get_status()

        if status["state"] in ("running", "paused"):
            return web.json_response({"status": "ready", "state": status["state"]})
        else:
            return web.json_response(
                {"status": "not_ready", "state": status["state"]},
                status=503,
            )

    async def _status_handler(self, request: web.Request) -> web.Response:
        """Detailed status information."""
        status = await self.supervisor.get_status()
        return web.json_response(status)


class Application:
    """Main application container."""

    def __init__(self, config: FrameworkConfig):
        self.config = config
        self.supervisor: Optional[Supervisor] = None
        self.health_server: Optional[HealthServer] = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Start all components."""
        logger.info("application_starting", name=self.config.name)

        self.supervisor = Supervisor(config=self.config)
        await self.supervisor.start()

        if self.config.health.enabled:
            self.health_server = HealthServer(
                self.supervisor,
                host=self.config.health.host,
                port=self.config.health.port,
            )
            await self.health_server.start()

        logger.info("application_started")

    async def stop(self) -> None:
        """Stop all components."""
        logger.info("application_stopping")

        if self.health_server:
            await self.health_server.stop()

        if self.supervisor:
            await self.supervisor.stop()

        logger.info("application_stopped")

    async def run(self) -> None:
        """Run until shutdown signal."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


async def serve(config: FrameworkConfig) -> None:
    """Run the service until SIGINT/SIGTERM."""
    application = Application(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        application.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await application.start()
        await application.run()
    finally:
        await application.stop()


# ==================== CLI ====================

app = typer.Typer(help="Workflow automation engine: run, schedule and inspect workflows")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
) -> None:
    """rpa-elysium CLI entry point."""
    load_dotenv()
    configure_logging(log_level)


def _load_config(config_path: Optional[Path]) -> FrameworkConfig:
    """Load the framework config; DATA_DIR and HEALTH_PORT override the file."""
    path = config_path or Path(os.getenv("CONFIG_PATH", "./config/framework.yaml"))
    if config_path is None and not path.exists():
        config = FrameworkConfig()
    else:
        config = ConfigLoader().load_framework_config(str(path))

    data_dir = os.getenv("DATA_DIR")
    if data_dir:
        config.state.db_path = str(Path(data_dir) / "state.db")
    port = os.getenv("HEALTH_PORT")
    if port:
        config.health.port = int(port)
    return config


def _parse_params(values: list[str]) -> dict[str, Any]:
    """Parse ``key=value`` pairs. Values are read as YAML scalars."""
    params: dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{item}'", param_hint="--param")
        params[key.strip()] = yaml.safe_load(raw) if raw else ""
    return params


def _pick_workflow(workflows: list[Workflow], workflow_id: Optional[str]) -> Workflow:
    if workflow_id is None:
        if len(workflows) > 1:
            ids = ", ".join(w.id for w in workflows)
            raise typer.BadParameter(f"File defines several workflows ({ids}); pass --workflow")
        return workflows[0]
    for workflow in workflows:
        if workflow.id == workflow_id:
            return workflow
    raise typer.BadParameter(f"Workflow '{workflow_id}' not found in file", param_hint="--workflow")


def _print_run(run: Run) -> None:
    typer.echo(f"Run {run.run_id} ({run.workflow_id} v{run.workflow_version}): {run.status.value}")
    for result in run.step_results:
        line = f"  [{result.position}] {result.step_id} ({result.action}): {result.status.value}, attempts={result.attempts}"
        if result.error:
            line += f" - {result.error.get('message')}"
        typer.echo(line)
    if run.error and not run.step_results:
        typer.echo(f"  error: {run.error.get('message')}")


@app.command()
def init(
    path: Path = typer.Argument(Path("workflow.yaml"), help="Where to write the example"),
) -> None:
    """Write an example workflow definition."""
    if path.exists():
        typer.secho(f"Refusing to overwrite existing file: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    path.parent.mkdir(parents=True, exist_ok=True)
    document = example_workflow()
    if path.suffix == ".json":
        path.write_text(json.dumps(document, indent=2) + "\n")
    else:
        path.write_text(yaml.safe_dump(document, sort_keys=False))
    typer.echo(f"Created example workflow: {path}")


@app.command()
def validate(path: Path = typer.Argument(..., help="Workflow file to validate")) -> None:
    """Validate a workflow file: schema, schedule, and action types."""
    registry = default_registry()
    try:
        workflows = ConfigLoader().load_workflow_file(str(path))
    except ConfigError as e:
        typer.secho(f"Invalid: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    unknown = [
        f"{w.id}.{s.id}: {s.action}"
        for w in workflows
        for s in w.steps
        if s.action not in registry
    ]
    for workflow in workflows:
        schedule = workflow.schedule or "manual"
        state = "enabled" if workflow.enabled else "disabled"
        line = f"{workflow.id}: {len(workflow.steps)} steps, schedule={schedule}, {state}"
        if workflow.watch:
            line += f", watch={','.join(workflow.watch.paths)}"
        typer.echo(line)
    if unknown:
        typer.secho("Unknown action types:", fg=typer.colors.RED)
        for item in unknown:
            typer.echo(f"  {item}")
        raise typer.Exit(code=1)
    typer.echo("Valid")


@app.command()
def run(
    path: Path = typer.Argument(..., help="Workflow file to execute"),
    param: list[str] = typer.Option([], "--param", "-p", help="Workflow parameter as key=value"),
    workflow_id: Optional[str] = typer.Option(None, "--workflow", "-w", help="Workflow id within the file"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Framework config file"),
    db_path: Optional[str] = typer.Option(None, "--db", help="Override state database path"),
) -> None:
    """Execute a workflow file once and record the run."""
    try:
        config = _load_config(config_path)
        workflows = ConfigLoader().load_workflow_file(str(path), config.retry.to_policy())
    except ConfigError as e:
        typer.secho(f"Invalid: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    workflow = _pick_workflow(workflows, workflow_id)
    params = _parse_params(param)

    async def _execute() -> Run:
        store = StateStore(db_path or config.state.db_path)
        await store.initialize()
        try:
            stored = await store.save_workflow(workflow)
            engine = ExecutionEngine(
                default_registry(freeze=True),
                state_store=store,
                config=config.engine,
            )
            return await engine.execute(stored, params)
        finally:
            await store.close()

    try:
        result = asyncio.run(_execute())
    except FrameworkError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    _print_run(result)
    if result.status != RunStatus.SUCCEEDED:
        raise typer.Exit(code=1)


@app.command()
def history(
    workflow_id: Optional[str] = typer.Argument(None, help="Only show runs of this workflow"),
    limit: int = typer.Option(20, "--limit", "-n", min=1),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c"),
    db_path: Optional[str] = typer.Option(None, "--db"),
) -> None:
    """List recorded runs, newest first."""
    try:
        config = _load_config(config_path)
    except ConfigError as e:
        typer.secho(f"Invalid: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _list() -> list[Run]:
        store = StateStore(db_path or config.state.db_path)
        await store.initialize()
        try:
            return await store.list_runs(workflow_id=workflow_id, limit=limit)
        finally:
            await store.close()

    try:
        runs = asyncio.run(_list())
    except FrameworkError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    if not runs:
        typer.echo("No runs found")
        return
    for item in runs:
        duration = item.duration_seconds
        duration_text = f"{duration:.2f}s" if duration is not None else "-"
        typer.echo(
            f"{item.run_id}\t{item.workflow_id}\tv{item.workflow_version}\t"
            f"{item.status.value}\t{item.trigger.value}\t{duration_text}"
        )


@app.command("serve")
def serve_command(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Framework config file"),
) -> None:
    """Run the scheduler and health server until interrupted."""
    try:
        config = _load_config(config_path)
    except ConfigError as e:
        typer.secho(f"Invalid: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    try:
        asyncio.run(serve(config))
    except Exception:
        logger.exception("application_error")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
