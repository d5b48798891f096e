"""Filesystem actions: copy, move, delete, rename, archive."""

import asyncio
import shutil
import tarfile
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import structlog

from ..core.errors import ExecutionError, ValidationError
from .registry import ActionContext, ActionHandler, ActionRegistry


logger = structlog.get_logger()

ARCHIVE_FORMATS = {"tar.gz": ".tar.gz", "zip": ".zip"}
MAX_RENAME_COUNTER = 9999


class FileAction(ActionHandler):
    """Shared parameter checks for path-based actions."""

    required: tuple[str, ...] = ("source",)

    def validate(self, params: dict[str, Any]) -> None:
        for key in self.required:
            if not params.get(key):
                raise ValidationError(
                    f"Missing required parameter '{key}'",
                    action=self.name,
                    field=key,
                )

    def _source(self, params: dict[str, Any], must_exist: bool = True) -> Path:
        source = Path(params["source"]).expanduser()
        if must_exist and not source.exists():
            raise ExecutionError(
                f"Source does not exist: {source}",
                action=self.name,
                permanent=True,
            )
        return source

    def _target(self, source: Path, destination: Path, overwrite: bool) -> Path:
        target = destination / source.name
        if target.exists() and not overwrite:
            raise ExecutionError(
                f"Destination already exists and overwrite is disabled: {target}",
                action=self.name,
                permanent=True,
            )
        return target


class CopyAction(FileAction):
    """Copy a file or directory into a destination directory."""

    name = "file.copy"
    idempotent = True
    required = ("source", "destination")

    async def execute(self, params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        source = self._source(params)
        destination = Path(params["destination"]).expanduser()
        target = self._target(source, destination, params.get("overwrite", False))

        def _copy() -> None:
            destination.mkdir(parents=True, exist_ok=True)
            if source.is_dir():
                shutil.copytree(source, target, dirs_exist_ok=True)
            else:
                shutil.copy2(source, target)

        await asyncio.to_thread(_copy)
        logger.info("file_copied", source=str(source), target=str(target))
        return {"path": str(target), "affected_paths": [str(target)]}


class MoveAction(FileAction):
    """Move a file or directory into a destination directory."""

    name = "file.move"
    required = ("source", "destination")

    async def execute(self, params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        source = self._source(params)
        destination = Path(params["destination"]).expanduser()
        overwrite = params.get("overwrite", False)
        target = self._target(source, destination, overwrite)

        def _move() -> None:
            destination.mkdir(parents=True, exist_ok=True)
            if target.exists() and overwrite:
                if target.is_dir():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            shutil.move(str(source), str(target))

        await asyncio.to_thread(_move)
        logger.info("file_moved", source=str(source), target=str(target))
        return {"path": str(target), "affected_paths": [str(source), str(target)]}


class DeleteAction(FileAction):
    """Delete a file or directory tree."""

    name = "file.delete"
    idempotent = True

    async def execute(self, params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        missing_ok = params.get("missing_ok", True)
        source = self._source(params, must_exist=not missing_ok)
        if not source.exists():
            return {"deleted": False, "affected_paths": []}

        def _delete() -> None:
            if source.is_dir():
                shutil.rmtree(source)
            else:
                source.unlink()

        await asyncio.to_thread(_delete)
        logger.info("file_deleted", path=str(source))
        return {"deleted": True, "affected_paths": [str(source)]}


class RenameAction(FileAction):
    """
    Rename a file in place using a pattern.

    Pattern variables:
    - ``{name}`` - original filename without extension
    - ``{ext}`` - original extension (without dot)
    - ``{date}`` - current date (YYYY-MM-DD)
    - ``{time}`` - current time (HH-MM-SS)
    - ``{datetime}`` - combined, YYYYMMDD_HHMMSS
    - ``{counter}`` - first integer giving a name that doesn't exist yet
    """

    name = "file.rename"
    required = ("source", "pattern")

    def apply_pattern(self, source: Path, pattern: str, now: Optional[datetime] = None) -> Path:
        now = now or datetime.now()
        new_name = (
            pattern
            .replace("{name}", source.stem)
            .replace("{ext}", source.suffix.lstrip("."))
            .replace("{date}", now.strftime("%Y-%m-%d"))
            .replace("{time}", now.strftime("%H-%M-%S"))
            .replace("{datetime}", now.strftime("%Y%m%d_%H%M%S"))
        )

        if "{counter}" in new_name:
            for counter in range(1, MAX_RENAME_COUNTER + 1):
                candidate = new_name.replace("{counter}", str(counter))
                if not (source.parent / candidate).exists():
                    break
            new_name = candidate

        return source.parent / new_name

    async def execute(self, params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        source = self._source(params)
        target = self.apply_pattern(source, params["pattern"])

        if target == source:
            return {"path": str(source), "renamed": False, "affected_paths": []}
        if target.exists():
            raise ExecutionError(
                f"Destination already exists: {target}",
                action=self.name,
                permanent=True,
            )

        await asyncio.to_thread(source.rename, target)
        logger.info("file_renamed", source=str(source), target=str(target))
        return {"path": str(target), "renamed": True, "affected_paths": [str(target)]}


class ArchiveAction(FileAction):
    """Pack a file or directory into a tar.gz or zip archive."""

    name = "file.archive"
    required = ("source", "destination")

    def validate(self, params: dict[str, Any]) -> None:
        super().validate(params)
        fmt = params.get("format", "tar.gz")
        if fmt not in ARCHIVE_FORMATS:
            raise ValidationError(
                f"Unsupported archive format '{fmt}'",
                action=self.name,
                field="format",
            )

    async def execute(self, params: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        source = self._source(params)
        destination = Path(params["destination"]).expanduser()
        fmt = params.get("format", "tar.gz")
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        archive = destination / f"{source.name}_{stamp}{ARCHIVE_FORMATS[fmt]}"

        def _archive() -> None:
            destination.mkdir(parents=True, exist_ok=True)
            if fmt == "zip":
                with zipfile.ZipFile(archive, "w", zipfile.ZIP_DEFLATED) as zf:
                    if source.is_dir():
                        for path in sorted(source.rglob("*")):
                            zf.write(path, path.relative_to(source.parent))
                    else:
                        zf.write(source, source.name)
            else:
                with tarfile.open(archive, "w:gz") as tf:
                    tf.add(source, arcname=source.name)

            if params.get("delete_source", False):
                if source.is_dir():
                    shutil.rmtree(source)
                else:
                    source.unlink()

        await asyncio.to_thread(_archive)
        logger.info("file_archived", source=str(source), archive=str(archive), format=fmt)
        return {"archive": str(archive), "format": fmt, "affected_paths": [str(archive)]}


def register_filesystem_actions(registry: ActionRegistry) -> None:
    """Register file actions under the ``file.`` namespace."""
    for handler in (CopyAction(), MoveAction(), DeleteAction(), RenameAction(), ArchiveAction()):
        registry.register(handler.name, handler)
