"""Copy the persistent data of a stack: archives of removed stacks and on-demand backups."""

import asyncio
import shutil
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from ..constants import ARCHIVE_DATE_FORMAT
from .exceptions import ArchiveError

logger = structlog.get_logger()

# Stack subdirectories that hold operator-managed state
ARCHIVED_STACK_DIRS = ("config", "dashboards", "dynamic")


class ArchiveInfo(BaseModel):
    """Result of archiving one stack."""

    stack_name: str = Field(description="Stack that was archived")
    archive_path: str = Field(description="Destination directory of the archive")
    copied: list[str] = Field(default_factory=list, description="Source paths that were copied")
    skipped: list[str] = Field(
        default_factory=list, description="Source paths that no longer existed"
    )
    timestamp: str = Field(description="Timestamp embedded in the archive directory name")


class ArchiveManager:
    """Copies config directories and pool volumes of a stack under backup_dir.

    Removed stacks go to <backup_dir>/archives/<stack>-<timestamp>; on-demand
    backups go to <backup_dir>/<timestamp>/<stack>.
    """

    def __init__(self, backup_dir: Path, stacks_dir: Path, pool_bases: dict[str, Path]):
        self.backup_dir = Path(backup_dir)
        self.stacks_dir = Path(stacks_dir)
        self.pool_bases = dict(pool_bases)
        self.logger = logger.bind(component="archive_manager")

    def archive_path_for(self, stack: str, timestamp: str) -> Path:
        return self.backup_dir / "archives" / f"{stack}-{timestamp}"

    def backup_path_for(self, stack: str, timestamp: str) -> Path:
        return self.backup_dir / timestamp / stack

    async def archive_stack(self, stack: str) -> ArchiveInfo:
        """Archive a stack's config directories and storage pool volumes.

        Sources that no longer exist are skipped. Pool volumes are archived
        even when the stack directory itself is already gone.

        Raises:
            ArchiveError: If the destination cannot be created or a copy fails
        """
        return await asyncio.to_thread(self._copy_stack, stack, self.archive_path_for, "archive")

    async def backup_stack(self, stack: str) -> ArchiveInfo:
        """Back up a live stack's config directories and storage pool volumes.

        Raises:
            ArchiveError: If the destination cannot be created or a copy fails
        """
        return await asyncio.to_thread(self._copy_stack, stack, self.backup_path_for, "backup")

    def _copy_stack(
        self, stack: str, path_for: Callable[[str, str], Path], kind: str
    ) -> ArchiveInfo:
        timestamp = datetime.now().strftime(ARCHIVE_DATE_FORMAT)
        archive_path = path_for(stack, timestamp)
        try:
            archive_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ArchiveError(f"failed to create {kind} directory {archive_path}: {e}") from e

        self.logger.info(
            "Copying stack data", kind=kind, stack=stack, archive_path=str(archive_path)
        )

        sources: list[tuple[Path, Path]] = [
            (self.stacks_dir / stack / name, archive_path / name) for name in ARCHIVED_STACK_DIRS
        ]
        for pool_name, pool_base in sorted(self.pool_bases.items()):
            sources.append((pool_base / stack, archive_path / f"pool_{pool_name.lower()}"))

        info = ArchiveInfo(stack_name=stack, archive_path=str(archive_path), timestamp=timestamp)
        for src, dest in sources:
            if not src.is_dir():
                info.skipped.append(str(src))
                continue
            try:
                shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
            except (OSError, shutil.Error) as e:
                raise ArchiveError(f"failed to {kind} {src}: {e}") from e
            info.copied.append(str(src))

        self.logger.info(
            "Stack data copied",
            kind=kind,
            stack=stack,
            copied=len(info.copied),
            skipped=len(info.skipped),
        )
        return info
