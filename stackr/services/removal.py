"""
Removed Stack Handling Service

Detects stacks that disappeared from the stacks directory, archives their
persistent data and then removes their Docker resources.
"""

import asyncio
from collections.abc import Callable, Iterable
from pathlib import Path

import docker
import structlog

from ..constants import DOCKER_COMPOSE_PROJECT, LOCAL_COMPOSE_FILE
from ..core.archive import ArchiveManager
from ..core.config_loader import StackrConfig
from ..core.exceptions import ArchiveError, DockerCommandError
from ..core.settings import CLEANUP_TIMEOUT
from .stack_runner import StackRunner

logger = structlog.get_logger()


class RemovalTracker:
    """Holds the last known set of stack names."""

    def __init__(self):
        self._stacks: frozenset[str] = frozenset()

    @property
    def stacks(self) -> frozenset[str]:
        return self._stacks

    def initialize(self, names: Iterable[str]) -> None:
        self._stacks = frozenset(names)

    def update(self, current: Iterable[str]) -> list[str]:
        """Replace the snapshot and return names that were removed, sorted."""
        current_set = frozenset(current)
        removed = sorted(self._stacks - current_set)
        self._stacks = current_set
        return removed


class StackCleaner:
    """Removes the Docker resources of a stack."""

    def __init__(
        self,
        stacks_dir: Path,
        runner: StackRunner,
        docker_client_factory: Callable[[], docker.DockerClient] = docker.from_env,
    ):
        self.stacks_dir = Path(stacks_dir)
        self.runner = runner
        self.docker_client_factory = docker_client_factory
        self.logger = logger.bind(component="stack_cleaner")

    async def cleanup(self, stack: str, timeout: float = CLEANUP_TIMEOUT) -> None:
        """compose down when the compose file is still there, label cleanup otherwise.

        Raises:
            DockerCommandError: If compose down or a container/volume removal fails
            asyncio.TimeoutError: If cleanup exceeds the timeout
        """
        compose_path = self.stacks_dir / stack / LOCAL_COMPOSE_FILE
        if compose_path.is_file():
            self.logger.info("Running docker compose down", stack=stack)
            result = await self.runner.down(compose_path, timeout=timeout)
            self.logger.info(
                "docker compose down completed", stack=stack, output=result.stderr.strip()
            )
            return

        self.logger.info("Compose file gone, cleaning by project label", stack=stack)
        await asyncio.wait_for(asyncio.to_thread(self._cleanup_by_label, stack), timeout=timeout)

    def _cleanup_by_label(self, stack: str) -> None:
        filters = {"label": f"{DOCKER_COMPOSE_PROJECT}={stack}"}
        try:
            client = self.docker_client_factory()
        except docker.errors.DockerException as e:
            raise DockerCommandError(f"failed to connect to docker: {e}") from e

        try:
            containers = client.containers.list(all=True, filters=filters)
            for container in containers:
                container.remove(force=True)
            self._log_count("containers", stack, len(containers))
        except docker.errors.APIError as e:
            raise DockerCommandError(f"failed to remove containers: {e}") from e

        try:
            volumes = client.volumes.list(filters=filters)
            for volume in volumes:
                volume.remove(force=True)
            self._log_count("volumes", stack, len(volumes))
        except docker.errors.APIError as e:
            raise DockerCommandError(f"failed to remove volumes: {e}") from e

        try:
            networks = client.networks.list(filters=filters)
        except docker.errors.APIError as e:
            raise DockerCommandError(f"failed to list networks: {e}") from e

        removed = 0
        for network in networks:
            try:
                network.remove()
                removed += 1
            except docker.errors.APIError as e:
                # Still in use by containers outside the project
                self.logger.warning(
                    "Failed to remove network", stack=stack, network=network.name, error=str(e)
                )
        self._log_count("networks", stack, removed)

    def _log_count(self, kind: str, stack: str, count: int) -> None:
        if count:
            self.logger.info(f"Removed {kind}", stack=stack, count=count)
        else:
            self.logger.info(f"No {kind} found", stack=stack)


class RemovalHandler:
    """Archive-then-cleanup for stacks that disappeared from the inventory."""

    def __init__(
        self,
        config: StackrConfig,
        archive_manager: ArchiveManager | None = None,
        cleaner: StackCleaner | None = None,
        cleanup_timeout: float = CLEANUP_TIMEOUT,
    ):
        self.config = config
        self.tracker = RemovalTracker()
        self.archive_manager = archive_manager or ArchiveManager(
            backup_dir=config.backup_path,
            stacks_dir=config.stacks_path,
            pool_bases=config.pool_bases,
        )
        self.cleaner = cleaner or StackCleaner(config.stacks_path, StackRunner(config))
        self.continue_on_archive_error = config.settings.removal.continue_on_archive_error
        self.cleanup_timeout = cleanup_timeout
        self.logger = logger.bind(service="removal_handler")

    def initialize(self, names: Iterable[str]) -> None:
        """Seed the tracker so pre-existing stacks are not reported as removed."""
        self.tracker.initialize(names)
        self.logger.info("Initialized removal tracker", stacks=len(self.tracker.stacks))

    async def check_for_removals(self, current: Iterable[str]) -> list[str]:
        """Handle every stack missing from current; returns the removed names."""
        removed = self.tracker.update(current)
        if not removed:
            return []

        self.logger.info("Detected removed stacks", count=len(removed), stacks=removed)
        for stack in removed:
            await self.handle_removed_stack(stack)
        return removed

    async def handle_removed_stack(self, stack: str) -> bool:
        """Archive then clean up one stack; returns whether cleanup succeeded."""
        self.logger.info("Handling removal of stack", stack=stack)

        try:
            info = await self.archive_manager.archive_stack(stack)
            self.logger.info("Archived stack", stack=stack, archive_path=info.archive_path)
        except ArchiveError as e:
            self.logger.error("Failed to archive stack", stack=stack, error=str(e))
            if not self.continue_on_archive_error:
                self.logger.warning("Skipping cleanup due to archive failure", stack=stack)
                return False
            self.logger.info("Continuing with cleanup despite archive failure", stack=stack)

        try:
            await asyncio.wait_for(
                self.cleaner.cleanup(stack, timeout=self.cleanup_timeout),
                timeout=self.cleanup_timeout,
            )
        except (DockerCommandError, asyncio.TimeoutError) as e:
            self.logger.error("Failed to clean up stack", stack=stack, error=str(e) or "timed out")
            return False

        self.logger.info("Cleaned up stack", stack=stack)
        return True
