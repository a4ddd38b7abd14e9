"""
Deployment Service

Top-level deploy: update the image tag in the env file, sync remote stacks,
run the stack and roll the env file back when anything fails.
"""

import asyncio
from pathlib import Path

import structlog

from ..core import envfile
from ..core.config_loader import StackrConfig
from ..core.exceptions import DeployCommandError, EnvFileError, StackrError
from ..core.settings import DEPLOY_TIMEOUT
from ..models import DeployResult
from .remote import RemoteStackManager
from .resolver import StackResolver
from .stack_runner import StackRunner

logger = structlog.get_logger()


class DeploymentEngine:
    """Serialized deploys with snapshot/rollback of the env file.

    After any deploy() call the env file either holds the new tag with the
    stack running, or is byte-for-byte what it was before the call.
    """

    def __init__(
        self,
        config: StackrConfig,
        resolver: StackResolver | None = None,
        remote_manager: RemoteStackManager | None = None,
        runner: StackRunner | None = None,
        timeout: float = DEPLOY_TIMEOUT,
    ):
        self.config = config
        self.resolver = resolver or StackResolver(config)
        self.remote_manager = remote_manager or RemoteStackManager(config)
        self.runner = runner or StackRunner(config, self.remote_manager)
        self.timeout = timeout
        self._lock = asyncio.Lock()
        self.logger = logger.bind(service="deployment_engine")

    async def deploy(self, stack: str, tag_var: str, tag: str) -> DeployResult:
        """Deploy a stack at the given tag.

        Args:
            stack: Stack name
            tag_var: Env file variable holding the image tag
            tag: New tag value

        Returns:
            DeployResult with the previous tag and captured stdout

        Raises:
            EnvFileError: The env file could not be read or updated; nothing changed
            StackResolutionError: The stack could not be resolved; env file restored
            DeployCommandError: Stack execution failed or timed out; env file restored
        """
        async with self._lock:
            return await self._deploy(stack, tag_var, tag)

    async def teardown(self, stack: str) -> str:
        """docker compose down for a stack, serialized with deploys."""
        async with self._lock:
            info = self.resolver.resolve(stack)
            return await self.runner.teardown(info, timeout=self.timeout)

    async def provision_vars(self, stack: str) -> list[str]:
        """Append placeholders for the stack's unknown compose variables.

        Holds the deploy lock while the env file is rewritten.
        """
        async with self._lock:
            info = self.resolver.resolve(stack)
            return self.runner.provision_vars(info)

    async def sync_remote(self, stack: str) -> str:
        async with self._lock:
            return await self.remote_manager.sync(stack)

    async def clean_remote(self, stack: str) -> Path:
        async with self._lock:
            return await self.remote_manager.clean(stack)

    async def _deploy(self, stack: str, tag_var: str, tag: str) -> DeployResult:
        env_path = self.config.env_path
        self.logger.info("Starting deployment", stack=stack, tag=tag, tag_var=tag_var)

        snapshot = envfile.snapshot_file(env_path)
        try:
            return await self._apply(stack, tag_var, tag)
        except BaseException as e:
            # Includes cancellation
            self._rollback(snapshot, tag_var, type(e).__name__)
            raise

    async def _apply(self, stack: str, tag_var: str, tag: str) -> DeployResult:
        previous = envfile.update(self.config.env_path, tag_var, tag)
        self.logger.info("Updated tag variable", tag_var=tag_var, tag=tag, previous=previous)

        info = self.resolver.resolve(stack)
        if info.is_remote:
            await self._sync_remote(stack)

        try:
            stdout = await asyncio.wait_for(
                self.runner.deploy(info, timeout=self.timeout), timeout=self.timeout
            )
        except DeployCommandError as e:
            self.logger.error(
                "Deployment failed",
                stack=stack,
                error=e.message,
                stdout=e.stdout,
                stderr=e.stderr,
            )
            raise DeployCommandError(
                f"deployment failed for stack={stack}: {e.message}",
                exit_code=e.exit_code or 1,
                stdout=e.stdout,
                stderr=e.stderr,
            ) from e
        except asyncio.TimeoutError as e:
            self.logger.error("Deployment timed out", stack=stack, timeout=self.timeout)
            raise DeployCommandError(
                f"deployment timed out for stack={stack} after {self.timeout:g}s", exit_code=1
            ) from e
        except Exception as e:
            self.logger.error("Deployment failed", stack=stack, error=str(e))
            raise DeployCommandError(f"deployment failed for stack={stack}: {e}") from e

        self.logger.info("Deployment finished", stack=stack, tag=tag)
        return DeployResult(stack=stack, tag=tag, previous_tag=previous, stdout=stdout)

    async def _sync_remote(self, stack: str) -> None:
        env_values = envfile.read_env_values(self.config.env_path)
        try:
            await self.remote_manager.ensure_synced(stack, env_values)
        except (StackrError, ValueError) as e:
            # Deploy proceeds on the cached working copy
            self.logger.warning(
                "Git sync failed, using cached version", stack=stack, error=str(e)
            )

    def _rollback(self, snapshot: envfile.EnvSnapshot, tag_var: str, reason: str) -> None:
        try:
            envfile.restore(self.config.env_path, snapshot)
        except EnvFileError as e:
            self.logger.error(
                "Failed to roll back env file", tag_var=tag_var, reason=reason, error=str(e)
            )
            return
        self.logger.info("Rolled back env file", tag_var=tag_var, reason=reason)
