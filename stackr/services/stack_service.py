"""
Stack Management Service

Request validation and result formatting for the deploy, job, status and
stack maintenance tools.
"""

import re
from pathlib import Path
from typing import Any

import structlog
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent

from ..constants import LATEST_TAG, SEMVER_TAG_PATTERN, TAG_ENV_SUFFIX
from ..core import envfile
from ..core.archive import ArchiveManager
from ..core.config_loader import StackrConfig
from ..core.exceptions import (
    ConfigurationError,
    DeployCommandError,
    JobNotFoundError,
    StackrError,
    StackResolutionError,
)
from ..models import StackInfo
from .deploy import DeploymentEngine
from .labels import is_auto_deploy_enabled
from .remote import RemoteStackManager
from .resolver import StackResolver
from .scheduler import CronScheduler

SEMVER_TAG = re.compile(SEMVER_TAG_PATTERN)


def tag_variable(stack: str) -> str:
    """Env variable holding a stack's image tag, e.g. MYAPP_IMAGE_TAG."""
    return stack.upper() + TAG_ENV_SUFFIX


def is_valid_tag(tag: str) -> bool:
    return tag == LATEST_TAG or SEMVER_TAG.match(tag) is not None


def _error(message: str, **extra: Any) -> ToolResult:
    return ToolResult(
        content=[TextContent(type="text", text=f"Error: {message}")],
        structured_content={"success": False, "error": message, **extra},
    )


class StackService:
    """Service for deploy, job and status requests."""

    def __init__(
        self,
        config: StackrConfig,
        deployment_engine: DeploymentEngine,
        scheduler: CronScheduler,
        resolver: StackResolver | None = None,
        remote_manager: RemoteStackManager | None = None,
        archive_manager: ArchiveManager | None = None,
    ):
        self.config = config
        self.deployment_engine = deployment_engine
        self.scheduler = scheduler
        self.resolver = resolver or deployment_engine.resolver
        self.remote_manager = remote_manager or deployment_engine.remote_manager
        self.archive_manager = archive_manager or ArchiveManager(
            backup_dir=config.backup_path,
            stacks_dir=config.stacks_path,
            pool_bases=config.pool_bases,
        )
        self.logger = structlog.get_logger().bind(service="stack_service")

    def _auto_deploy_enabled(self, info: StackInfo) -> bool:
        """Remote stacks that are not cloned yet have nothing to check."""
        if not info.compose_path.is_file():
            return True
        env_values = envfile.read_env_values(self.config.env_path)
        return is_auto_deploy_enabled(info.compose_path, env_values, stack=info.name)

    async def deploy_stack(self, stack: str, tag: str) -> ToolResult:
        """Validate a deploy request and run it through the deployment engine."""
        stack = (stack or "").strip()
        tag = (tag or "").strip()
        if not stack:
            return _error("stack is required")
        if not tag:
            return _error("tag is required", stack=stack)
        if not is_valid_tag(tag):
            return _error(
                "tag must be 'latest' or semver format (v1.2.3 or v1.2.3-prerelease)",
                stack=stack,
            )

        try:
            info = self.resolver.resolve(stack)
        except (StackResolutionError, ConfigurationError) as e:
            return _error(str(e), stack=stack)

        try:
            enabled = self._auto_deploy_enabled(info)
        except StackrError as e:
            return _error(f"failed to check auto-deploy status: {e}", stack=stack)
        if not enabled:
            return _error("auto-deployment is disabled for this stack", stack=stack)

        try:
            result = await self.deployment_engine.deploy(stack, tag_variable(stack), tag)
        except DeployCommandError as e:
            details = e.to_dict()
            return ToolResult(
                content=[TextContent(type="text", text=self._format_failure(stack, details))],
                structured_content={"success": False, **details},
            )
        except StackrError as e:
            self.logger.error("Deploy request failed", stack=stack, error=str(e))
            return _error(str(e), stack=stack)

        payload = result.model_dump()
        text = f"Deployed {stack} at {tag}"
        if result.previous_tag:
            text += f" (previous: {result.previous_tag})"
        return ToolResult(
            content=[TextContent(type="text", text=text)],
            structured_content={"success": True, **payload},
        )

    def _format_failure(self, stack: str, details: dict[str, str]) -> str:
        lines = [f"Deployment of {stack} failed: {details['error']}"]
        if details["stderr"]:
            lines.append("")
            lines.append(details["stderr"])
        return "\n".join(lines)

    async def run_job(
        self, stack: str, service: str, command: list[str] | None = None
    ) -> ToolResult:
        """Run a cron-labelled service now, optionally overriding its command."""
        try:
            result = await self.scheduler.run_job_manually(stack, service, command or None)
        except JobNotFoundError as e:
            return _error(str(e), stack=stack, service=service)
        except (StackrError, TimeoutError) as e:
            self.logger.error("Manual job run failed", stack=stack, service=service, error=str(e))
            return _error(str(e) or "job timed out", stack=stack, service=service)

        payload = result.model_dump()
        status = "finished" if result.success else f"failed with exit code {result.exit_code}"
        return ToolResult(
            content=[
                TextContent(
                    type="text",
                    text=f"Job {stack}/{service} ({result.container_name}) {status}",
                )
            ],
            structured_content={"success": result.success, **payload},
        )

    async def list_stacks(self) -> ToolResult:
        """Every classified stack with its type and cron jobs."""
        try:
            stacks = self.resolver.discover_all()
            jobs = self.scheduler.discover_jobs()
        except StackrError as e:
            return _error(str(e))

        entries = []
        for info in stacks:
            entries.append(
                {
                    "name": info.name,
                    "type": info.type.value,
                    "compose_path": str(info.compose_path),
                    "jobs": [
                        {"service": job.service, "schedule": job.schedule or None}
                        for job in jobs
                        if job.stack == info.name
                    ],
                }
            )

        lines = [f"{len(entries)} stack(s)"]
        lines.extend(f"  {e['name']} ({e['type']}, {len(e['jobs'])} job(s))" for e in entries)
        return ToolResult(
            content=[TextContent(type="text", text="\n".join(lines))],
            structured_content={"success": True, "stacks": entries},
        )

    async def stack_status(self, stack: str) -> ToolResult:
        """Type, current tag and remote working copy state of one stack."""
        try:
            info = self.resolver.resolve(stack)
            env_values = envfile.read_env_values(self.config.env_path)
        except StackrError as e:
            return _error(str(e), stack=stack)

        tag_var = tag_variable(stack)
        status: dict[str, Any] = {
            "success": True,
            "stack": stack,
            "type": info.type.value,
            "compose_path": str(info.compose_path),
            "compose_present": Path(info.compose_path).is_file(),
            "tag_var": tag_var,
            "tag": env_values.get(tag_var),
        }
        if info.is_remote:
            remote = await self.remote_manager.status(stack)
            status["remote"] = remote.model_dump(mode="json")

        text = f"{stack}: {info.type.value} stack, {tag_var}={status['tag'] or '(unset)'}"
        return ToolResult(
            content=[TextContent(type="text", text=text)],
            structured_content=status,
        )

    async def teardown_stack(self, stack: str) -> ToolResult:
        """docker compose down for one stack; volumes are kept."""
        stack = (stack or "").strip()
        if not stack:
            return _error("stack is required")

        try:
            stdout = await self.deployment_engine.teardown(stack)
        except DeployCommandError as e:
            details = e.to_dict()
            return ToolResult(
                content=[TextContent(type="text", text=f"Teardown of {stack} failed: {e.message}")],
                structured_content={"success": False, "stack": stack, **details},
            )
        except (StackrError, TimeoutError) as e:
            self.logger.error("Teardown failed", stack=stack, error=str(e))
            return _error(str(e) or "teardown timed out", stack=stack)

        return ToolResult(
            content=[TextContent(type="text", text=f"Tore down {stack}")],
            structured_content={"success": True, "stack": stack, "stdout": stdout},
        )

    async def backup_stack(self, stack: str) -> ToolResult:
        """Copy a stack's config directories and pool volumes into the backup dir."""
        stack = (stack or "").strip()
        if not stack:
            return _error("stack is required")

        try:
            self.resolver.resolve(stack)
            info = await self.archive_manager.backup_stack(stack)
        except StackrError as e:
            self.logger.error("Backup failed", stack=stack, error=str(e))
            return _error(str(e), stack=stack)

        return ToolResult(
            content=[
                TextContent(
                    type="text",
                    text=f"Backed up {stack} to {info.archive_path} "
                    f"({len(info.copied)} copied, {len(info.skipped)} skipped)",
                )
            ],
            structured_content={"success": True, **info.model_dump()},
        )

    async def get_vars(self, stack: str) -> ToolResult:
        """Append empty entries for the stack's unknown compose variables to the env file."""
        stack = (stack or "").strip()
        if not stack:
            return _error("stack is required")

        try:
            added = await self.deployment_engine.provision_vars(stack)
        except StackrError as e:
            return _error(str(e), stack=stack)

        env_file = str(self.config.env_path)
        if added:
            text = f"Added {', '.join(added)} to {env_file}"
        else:
            text = f"No missing variables for {stack}"
        return ToolResult(
            content=[TextContent(type="text", text=text)],
            structured_content={
                "success": True,
                "stack": stack,
                "added": added,
                "env_file": env_file,
            },
        )

    async def sync_remote(self, stack: str) -> ToolResult:
        """Clone or refresh a remote stack at the ref the env file selects."""
        stack = (stack or "").strip()
        if not stack:
            return _error("stack is required")

        try:
            ref = await self.deployment_engine.sync_remote(stack)
        except (StackrError, ValueError) as e:
            self.logger.error("Remote sync failed", stack=stack, error=str(e))
            return _error(str(e), stack=stack)

        return ToolResult(
            content=[TextContent(type="text", text=f"{stack} synced at {ref}")],
            structured_content={"success": True, "stack": stack, "ref": ref},
        )

    async def clean_remote(self, stack: str) -> ToolResult:
        """Delete a remote stack's working copy."""
        stack = (stack or "").strip()
        if not stack:
            return _error("stack is required")

        try:
            removed = await self.deployment_engine.clean_remote(stack)
        except StackrError as e:
            return _error(str(e), stack=stack)

        return ToolResult(
            content=[TextContent(type="text", text=f"Removed {removed}")],
            structured_content={"success": True, "stack": stack, "removed": str(removed)},
        )
