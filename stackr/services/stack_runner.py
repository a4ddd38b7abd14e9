"""Runs docker compose for a stack with its layered environment.

This is the stack execution primitive used by deploys, cron jobs and removal
cleanup. Every invocation reads the env file fresh; nothing is cached.
"""

import os
import re
import time
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

import structlog

from ..constants import (
    ENV_COMPOSE_DIRECTORY,
    ENV_COMPOSE_FILE_PATH,
    ENV_POOL_PREFIX,
    ENV_PROV_DOMAIN,
    STORAGE_VARS,
)
from ..core import envfile
from ..core.config_loader import StackrConfig
from ..core.exceptions import (
    ConfigurationError,
    DeployCommandError,
    DockerCommandError,
    RetryCancelledError,
    RetryExhaustedError,
)
from ..core.retry import RetryPolicy, with_backoff
from ..core.settings import DEPLOY_TIMEOUT, DOCKER_CLI_TIMEOUT
from ..core.subprocess_manager import SubprocessResult, run_command
from ..models import StackInfo
from .remote import RemoteStackManager

logger = structlog.get_logger()

COMPOSE_VAR_PATTERN = re.compile(r"(?m)(^|[^$])\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Legacy per-stack storage variables derived from the HDD/SSD pools
LEGACY_STORAGE_VARS = {"HDD": "STACK_STORAGE_HDD", "SSD": "STACK_STORAGE_SSD"}


def compose_variables(compose_path: Path | str) -> list[str]:
    """Unique ${VAR} names referenced by a compose file, in order of appearance.

    References with a default (${VAR:-x}) and escaped $${VAR} are not reported.
    """
    content = Path(compose_path).read_text(encoding="utf-8")
    seen: list[str] = []
    for match in COMPOSE_VAR_PATTERN.finditer(content):
        name = match.group(2)
        if name not in seen:
            seen.append(name)
    return seen


class _Output:
    """Accumulates stdout/stderr across several compose commands."""

    def __init__(self):
        self.stdout: list[str] = []
        self.stderr: list[str] = []

    def add(self, result: SubprocessResult, keep_stdout: bool = True) -> None:
        if keep_stdout and result.stdout:
            self.stdout.append(result.stdout)
        if result.stderr:
            self.stderr.append(result.stderr)

    def error(self, message: str, exit_code: int = 1) -> DeployCommandError:
        return DeployCommandError(
            message,
            exit_code=exit_code,
            stdout="".join(self.stdout),
            stderr="".join(self.stderr),
        )


class StackRunner:
    """docker compose up/pull/run/down for one stack at a time."""

    def __init__(
        self,
        config: StackrConfig,
        remote_manager: RemoteStackManager | None = None,
        image_pull_policy: RetryPolicy | None = None,
    ):
        self.config = config
        self.remote_manager = remote_manager or RemoteStackManager(config)
        retry = config.settings.retry
        self.image_pull_policy = image_pull_policy or RetryPolicy(
            max_attempts=retry.image_pull_attempts,
            initial_delay=retry.image_pull_initial_delay,
            max_delay=retry.image_pull_max_delay,
        )
        self.logger = logger.bind(component="stack_runner")

    def build_environment(self, stack: StackInfo) -> dict[str, str]:
        """Layer process env, env file, global config and per-stack values.

        Later layers win: process env, env file, env.global, COMPOSE_DIRECTORY,
        pool paths, the provisioned domain, env.stacks[<stack>], the remote
        override file, then DCFP.
        """
        settings = self.config.settings
        env = dict(os.environ)
        env.update(envfile.read_env_values(self.config.env_path))
        env.update(settings.env.global_env)
        env[ENV_COMPOSE_DIRECTORY] = str(self.config.stacks_path)
        env["COMPOSE_PROJECT_NAME"] = stack.name

        for name, base in self.config.pool_bases.items():
            env[f"{ENV_POOL_PREFIX}{name}"] = str(base / stack.name)
            if name in LEGACY_STORAGE_VARS:
                env[LEGACY_STORAGE_VARS[name]] = str(base / stack.name)

        domain = settings.http.base_domain.strip()
        if domain:
            env[ENV_PROV_DOMAIN] = f"{stack.name}.{domain}"

        env.update(settings.env.stacks.get(stack.name, {}))

        if stack.is_remote:
            env = self.remote_manager.merged_environment(stack.name, env)

        env[ENV_COMPOSE_FILE_PATH] = str(stack.compose_path)
        return env

    def prepare(self, stack: StackInfo, provision: bool = True) -> dict[str, str]:
        """Build the environment and check every compose variable is set.

        With provision, variables that are neither set anywhere nor mentioned
        in the env file are appended to the stack's section of the env file so
        the operator can fill them in. Without it the env file is only read.

        Raises:
            ConfigurationError: If the compose file is missing or a variable is unset
        """
        self._require_compose_file(stack)

        env = self.build_environment(stack)
        names = compose_variables(stack.compose_path)
        missing, content = self._missing_vars(names, env)
        if missing:
            message = (
                f"missing required environment variables for stack '{stack.name}': "
                f"{', '.join(missing)}\n"
            )
            if provision:
                self._write_missing_vars(stack.name, content, missing)
                message += (
                    f"Variables have been added to {self.config.env_path} - "
                    "please fill them in and try again"
                )
            else:
                message += f"Run get-vars to add them to {self.config.env_path}"
            raise ConfigurationError(message)

        unset = [
            name for name in names if name not in STORAGE_VARS and not env.get(name, "").strip()
        ]
        if unset:
            raise ConfigurationError(f"environment variable(s) not set: {', '.join(unset)}")

        self._ensure_pool_dirs(names, env)
        return env

    def provision_vars(self, stack: StackInfo) -> list[str]:
        """Append placeholders for every unknown compose variable and return their names.

        Callers serialize this with other env file writers.

        Raises:
            ConfigurationError: If the compose file is missing
            EnvFileError: If the env file cannot be read or written
        """
        self._require_compose_file(stack)
        env = self.build_environment(stack)
        missing, content = self._missing_vars(compose_variables(stack.compose_path), env)
        if missing:
            self._write_missing_vars(stack.name, content, missing)
            self.logger.info("Added missing variables", stack=stack.name, variables=missing)
        return missing

    def _require_compose_file(self, stack: StackInfo) -> None:
        if not stack.compose_path.is_file():
            raise ConfigurationError(
                f"stack {stack.name}: compose file {stack.compose_path} does not exist"
            )

    def _missing_vars(self, names: list[str], env: dict[str, str]) -> tuple[list[str], str]:
        values, content = envfile.read_env_file(self.config.env_path)
        missing = [
            name
            for name in names
            if name not in STORAGE_VARS
            and name not in env
            and name not in values
            and name not in content
        ]
        return missing, content

    def _write_missing_vars(self, stack: str, content: str, missing: list[str]) -> None:
        updated, changed = envfile.add_vars_to_env(content, stack, missing)
        if changed:
            envfile.write_env_file(self.config.env_path, updated)

    def _ensure_pool_dirs(self, names: list[str], env: dict[str, str]) -> None:
        for name in names:
            is_pool = name.startswith(ENV_POOL_PREFIX) or name in LEGACY_STORAGE_VARS.values()
            if is_pool and env.get(name):
                Path(env[name]).mkdir(parents=True, exist_ok=True)
        for legacy in ("STORAGE_HDD", "STORAGE_SSD"):
            target = f"STACK_{legacy}"
            if legacy in names and env.get(target):
                Path(env[target]).mkdir(parents=True, exist_ok=True)

    async def compose(
        self,
        compose_path: Path | str,
        args: Sequence[str],
        env: dict[str, str],
        *,
        timeout: float = DOCKER_CLI_TIMEOUT,
        file_flag: str = "-f",
        profile: str = "",
        stdout_sinks: Sequence[TextIO] = (),
        stderr_sinks: Sequence[TextIO] = (),
    ) -> SubprocessResult:
        cmd = ["docker", "compose", file_flag, str(compose_path)]
        if profile.strip():
            cmd += ["--profile", profile.strip()]
        cmd += list(args)
        return await run_command(
            cmd,
            timeout=timeout,
            check=False,
            cwd=str(self.config.repo_root),
            env=env,
            stdout_sinks=stdout_sinks,
            stderr_sinks=stderr_sinks,
        )

    async def deploy(self, stack: StackInfo, timeout: float = DEPLOY_TIMEOUT) -> str:
        """Restart if fully running, pull with retry, then up -d.

        Returns:
            Combined stdout of the compose commands

        Raises:
            DeployCommandError: If any step fails; carries the captured output
        """
        deadline = time.monotonic() + timeout
        output = _Output()

        try:
            env = self.prepare(stack)
        except ConfigurationError as e:
            raise output.error(str(e)) from e

        compose_path = stack.compose_path

        running = await self._checked(
            output,
            compose_path,
            ["ps", "-a", "--services", "--filter", "status=running"],
            env,
            keep_stdout=False,
        )
        services = await self._checked(
            output, compose_path, ["ps", "-a", "--services"], env, keep_stdout=False
        )
        if running.stdout.strip() and running.stdout.strip() == services.stdout.strip():
            self.logger.info("Restarting stack, all services running", stack=stack.name)
            await self._checked(output, compose_path, ["down"], env, timeout=timeout)

        async def pull() -> SubprocessResult:
            result = await self.compose(
                compose_path, ["pull"], env, timeout=max(deadline - time.monotonic(), 1)
            )
            output.add(result)
            if not result.success:
                raise DockerCommandError(
                    f"docker compose pull failed with exit code {result.returncode}"
                )
            return result

        self.logger.info("Pulling images", stack=stack.name)
        try:
            await with_backoff(
                pull, self.image_pull_policy, deadline=deadline, description="image pull"
            )
        except RetryExhaustedError as e:
            raise output.error(f"image pull failed for stack={stack.name}: {e}") from e
        except RetryCancelledError as e:
            raise output.error(f"image pull for stack={stack.name} timed out: {e}") from e

        self.logger.info("Bringing stack up", stack=stack.name)
        await self._checked(
            output,
            compose_path,
            ["up", "-d"],
            env,
            timeout=max(deadline - time.monotonic(), 1),
        )
        return "".join(output.stdout).strip()

    async def _checked(
        self,
        output: _Output,
        compose_path: Path,
        args: list[str],
        env: dict[str, str],
        timeout: float = DOCKER_CLI_TIMEOUT,
        keep_stdout: bool = True,
    ) -> SubprocessResult:
        result = await self.compose(compose_path, args, env, timeout=timeout)
        output.add(result, keep_stdout=keep_stdout)
        if not result.success:
            raise output.error(
                f"docker compose {' '.join(args)} failed", exit_code=result.returncode
            )
        return result

    async def pull_service(
        self,
        stack: StackInfo,
        service: str,
        env: dict[str, str],
        *,
        profile: str = "",
        timeout: float = DEPLOY_TIMEOUT,
        sinks: Sequence[TextIO] = (),
    ) -> SubprocessResult:
        """docker compose pull --quiet for one service."""
        return await self.compose(
            stack.compose_path,
            ["pull", "--quiet", service],
            env,
            timeout=timeout,
            file_flag="--file",
            profile=profile,
            stdout_sinks=sinks,
            stderr_sinks=sinks,
        )

    async def run_service(
        self,
        stack: StackInfo,
        service: str,
        container_name: str,
        env: dict[str, str],
        *,
        command: Sequence[str] = (),
        profile: str = "",
        timeout: float = DEPLOY_TIMEOUT,
        sinks: Sequence[TextIO] = (),
    ) -> SubprocessResult:
        """One-off docker compose run under a fixed container name, kept after exit."""
        return await self.compose(
            stack.compose_path,
            ["run", "--name", container_name, service, *command],
            env,
            timeout=timeout,
            file_flag="--file",
            profile=profile,
            stdout_sinks=sinks,
            stderr_sinks=sinks,
        )

    async def down(
        self, compose_path: Path | str, timeout: float = DOCKER_CLI_TIMEOUT
    ) -> SubprocessResult:
        """docker compose down --volumes --remove-orphans with the base environment.

        Raises:
            DockerCommandError: If compose exits non-zero
        """
        env = dict(os.environ)
        env.update(envfile.read_env_values(self.config.env_path))
        env.update(self.config.settings.env.global_env)
        env[ENV_COMPOSE_DIRECTORY] = str(self.config.stacks_path)
        result = await self.compose(
            compose_path, ["down", "--volumes", "--remove-orphans"], env, timeout=timeout
        )
        result.check_returncode()
        return result

    async def teardown(self, stack: StackInfo, timeout: float = DEPLOY_TIMEOUT) -> str:
        """docker compose down with the full stack environment; volumes are kept.

        Raises:
            ConfigurationError: If the compose file is missing
            DeployCommandError: If compose exits non-zero; carries the captured output
        """
        self._require_compose_file(stack)
        env = self.build_environment(stack)
        output = _Output()

        self.logger.info("Tearing down stack", stack=stack.name)
        await self._checked(output, stack.compose_path, ["down"], env, timeout=timeout)
        return "".join(output.stdout).strip()
