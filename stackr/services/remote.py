"""Remote stack working copies: clone, refresh, version checkout and env overrides."""

import asyncio
import re
import shutil
from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from ..constants import DEPLOYMENT_OVERRIDE_FILE, GIT_METADATA_DIR
from ..core import envfile, git
from ..core.config_loader import StackrConfig
from ..core.exceptions import (
    ConfigurationError,
    RemoteStackError,
    RetryExhaustedError,
    StackrError,
)
from ..core.retry import RetryPolicy, with_backoff
from ..models import DeploymentConfig, ReleaseType, RemoteStackDefinition, RemoteStackStatus
from .resolver import StackResolver, load_remote_definition

logger = structlog.get_logger()

VERSION_REF_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
SHORT_COMMIT_LENGTH = 12


def resolve_version_ref(ref: str, env_values: dict[str, str], stack: str = "") -> str:
    """Substitute ${VAR} placeholders in a release ref.

    Raises:
        ValueError: If ref is empty
        RemoteStackError: If a referenced variable is not defined
    """
    if not ref or not ref.strip():
        raise ValueError("version ref is empty")

    names = VERSION_REF_PATTERN.findall(ref)
    if not names:
        return ref.strip()

    for name in names:
        if name not in env_values:
            raise RemoteStackError(
                stack_name=stack,
                operation="resolve version ref",
                cause=StackrError(f"environment variable ${{{name}}} is not set"),
                hint=(
                    f"The environment variable '{name}' is not set in your .env file.\n"
                    "To fix this:\n"
                    f"  1. Add '{name}=<version>' to your .env file\n"
                    f"  2. Or update stackr-repo.yml to use a static version instead of ${{{name}}}"
                ),
            )

    resolved = VERSION_REF_PATTERN.sub(lambda m: env_values[m.group(1)], ref)
    return resolved.strip()


def clone_hint(url: str, cause: BaseException | None) -> str:
    """Operator-facing remediation text for a failed clone."""
    message = str(cause) if cause is not None else ""
    if "Permission denied" in message:
        return (
            "SSH permission denied. Ensure:\n"
            "  1. Your SSH key is added to your SSH agent (try: ssh-add -l)\n"
            "  2. Your public key is added to the remote Git service\n"
            f"  3. You can access the repo (try: git ls-remote {url})"
        )
    if "Could not resolve hostname" in message:
        return (
            "Network error. Check:\n"
            "  1. Your internet connection\n"
            "  2. The repository URL is correct\n"
            "  3. DNS is working for the repository host"
        )
    return (
        "Check that:\n"
        "  1. The repository URL is correct\n"
        "  2. You have access to the repository (try: git ls-remote <repo-url>)\n"
        "  3. Your SSH keys or credentials are properly configured\n"
        "  4. The branch specified in stackr-repo.yml exists"
    )


def checkout_hint(release_type: ReleaseType, ref: str) -> str:
    """Operator-facing remediation text for a failed checkout."""
    hint = (
        f"The {release_type.value} '{ref}' does not exist in the repository.\n"
        "Check that:\n"
        "  1. The tag/commit exists in the remote repository\n"
        "  2. The branch has been fetched (remote stacks use shallow clones)\n"
        "  3. The version in your .env file matches an actual release"
    )
    if release_type is ReleaseType.TAG:
        hint += "\n\nTo list available tags, run:\n  git ls-remote --tags <repo-url>"
    return hint


class RemoteStackManager:
    """Keeps remote stack working copies cloned and checked out at their release ref."""

    def __init__(self, config: StackrConfig, clone_policy: RetryPolicy | None = None):
        self.config = config
        retry = config.settings.retry
        self.clone_policy = clone_policy or RetryPolicy(
            max_attempts=retry.clone_attempts,
            initial_delay=retry.clone_initial_delay,
            max_delay=retry.clone_max_delay,
        )
        self.logger = logger.bind(component="remote_stack_manager")

    @property
    def remote_root(self) -> Path:
        return self.config.remote_stacks_path

    def repo_root(self, stack: str) -> Path:
        return self.remote_root / stack

    def repo_path(self, stack: str, definition: RemoteStackDefinition) -> Path:
        """Directory inside the clone that holds the compose file."""
        root = self.repo_root(stack)
        subdir = definition.remote_repo.subdir
        return root / subdir if subdir else root

    def is_cloned(self, stack: str) -> bool:
        return (self.repo_root(stack) / GIT_METADATA_DIR).is_dir()

    def load_definition(self, stack: str) -> RemoteStackDefinition:
        return load_remote_definition(self.config.stacks_path, stack)

    async def ensure_synced(self, stack: str, env_values: dict[str, str]) -> str:
        """Clone or refresh the working copy and check out the resolved release ref.

        Returns:
            The resolved ref now checked out

        Raises:
            ConfigurationError: If stackr-repo.yml is invalid
            RemoteStackError: If the ref cannot be resolved, or clone/checkout fails
        """
        definition = self.load_definition(stack)
        remote = definition.remote_repo
        ref = resolve_version_ref(remote.release.ref, env_values, stack=stack)
        root = self.repo_root(stack)

        if not self.is_cloned(stack):
            self.logger.info("Cloning remote stack", stack=stack, url=remote.url, branch=remote.branch)
            await self._clone(stack, remote.url, remote.branch, root)

        client = git.GitClient(root)

        try:
            await self._refresh(client)
        except Exception as e:
            self.logger.warning(
                "Failed to pull latest changes, using cached version",
                stack=stack,
                error=str(e),
            )

        await self._ensure_version(stack, client, remote.release.type, ref)
        self.logger.info("Remote stack ready", stack=stack, ref=ref)
        return ref

    async def _clone(self, stack: str, url: str, branch: str, destination: Path) -> None:
        async def attempt() -> None:
            # A directory without .git is a leftover from an interrupted clone
            if destination.exists():
                await asyncio.to_thread(shutil.rmtree, destination)
            await git.clone(url, destination, branch=branch, depth=1)

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            await with_backoff(attempt, self.clone_policy, description="git clone")
        except RetryExhaustedError as e:
            raise RemoteStackError(
                stack_name=stack,
                operation="git clone",
                cause=e.last_error,
                hint=clone_hint(url, e.last_error),
            ) from e
        except OSError as e:
            raise RemoteStackError(
                stack_name=stack, operation="git clone", cause=e, hint=clone_hint(url, e)
            ) from e

    async def _refresh(self, client: git.GitClient) -> None:
        await client.fetch()
        if await client.current_ref() == "HEAD":
            # Detached at a tag or commit; fetch --tags already brought in new refs
            return
        await client.pull()

    async def _ensure_version(
        self, stack: str, client: git.GitClient, release_type: ReleaseType, ref: str
    ) -> None:
        operation = f"git checkout {release_type.value} {ref}"
        try:
            current = await client.current_commit()
            if release_type is ReleaseType.COMMIT and current == ref:
                self.logger.info("Remote stack already at commit", stack=stack, commit=ref)
                return

            self.logger.info(
                "Checking out release", stack=stack, release_type=release_type.value, ref=ref
            )
            await client.checkout(ref)
        except (StackrError, asyncio.TimeoutError) as e:
            raise RemoteStackError(
                stack_name=stack,
                operation=operation,
                cause=e,
                hint=checkout_hint(release_type, ref),
            ) from e

    def merged_environment(self, stack: str, base: dict[str, str]) -> dict[str, str]:
        """Layer .stackr-deployment.yaml env over base; the override file wins.

        Raises:
            ConfigurationError: If the override file exists but is invalid
        """
        definition = self.load_definition(stack)
        deployment = load_deployment_config(self.repo_path(stack, definition))
        merged = dict(base)
        merged.update(deployment.env)
        return merged

    async def current_version(self, stack: str) -> str:
        """HEAD commit of the working copy.

        Raises:
            RemoteStackError: If the repository has not been cloned yet
        """
        if not self.is_cloned(stack):
            raise RemoteStackError(
                stack_name=stack,
                operation="read current version",
                cause=StackrError("repository not cloned yet"),
            )
        return await git.GitClient(self.repo_root(stack)).current_commit()

    def _require_remote(self, stack: str) -> None:
        if not StackResolver(self.config).resolve(stack).is_remote:
            raise ConfigurationError(f"stack {stack!r} is not a remote stack")

    async def clean(self, stack: str) -> Path:
        """Delete the working copy; the next deploy clones it afresh.

        Returns:
            The removed directory

        Raises:
            StackResolutionError: If the stack cannot be resolved
            ConfigurationError: If the stack is not a remote stack
            RemoteStackError: If nothing is cloned or the directory cannot be removed
        """
        self._require_remote(stack)
        root = self.repo_root(stack)
        if not root.exists():
            raise RemoteStackError(
                stack_name=stack,
                operation="clean",
                cause=StackrError(f"repository for stack {stack!r} is not cloned"),
            )

        try:
            await asyncio.to_thread(shutil.rmtree, root)
        except OSError as e:
            raise RemoteStackError(stack_name=stack, operation="clean", cause=e) from e
        self.logger.info("Removed remote working copy", stack=stack, path=str(root))
        return root

    async def sync(self, stack: str) -> str:
        """Clone or refresh the working copy at the ref the env file currently selects.

        Raises:
            StackResolutionError: If the stack cannot be resolved
            ConfigurationError: If the stack is not remote or its descriptor is invalid
            EnvFileError: If the env file cannot be read
            RemoteStackError: If the ref cannot be resolved, or clone/checkout fails
        """
        self._require_remote(stack)
        env_values = envfile.read_env_values(self.config.env_path)
        return await self.ensure_synced(stack, env_values)

    async def status(self, stack: str) -> RemoteStackStatus:
        """Describe the working copy without modifying it."""
        status = RemoteStackStatus(stack=stack, repo_path=str(self.repo_root(stack)))
        try:
            definition = self.load_definition(stack)
        except ConfigurationError as e:
            status.error = str(e)
            return status

        status.configured_ref = definition.remote_repo.release.ref
        status.release_type = definition.remote_repo.release.type
        status.cloned = self.is_cloned(stack)
        if not status.cloned:
            return status

        client = git.GitClient(self.repo_root(stack))
        try:
            commit = await client.current_commit()
            status.current_commit = commit[:SHORT_COMMIT_LENGTH]
            status.dirty = not await client.is_clean()
        except (StackrError, asyncio.TimeoutError) as e:
            status.error = str(e)
        return status


def load_deployment_config(repo_path: Path) -> DeploymentConfig:
    """Read the optional .stackr-deployment.yaml; a missing file yields empty env.

    Raises:
        ConfigurationError: If the file exists but cannot be read or parsed
    """
    path = Path(repo_path) / DEPLOYMENT_OVERRIDE_FILE
    if not path.exists():
        return DeploymentConfig()

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"failed to read {DEPLOYMENT_OVERRIDE_FILE}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse {DEPLOYMENT_OVERRIDE_FILE}: {e}") from e

    if not isinstance(raw, dict):
        return DeploymentConfig()
    try:
        return DeploymentConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"invalid {DEPLOYMENT_OVERRIDE_FILE}: {e}") from e
