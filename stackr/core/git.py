"""Thin async wrapper around the git CLI for remote stack working copies."""

from pathlib import Path

import structlog

from .exceptions import GitError
from .settings import GIT_TIMEOUT
from .subprocess_manager import SubprocessResult, run_command

logger = structlog.get_logger()


async def clone(
    url: str,
    destination: Path | str,
    *,
    branch: str = "",
    depth: int = 0,
    timeout: float = GIT_TIMEOUT,
) -> None:
    """Clone url into destination; depth > 0 makes a shallow clone.

    Raises:
        GitError: If git exits non-zero
    """
    args = ["clone"]
    if branch:
        args += ["--branch", branch]
    if depth > 0:
        args += ["--depth", str(depth)]
    args += [url, str(destination)]

    result = await _git(args, timeout=timeout)
    if not result.success:
        raise _error("clone", args, result)


class GitClient:
    """Git operations scoped to one working copy."""

    def __init__(self, repo_path: Path | str, timeout: float = GIT_TIMEOUT):
        self.repo_path = Path(repo_path)
        self.timeout = timeout

    async def fetch(self) -> None:
        await self._run("fetch", ["fetch", "--tags"])

    async def pull(self) -> None:
        await self._run("pull", ["pull"])

    async def checkout(self, ref: str) -> None:
        await self._run("checkout", ["checkout", ref])

    async def current_commit(self) -> str:
        """Full hash of HEAD."""
        result = await self._run("rev-parse", ["rev-parse", "HEAD"])
        return result.stdout.strip()

    async def current_ref(self) -> str:
        """Branch name of HEAD, or "HEAD" when detached."""
        result = await self._run("rev-parse", ["rev-parse", "--abbrev-ref", "HEAD"])
        return result.stdout.strip()

    async def is_clean(self) -> bool:
        """True when the working tree has no uncommitted changes."""
        result = await self._run("status", ["status", "--porcelain"])
        return not result.stdout.strip()

    async def _run(self, operation: str, args: list[str]) -> SubprocessResult:
        full_args = ["-C", str(self.repo_path), *args]
        result = await _git(full_args, timeout=self.timeout)
        if not result.success:
            raise _error(operation, full_args, result)
        return result


async def _git(args: list[str], timeout: float) -> SubprocessResult:
    logger.debug("Running git", args=args)
    return await run_command(["git", *args], timeout=timeout, check=False)


def _error(operation: str, args: list[str], result: SubprocessResult) -> GitError:
    return GitError(
        operation=operation,
        command="git " + " ".join(args),
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.returncode,
    )
