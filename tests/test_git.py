"""Tests for the git CLI wrapper."""

import shutil

import pytest

from stackr.core import git
from stackr.core.exceptions import GitError

pytestmark = [
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
    pytest.mark.asyncio,
]


async def test_clone_and_inspect(bare_repo, tmp_path):
    destination = tmp_path / "checkout"

    await git.clone(bare_repo["url"], destination, branch="main")
    client = git.GitClient(destination)

    assert await client.current_commit() == bare_repo["v2.0.0"]
    assert await client.current_ref() == "main"
    assert await client.is_clean()


async def test_shallow_clone_fetch_and_checkout_tag(bare_repo, tmp_path):
    destination = tmp_path / "checkout"

    await git.clone(f"file://{bare_repo['url']}", destination, branch="main", depth=1)
    client = git.GitClient(destination)
    await client.fetch()
    await client.checkout("v1.0.0")

    assert await client.current_commit() == bare_repo["v1.0.0"]
    assert await client.current_ref() == "HEAD"


async def test_dirty_working_tree(bare_repo, tmp_path):
    destination = tmp_path / "checkout"
    await git.clone(bare_repo["url"], destination)

    (destination / "VERSION").write_text("edited\n")

    assert not await git.GitClient(destination).is_clean()


async def test_failed_command_raises_git_error(bare_repo, tmp_path):
    destination = tmp_path / "checkout"
    await git.clone(bare_repo["url"], destination)

    with pytest.raises(GitError) as exc_info:
        await git.GitClient(destination).checkout("does-not-exist")

    error = exc_info.value
    assert error.operation == "checkout"
    assert error.exit_code != 0
    assert error.command.startswith("git -C ")
    assert "does-not-exist" in str(error)


async def test_clone_failure(tmp_path):
    with pytest.raises(GitError) as exc_info:
        await git.clone(str(tmp_path / "missing.git"), tmp_path / "checkout")

    assert exc_info.value.operation == "clone"
