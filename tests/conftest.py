"""Shared pytest fixtures for Stackr tests."""

import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from stackr.core.config_loader import StackrConfig, load_config

STACKR_ENV_VARS = (
    "STACKR_REPO_ROOT",
    "STACKR_ENV_FILE",
    "STACKR_STACKS_DIR",
    "STACKR_CONFIG_FILE",
    "STACKR_HOST",
    "STACKR_PORT",
)

SIMPLE_COMPOSE = """services:
  web:
    image: nginx:alpine
"""


@pytest.fixture(autouse=True)
def clean_stackr_env(monkeypatch):
    """Keep the developer's STACKR_* variables out of the tests."""
    for var in STACKR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def repo_root(tmp_path: Path) -> Path:
    """Repository root with an empty stacks dir and a small env file."""
    (tmp_path / "stacks").mkdir()
    (tmp_path / ".env").write_text("# shared settings\nDOMAIN=example.com\n")
    return tmp_path


@pytest.fixture
def write_global_config(repo_root: Path) -> Callable[[dict], None]:
    def _write(settings: dict) -> None:
        (repo_root / ".stackr.yaml").write_text(yaml.safe_dump(settings))

    return _write


@pytest.fixture
def config(repo_root: Path) -> StackrConfig:
    """Configuration loaded from the temporary repository root."""
    return load_config(repo_root)


@pytest.fixture
def make_local_stack(repo_root: Path) -> Callable[..., Path]:
    """Create stacks/<name>/docker-compose.yml and return the compose path."""

    def _make(name: str, compose: str = SIMPLE_COMPOSE) -> Path:
        stack_dir = repo_root / "stacks" / name
        stack_dir.mkdir(parents=True, exist_ok=True)
        compose_path = stack_dir / "docker-compose.yml"
        compose_path.write_text(compose)
        return compose_path

    return _make


@pytest.fixture
def make_remote_stack(repo_root: Path) -> Callable[..., Path]:
    """Create stacks/<name>/stackr-repo.yml and return its path."""

    def _make(
        name: str,
        url: str = "git@example.com:org/app.git",
        ref: str = "v1.0.0",
        release_type: str = "tag",
        branch: str = "main",
        path: str | None = None,
    ) -> Path:
        stack_dir = repo_root / "stacks" / name
        stack_dir.mkdir(parents=True, exist_ok=True)
        remote_repo = {
            "url": url,
            "branch": branch,
            "release": {"type": release_type, "ref": ref},
        }
        if path is not None:
            remote_repo["path"] = path
        definition = stack_dir / "stackr-repo.yml"
        definition.write_text(yaml.safe_dump({"remote_repo": remote_repo}))
        return definition

    return _make


def git(*args: str, cwd: Path) -> str:
    result = subprocess.run(
        ["git", "-c", "user.name=Stackr Tests", "-c", "user.email=tests@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture
def bare_repo(tmp_path: Path) -> dict[str, str]:
    """Local bare repository with tags v1.0.0 and v2.0.0 on branch main.

    Returns the repository URL and the commit of each tag.
    """
    work = tmp_path / "upstream-work"
    work.mkdir()
    git("init", "--quiet", cwd=work)
    git("symbolic-ref", "HEAD", "refs/heads/main", cwd=work)

    (work / "docker-compose.yml").write_text(SIMPLE_COMPOSE)
    (work / "VERSION").write_text("1\n")
    git("add", ".", cwd=work)
    git("commit", "--quiet", "-m", "first release", cwd=work)
    git("tag", "v1.0.0", cwd=work)
    first = git("rev-parse", "HEAD", cwd=work)

    (work / "VERSION").write_text("2\n")
    git("commit", "--quiet", "-am", "second release", cwd=work)
    git("tag", "v2.0.0", cwd=work)
    second = git("rev-parse", "HEAD", cwd=work)

    bare = tmp_path / "upstream.git"
    git("clone", "--quiet", "--bare", str(work), str(bare), cwd=tmp_path)
    return {"url": str(bare), "v1.0.0": first, "v2.0.0": second}


@pytest.fixture
def run_git() -> Callable[..., str]:
    return git
