"""Tests for stack classification and discovery."""

import pytest

from stackr.core.exceptions import (
    AmbiguousStackError,
    ConfigurationError,
    StackNotFoundError,
    UnclassifiedStackError,
)
from stackr.models import ReleaseType, StackType
from stackr.services.resolver import StackResolver, load_remote_definition


class TestResolve:
    def test_local_stack(self, config, make_local_stack):
        compose_path = make_local_stack("grafana")

        info = StackResolver(config).resolve("grafana")

        assert info.name == "grafana"
        assert info.type is StackType.LOCAL
        assert info.compose_path == compose_path
        assert not info.is_remote

    def test_remote_stack_without_subdir(self, config, repo_root, make_remote_stack):
        make_remote_stack("app")

        info = StackResolver(config).resolve("app")

        assert info.type is StackType.REMOTE
        assert info.compose_path == repo_root / ".stackr-repos" / "app" / "docker-compose.yml"

    def test_remote_stack_with_subdir(self, config, repo_root, make_remote_stack):
        make_remote_stack("app", path="deploy/prod")

        info = StackResolver(config).resolve("app")

        assert info.compose_path == (
            repo_root / ".stackr-repos" / "app" / "deploy" / "prod" / "docker-compose.yml"
        )

    def test_dot_path_means_repo_root(self, config, repo_root, make_remote_stack):
        make_remote_stack("app", path=".")

        info = StackResolver(config).resolve("app")

        assert info.compose_path == repo_root / ".stackr-repos" / "app" / "docker-compose.yml"

    def test_missing_directory(self, config):
        with pytest.raises(StackNotFoundError) as exc_info:
            StackResolver(config).resolve("ghost")
        assert exc_info.value.stack_name == "ghost"

    def test_both_markers_is_ambiguous(self, config, make_local_stack, make_remote_stack):
        make_local_stack("app")
        make_remote_stack("app")

        with pytest.raises(AmbiguousStackError, match="ambiguous"):
            StackResolver(config).resolve("app")

    def test_no_marker_is_unclassified(self, config, repo_root):
        (repo_root / "stacks" / "notes").mkdir()

        with pytest.raises(UnclassifiedStackError):
            StackResolver(config).resolve("notes")


class TestDiscoverAll:
    def test_sorted_and_skips_unclassified(self, config, repo_root, make_local_stack, make_remote_stack):
        make_local_stack("zeta")
        make_remote_stack("alpha")
        make_local_stack("mid")
        (repo_root / "stacks" / "scratch").mkdir()
        (repo_root / "stacks" / "README.md").write_text("not a stack")

        stacks = StackResolver(config).discover_all()

        assert [s.name for s in stacks] == ["alpha", "mid", "zeta"]
        assert [s.type for s in stacks] == [StackType.REMOTE, StackType.LOCAL, StackType.LOCAL]

    def test_ambiguity_aborts_whole_pass(self, config, make_local_stack, make_remote_stack):
        make_local_stack("a-fine")
        make_local_stack("b-broken")
        make_remote_stack("b-broken")
        make_local_stack("c-fine")

        with pytest.raises(AmbiguousStackError):
            StackResolver(config).discover_all()

    def test_invalid_descriptor_aborts_pass(self, config, repo_root, make_local_stack):
        make_local_stack("fine")
        broken = repo_root / "stacks" / "broken"
        broken.mkdir()
        (broken / "stackr-repo.yml").write_text("remote_repo:\n  url: ''\n")

        with pytest.raises(ConfigurationError):
            StackResolver(config).discover_all()

    def test_stack_names(self, config, make_local_stack, make_remote_stack):
        make_local_stack("b")
        make_remote_stack("a")

        assert StackResolver(config).stack_names() == ["a", "b"]


class TestRemoteDefinition:
    def test_defaults(self, repo_root):
        stack_dir = repo_root / "stacks" / "app"
        stack_dir.mkdir()
        (stack_dir / "stackr-repo.yml").write_text(
            "remote_repo:\n"
            "  url: git@example.com:org/app.git\n"
            "  release:\n"
            "    type: TAG\n"
            "    ref: ${APP_VERSION}\n"
        )

        definition = load_remote_definition(repo_root / "stacks", "app")

        assert definition.remote_repo.branch == "main"
        assert definition.remote_repo.subdir is None
        assert definition.remote_repo.release.type is ReleaseType.TAG
        assert definition.remote_repo.release.ref == "${APP_VERSION}"

    def test_numeric_commit_ref(self, repo_root):
        stack_dir = repo_root / "stacks" / "app"
        stack_dir.mkdir()
        (stack_dir / "stackr-repo.yml").write_text(
            "remote_repo:\n"
            "  url: https://example.com/app.git\n"
            "  release:\n"
            "    type: commit\n"
            "    ref: 1234567\n"
        )

        definition = load_remote_definition(repo_root / "stacks", "app")

        assert definition.remote_repo.release.ref == "1234567"

    @pytest.mark.parametrize(
        "content",
        [
            "remote_repo:\n  release:\n    type: tag\n    ref: v1\n",
            "remote_repo:\n  url: x\n  release:\n    type: branch\n    ref: v1\n",
            "remote_repo:\n  url: x\n  release:\n    type: tag\n    ref: ''\n",
            "remote_repo:\n  url: x\n",
            "remote_repo: [\n",
        ],
        ids=["missing-url", "invalid-type", "empty-ref", "missing-release", "bad-yaml"],
    )
    def test_invalid_descriptors(self, repo_root, content):
        stack_dir = repo_root / "stacks" / "app"
        stack_dir.mkdir()
        (stack_dir / "stackr-repo.yml").write_text(content)

        with pytest.raises(ConfigurationError):
            load_remote_definition(repo_root / "stacks", "app")
