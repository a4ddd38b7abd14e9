"""Tests for the server wiring, background orchestration and command line."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from stackr.core.exceptions import ConfigurationError, StackResolutionError
from stackr.server import BackgroundOrchestrator, StackrServer, main, parse_args


def printed_json(out: str) -> dict:
    """The JSON document printed by a command, ignoring any log lines before it."""
    return json.loads(out[out.index("{\n") :])


@pytest.fixture
def events():
    return []


@pytest.fixture
def orchestrator_parts(events):
    resolver = MagicMock()
    resolver.stack_names.return_value = ["app", "web"]

    scheduler = MagicMock()
    scheduler.start = AsyncMock(side_effect=lambda: events.append("scheduler.start"))
    scheduler.reload = AsyncMock(side_effect=lambda: events.append("scheduler.reload"))
    scheduler.stop = AsyncMock(side_effect=lambda: events.append("scheduler.stop"))

    removal_handler = MagicMock()
    removal_handler.initialize.side_effect = lambda names: events.append(("initialize", names))

    async def check(names):
        events.append(("check_for_removals", names))
        return []

    removal_handler.check_for_removals = AsyncMock(side_effect=check)

    watcher = MagicMock()
    watcher.start_watching = AsyncMock(side_effect=lambda: events.append("watch.start"))
    watcher.stop_watching = AsyncMock(side_effect=lambda: events.append("watch.stop"))

    return resolver, scheduler, removal_handler, watcher


@pytest.mark.asyncio
class TestBackgroundOrchestrator:
    async def test_start_order(self, orchestrator_parts, events):
        orchestrator = BackgroundOrchestrator(*orchestrator_parts)

        await orchestrator.start()

        assert events == [("initialize", ["app", "web"]), "scheduler.start", "watch.start"]

    async def test_scheduler_failure_still_starts_watcher(self, orchestrator_parts, events):
        resolver, scheduler, removal_handler, watcher = orchestrator_parts
        scheduler.start.side_effect = ConfigurationError("invalid cron schedule")
        orchestrator = BackgroundOrchestrator(resolver, scheduler, removal_handler, watcher)

        await orchestrator.start()

        watcher.start_watching.assert_awaited_once()

    async def test_change_checks_removals_before_reload(self, orchestrator_parts, events):
        resolver, scheduler, removal_handler, watcher = orchestrator_parts
        orchestrator = BackgroundOrchestrator(resolver, scheduler, removal_handler, watcher)
        resolver.stack_names.return_value = ["app"]

        await orchestrator.handle_stack_change("/repo/stacks/web/docker-compose.yml")

        assert events == [("check_for_removals", ["app"]), "scheduler.reload"]

    async def test_listing_failure_skips_change(self, orchestrator_parts, events):
        resolver, scheduler, removal_handler, watcher = orchestrator_parts
        resolver.stack_names.side_effect = StackResolutionError("x", "boom")
        orchestrator = BackgroundOrchestrator(resolver, scheduler, removal_handler, watcher)

        await orchestrator.handle_stack_change("/repo/stacks/x")

        assert events == []

    async def test_reload_failure_is_logged(self, orchestrator_parts, events):
        resolver, scheduler, removal_handler, watcher = orchestrator_parts
        scheduler.reload.side_effect = ConfigurationError("invalid cron schedule")
        orchestrator = BackgroundOrchestrator(resolver, scheduler, removal_handler, watcher)

        await orchestrator.handle_stack_change("/repo/stacks/app")

        removal_handler.check_for_removals.assert_awaited_once()

    async def test_stop(self, orchestrator_parts, events):
        orchestrator = BackgroundOrchestrator(*orchestrator_parts)

        with patch("stackr.server.cleanup_all", AsyncMock()) as mock_cleanup:
            await orchestrator.stop()

        assert events == ["watch.stop", "scheduler.stop"]
        mock_cleanup.assert_awaited_once()


class TestStackrServer:
    def test_wiring_shares_services(self, config):
        server = StackrServer(config)

        assert server.deployment_engine.resolver is server.resolver
        assert server.deployment_engine.remote_manager is server.remote_manager
        assert server.scheduler.runner is server.runner
        assert server.stack_service.scheduler is server.scheduler
        assert server.orchestrator.watcher.stacks_dir == config.stacks_path
        assert server.app is None

    def test_initialize_app(self, config):
        server = StackrServer(config)

        server._initialize_app()

        assert server.app is not None
        assert server.app.name == "Stackr"

    @pytest.mark.asyncio
    async def test_tools_delegate_to_stack_service(self, config):
        server = StackrServer(config)
        server.stack_service = MagicMock()
        server.stack_service.deploy_stack = AsyncMock(return_value="deployed")
        server.stack_service.run_job = AsyncMock(return_value="ran")

        assert await server.deploy_stack("app", "latest") == "deployed"
        assert await server.run_job("app", "backup", ["echo", "hi"]) == "ran"
        server.stack_service.run_job.assert_awaited_once_with("app", "backup", ["echo", "hi"])

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method", ["teardown_stack", "backup_stack", "get_vars", "sync_remote", "clean_remote"]
    )
    async def test_stack_tools_delegate(self, config, method):
        server = StackrServer(config)
        server.stack_service = MagicMock()
        setattr(server.stack_service, method, AsyncMock(return_value="done"))

        assert await getattr(server, method)("app") == "done"
        getattr(server.stack_service, method).assert_awaited_once_with("app")

    def test_archive_manager_is_shared(self, config):
        server = StackrServer(config)

        assert server.removal_handler.archive_manager is server.archive_manager
        assert server.stack_service.archive_manager is server.archive_manager


class TestParseArgs:
    def test_defaults_to_serve(self):
        args = parse_args([])

        assert args.command == "serve"
        assert args.host is None
        assert args.port is None
        assert args.repo_root is None

    def test_serve_overrides(self):
        args = parse_args(["--log-level", "DEBUG", "serve", "--host", "0.0.0.0", "--port", "9000"])

        assert args.log_level == "DEBUG"
        assert args.host == "0.0.0.0"
        assert args.port == 9000

    def test_deploy(self):
        args = parse_args(["--repo-root", "/srv/repo", "deploy", "app", "v1.2.3"])

        assert (args.command, args.repo_root, args.stack, args.tag) == (
            "deploy",
            "/srv/repo",
            "app",
            "v1.2.3",
        )

    def test_run_job_command_override(self):
        args = parse_args(["run-job", "app", "backup", "restic", "--verbose", "check"])

        assert args.stack == "app"
        assert args.service == "backup"
        assert args.job_command == ["restic", "--verbose", "check"]

    def test_status_stack_optional(self):
        assert parse_args(["status"]).stack is None
        assert parse_args(["status", "app"]).stack == "app"

    @pytest.mark.parametrize(
        "command", ["teardown", "backup", "get-vars", "remote-sync", "remote-clean"]
    )
    def test_stack_commands(self, command):
        args = parse_args([command, "app"])

        assert (args.command, args.stack) == (command, "app")

    def test_stack_commands_require_stack(self):
        with pytest.raises(SystemExit):
            parse_args(["teardown"])


@patch("stackr.core.logging_config.setup_logging")
class TestMain:
    def test_validate_config(self, mock_setup, repo_root):
        main(["--repo-root", str(repo_root), "validate-config"])

        mock_setup.assert_called_once()

    def test_invalid_repo_root_exits(self, mock_setup, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--repo-root", str(tmp_path / "missing"), "validate-config"])

        assert exc_info.value.code == 1

    def test_status_prints_json(self, mock_setup, repo_root, make_local_stack, capsys):
        make_local_stack("app")

        main(["--repo-root", str(repo_root), "status"])

        output = printed_json(capsys.readouterr().out)
        assert output["success"] is True
        assert [s["name"] for s in output["stacks"]] == ["app"]

    def test_failed_command_exits_nonzero(self, mock_setup, repo_root, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--repo-root", str(repo_root), "deploy", "app", "not-a-tag"])

        assert exc_info.value.code == 1
        output = printed_json(capsys.readouterr().out)
        assert "semver" in output["error"]

    def test_get_vars_adds_missing_variables(self, mock_setup, repo_root, make_local_stack, capsys):
        make_local_stack("app", "services:\n  web:\n    image: app:${APP_IMAGE_TAG}\n")

        main(["--repo-root", str(repo_root), "get-vars", "app"])

        output = printed_json(capsys.readouterr().out)
        assert output["added"] == ["APP_IMAGE_TAG"]
        assert "APP_IMAGE_TAG=\n" in (repo_root / ".env").read_text()

    def test_remote_clean_of_local_stack_fails(self, mock_setup, repo_root, make_local_stack, capsys):
        make_local_stack("app")

        with pytest.raises(SystemExit) as exc_info:
            main(["--repo-root", str(repo_root), "remote-clean", "app"])

        assert exc_info.value.code == 1
        output = printed_json(capsys.readouterr().out)
        assert output["error"] == "stack 'app' is not a remote stack"
