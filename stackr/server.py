"""
Stackr Server

FastMCP tool surface and command line for deploying and operating Docker
Compose stacks on a single host, plus the background scheduler and stacks
watcher.
"""

import argparse
import asyncio
import json
import os
import sys
import threading
from typing import Any

from fastmcp import FastMCP
from fastmcp.tools.tool import ToolResult

from .core.archive import ArchiveManager
from .core.config_loader import StackrConfig, load_config
from .core.exceptions import StackrError
from .core.file_watcher import StacksWatcher
from .core.logging_config import get_server_logger
from .core.subprocess_manager import cleanup_all
from .services import (
    CronScheduler,
    DeploymentEngine,
    RemoteStackManager,
    RemovalHandler,
    StackResolver,
    StackRunner,
    StackService,
)
from .services.stack_service import tag_variable

# Single-stack subcommands: server method and help text
STACK_COMMANDS = {
    "teardown": ("teardown_stack", "Stop and remove a stack's containers, keeping volumes"),
    "backup": ("backup_stack", "Back up a stack's config directories and pool volumes"),
    "get-vars": ("get_vars", "Add missing compose variables to the env file"),
    "remote-sync": ("sync_remote", "Clone or refresh a remote stack at its configured release"),
    "remote-clean": ("clean_remote", "Delete a remote stack's git working copy"),
}


class BackgroundOrchestrator:
    """Scheduler and stacks watcher, reacting to changes in the stacks tree."""

    def __init__(
        self,
        resolver: StackResolver,
        scheduler: CronScheduler,
        removal_handler: RemovalHandler,
        watcher: StacksWatcher | None = None,
    ):
        self.resolver = resolver
        self.scheduler = scheduler
        self.removal_handler = removal_handler
        self.watcher = watcher or StacksWatcher(resolver.stacks_dir, self.handle_stack_change)
        self.logger = get_server_logger().bind(component="orchestrator")

    async def start(self) -> None:
        try:
            self.removal_handler.initialize(self.resolver.stack_names())
        except StackrError as e:
            self.logger.warning("Failed to initialize removal tracker", error=str(e))

        try:
            await self.scheduler.start()
        except StackrError as e:
            # Stays stopped until the next stacks change triggers a reload
            self.logger.error("Failed to start cron scheduler", error=str(e))

        await self.watcher.start_watching()

    async def stop(self) -> None:
        await self.watcher.stop_watching()
        await self.scheduler.stop()
        await cleanup_all()

    async def handle_stack_change(self, path: str) -> None:
        """List stacks, handle removals, then reload the scheduler."""
        self.logger.info("Stacks directory changed", path=path)
        try:
            current = self.resolver.stack_names()
        except StackrError as e:
            self.logger.error("Failed to list stacks after change", error=str(e))
            return

        await self.removal_handler.check_for_removals(current)

        try:
            await self.scheduler.reload()
        except StackrError as e:
            self.logger.error("Failed to reload cron scheduler", error=str(e))


class StackrServer:
    """Stackr FastMCP server."""

    def __init__(self, config: StackrConfig):
        self.config = config
        self.logger = get_server_logger()

        # Core services
        self.resolver = StackResolver(config)
        self.remote_manager = RemoteStackManager(config)
        self.runner = StackRunner(config, self.remote_manager)
        self.deployment_engine = DeploymentEngine(
            config,
            resolver=self.resolver,
            remote_manager=self.remote_manager,
            runner=self.runner,
        )
        self.scheduler = CronScheduler(config, resolver=self.resolver, runner=self.runner)
        self.archive_manager = ArchiveManager(
            backup_dir=config.backup_path,
            stacks_dir=config.stacks_path,
            pool_bases=config.pool_bases,
        )
        self.removal_handler = RemovalHandler(config, archive_manager=self.archive_manager)
        self.stack_service = StackService(
            config,
            self.deployment_engine,
            self.scheduler,
            resolver=self.resolver,
            remote_manager=self.remote_manager,
            archive_manager=self.archive_manager,
        )
        self.orchestrator = BackgroundOrchestrator(
            self.resolver, self.scheduler, self.removal_handler
        )

        # FastMCP app will be created later to prevent auto-start
        self.app: FastMCP | None = None

        self.logger.info(
            "Stackr server initialized",
            repo_root=str(config.repo_root),
            stacks_dir=str(config.stacks_path),
            env_file=str(config.env_path),
        )

    def _initialize_app(self) -> None:
        """Create the FastMCP app and register tools."""
        self.app = FastMCP("Stackr")

        self.app.tool(
            self.deploy_stack,
            annotations={
                "title": "Deploy Stack",
                "readOnlyHint": False,
                "destructiveHint": True,  # Recreates the stack's containers
                "idempotentHint": True,
                "openWorldHint": True,  # Pulls images and may clone git repositories
            },
        )
        self.app.tool(
            self.run_job,
            annotations={
                "title": "Run Cron Job",
                "readOnlyHint": False,
                "destructiveHint": False,
                "idempotentHint": False,
                "openWorldHint": True,
            },
        )
        self.app.tool(
            self.list_stacks,
            annotations={
                "title": "List Stacks",
                "readOnlyHint": True,
                "destructiveHint": False,
                "idempotentHint": True,
                "openWorldHint": False,
            },
        )
        self.app.tool(
            self.stack_status,
            annotations={
                "title": "Stack Status",
                "readOnlyHint": True,
                "destructiveHint": False,
                "idempotentHint": True,
                "openWorldHint": False,
            },
        )
        self.app.tool(
            self.teardown_stack,
            annotations={
                "title": "Tear Down Stack",
                "readOnlyHint": False,
                "destructiveHint": True,  # Stops and removes the stack's containers
                "idempotentHint": True,
                "openWorldHint": False,
            },
        )
        self.app.tool(
            self.backup_stack,
            annotations={
                "title": "Back Up Stack",
                "readOnlyHint": False,
                "destructiveHint": False,
                "idempotentHint": False,
                "openWorldHint": False,
            },
        )
        self.app.tool(
            self.get_vars,
            annotations={
                "title": "Add Missing Stack Variables",
                "readOnlyHint": False,
                "destructiveHint": False,
                "idempotentHint": True,
                "openWorldHint": False,
            },
        )
        self.app.tool(
            self.sync_remote,
            annotations={
                "title": "Sync Remote Stack",
                "readOnlyHint": False,
                "destructiveHint": False,
                "idempotentHint": True,
                "openWorldHint": True,
            },
        )
        self.app.tool(
            self.clean_remote,
            annotations={
                "title": "Clean Remote Stack",
                "readOnlyHint": False,
                "destructiveHint": True,  # Deletes the git working copy
                "idempotentHint": False,
                "openWorldHint": False,
            },
        )

    async def deploy_stack(self, stack: str, tag: str) -> ToolResult:
        """Deploy a stack at an image tag ('latest' or vX.Y.Z).

        The tag is written to <STACK>_IMAGE_TAG in the env file and rolled back
        if the deployment fails.
        """
        return await self.stack_service.deploy_stack(stack, tag)

    async def run_job(
        self, stack: str, service: str, command: list[str] | None = None
    ) -> ToolResult:
        """Run a cron-labelled service now, optionally with a custom command."""
        return await self.stack_service.run_job(stack, service, command)

    async def list_stacks(self) -> ToolResult:
        """List every local and remote stack with its cron jobs."""
        return await self.stack_service.list_stacks()

    async def stack_status(self, stack: str) -> ToolResult:
        """Show a stack's type, current image tag and git working copy state."""
        return await self.stack_service.stack_status(stack)

    async def teardown_stack(self, stack: str) -> ToolResult:
        """Stop and remove a stack's containers (docker compose down); volumes are kept."""
        return await self.stack_service.teardown_stack(stack)

    async def backup_stack(self, stack: str) -> ToolResult:
        """Copy a stack's config directories and storage pool volumes into the backup dir."""
        return await self.stack_service.backup_stack(stack)

    async def get_vars(self, stack: str) -> ToolResult:
        """Add empty entries to the env file for compose variables the stack is missing."""
        return await self.stack_service.get_vars(stack)

    async def sync_remote(self, stack: str) -> ToolResult:
        """Clone or refresh a remote stack and check out its configured release."""
        return await self.stack_service.sync_remote(stack)

    async def clean_remote(self, stack: str) -> ToolResult:
        """Delete a remote stack's git working copy; the next deploy clones it again."""
        return await self.stack_service.clean_remote(stack)

    def start_background(self) -> threading.Thread:
        """Run the scheduler and stacks watcher on their own event loop thread."""

        def run_background():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            loop.run_until_complete(self.orchestrator.start())
            # Keep the loop running for cron timers and file changes
            loop.run_forever()

        thread = threading.Thread(target=run_background, name="stackr-background", daemon=True)
        thread.start()
        self.logger.info("Background scheduler and stacks watcher started")
        return thread

    def run(self) -> None:
        """Run the FastMCP server."""
        try:
            self._initialize_app()

            self.logger.info("Starting Stackr server", host=self.config.host, port=self.config.port)

            # FastMCP.run() is synchronous and manages its own event loop
            if self.app is None:
                raise RuntimeError("FastMCP app not initialized")
            self.app.run(transport="http", host=self.config.host, port=self.config.port)

        except Exception as e:
            self.logger.error("Server startup failed", error=str(e))
            raise


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    default_log_level = os.getenv("LOG_LEVEL", "INFO")

    parser = argparse.ArgumentParser(
        prog="stackr", description="Docker Compose stack lifecycle manager"
    )
    parser.add_argument("--repo-root", default=None, help="Repository root (STACKR_REPO_ROOT)")
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the server, scheduler and watcher (default)")
    serve.add_argument("--host", default=None, help="Server host (STACKR_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Server port (STACKR_PORT)")

    deploy = subparsers.add_parser("deploy", help="Deploy a stack at an image tag")
    deploy.add_argument("stack")
    deploy.add_argument("tag")

    run_job = subparsers.add_parser("run-job", help="Run a cron-labelled service once")
    run_job.add_argument("stack")
    run_job.add_argument("service")
    run_job.add_argument("job_command", nargs=argparse.REMAINDER, help="Command override")

    status = subparsers.add_parser("status", help="Show stack status")
    status.add_argument("stack", nargs="?", default=None, help="Stack name (all stacks if omitted)")

    for name, (_, help_text) in STACK_COMMANDS.items():
        subparsers.add_parser(name, help=help_text).add_argument("stack")

    subparsers.add_parser("validate-config", help="Validate configuration and exit")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "serve"
        args.host = None
        args.port = None
    return args


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    logger = _setup_logging_system(args, os.getenv("LOG_DIR"))

    try:
        config = load_config(args.repo_root)
    except StackrError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    if args.command == "validate-config":
        logger.info("Configuration is valid", stacks_dir=str(config.stacks_path))
        return

    if args.command == "serve":
        if args.host:
            config.host = args.host
        if args.port:
            config.port = args.port
        server = StackrServer(config)
        server.start_background()
        _run_server(server, logger)
        return

    server = StackrServer(config)
    result = asyncio.run(_run_command(server, args))
    print(json.dumps(result.structured_content, indent=2, default=str))
    if not (result.structured_content or {}).get("success", False):
        sys.exit(1)


async def _run_command(server: StackrServer, args: argparse.Namespace) -> ToolResult:
    try:
        if args.command == "deploy":
            server.logger.info(
                "Deploying from command line", stack=args.stack, tag_var=tag_variable(args.stack)
            )
            return await server.deploy_stack(args.stack, args.tag)
        if args.command == "run-job":
            return await server.run_job(args.stack, args.service, args.job_command or None)
        if args.command in STACK_COMMANDS:
            method, _ = STACK_COMMANDS[args.command]
            handler = getattr(server, method)
            return await handler(args.stack)
        if args.stack:
            return await server.stack_status(args.stack)
        return await server.list_stacks()
    finally:
        await cleanup_all()


def _setup_logging_system(args, log_dir: str | None) -> Any:
    """Setup logging system with error handling."""
    from .core.logging_config import setup_logging

    # Parse log file size with validation
    try:
        max_file_size_mb = int(os.getenv("LOG_FILE_SIZE_MB", "10"))
        if max_file_size_mb < 1 or max_file_size_mb > 100:
            max_file_size_mb = 10
    except ValueError:
        max_file_size_mb = 10

    setup_logging(log_dir=log_dir, log_level=args.log_level, max_file_size_mb=max_file_size_mb)
    return get_server_logger()


def _run_server(server: StackrServer, logger) -> None:
    """Run server with error handling."""
    try:
        server.run()
    except KeyboardInterrupt:
        logger.info("Server shutdown requested")
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
