"""
Cron Job Scheduling Service

Discovers label-annotated compose services, runs them on cron schedules or on
demand, and prunes old job containers.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime

import docker
import structlog
from croniter import croniter

from ..constants import (
    CLEANUP_SCHEDULE,
    CRON_CONTAINER_MARKER,
    CRON_RUN_ON_DEPLOY_LABEL,
    CRON_SCHEDULE_LABEL,
)
from ..core.config_loader import StackrConfig
from ..core.exceptions import ConfigurationError, JobNotFoundError
from ..core.settings import JOB_TIMEOUT
from ..models import CronJob, JobRunResult, StackInfo
from ..utils import parse_bool
from .job_logs import JobLogWriters, header, open_job_logs
from .labels import ServiceLabels, read_service_labels
from .resolver import StackResolver
from .stack_runner import StackRunner

logger = structlog.get_logger()


def container_name_for(stack: str, service: str, now: float | None = None) -> str:
    """Deterministic job container name: <stack>-<service>-cron-<unix_ts>."""
    timestamp = int(now if now is not None else time.time())
    return f"{stack}-{service}{CRON_CONTAINER_MARKER}{timestamp}"


def _container_sort_key(name: str) -> tuple[int, str]:
    _, _, suffix = name.rpartition(CRON_CONTAINER_MARKER)
    try:
        return (int(suffix), name)
    except ValueError:
        return (-1, name)


def select_expired_containers(names: Sequence[str], retention: int) -> list[str]:
    """Names beyond the newest `retention` per <stack>-<service> group."""
    groups: dict[str, list[str]] = {}
    for name in names:
        group, marker, suffix = name.rpartition(CRON_CONTAINER_MARKER)
        if not marker or not suffix.isdigit():
            continue
        groups.setdefault(group, []).append(name)

    expired = []
    for members in groups.values():
        if len(members) <= retention:
            continue
        members.sort(key=_container_sort_key, reverse=True)
        expired.extend(members[retention:])
    return expired


def jobs_from_labels(
    stack: StackInfo, services: list[ServiceLabels], preferred_profile: str = ""
) -> list[CronJob]:
    """CronJobs for every service carrying the schedule label, sorted by service."""
    jobs = []
    for service in sorted(services, key=lambda s: s.name):
        if CRON_SCHEDULE_LABEL not in service.labels:
            continue

        profile = ""
        if len(service.profiles) == 1:
            profile = service.profiles[0].strip()
        elif preferred_profile and preferred_profile in service.profiles:
            profile = preferred_profile

        run_on_startup = False
        raw = service.labels.get(CRON_RUN_ON_DEPLOY_LABEL, "").strip()
        if raw:
            try:
                run_on_startup = parse_bool(raw)
            except ValueError:
                logger.warning(
                    "Invalid run-on-deploy label value",
                    label=CRON_RUN_ON_DEPLOY_LABEL,
                    stack=stack.name,
                    service=service.name,
                    value=raw,
                )

        jobs.append(
            CronJob(
                stack=stack.name,
                service=service.name,
                schedule=service.labels[CRON_SCHEDULE_LABEL].strip(),
                profile=profile,
                run_on_startup=run_on_startup,
                compose_file=stack.compose_path,
            )
        )
    return jobs


def validate_schedules(jobs: Sequence[CronJob]) -> None:
    """Raise ConfigurationError for the first job with an invalid cron expression."""
    for job in jobs:
        if job.manual_only:
            continue
        if not croniter.is_valid(job.schedule):
            raise ConfigurationError(
                f"invalid cron schedule for stack={job.stack} service={job.service}: "
                f"{job.schedule!r}"
            )


class _CronDriver:
    """Timer tasks for one immutable job set.

    Firings whose previous run of the same job is still in flight are
    skipped. drain() cancels the timers and waits for in-flight runs.
    """

    def __init__(
        self,
        jobs: tuple[CronJob, ...],
        execute: Callable[[CronJob], Awaitable[object]],
        cleanup: Callable[[], Awaitable[object]],
    ):
        self.jobs = jobs
        self._execute = execute
        self._cleanup = cleanup
        self._timers: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._active: set[tuple[str, str]] = set()
        self.logger = logger.bind(component="cron_driver")

    def arm(self) -> None:
        for job in self.jobs:
            if job.manual_only:
                self.logger.info("Registered manual-only job", stack=job.stack, service=job.service)
                continue
            self._timers.append(
                asyncio.create_task(self._loop(job.schedule, lambda j=job: self.fire(j)))
            )
            self.logger.info(
                "Scheduled cron job", stack=job.stack, service=job.service, schedule=job.schedule
            )

        self._timers.append(asyncio.create_task(self._loop(CLEANUP_SCHEDULE, self._spawn_cleanup)))

        for job in self.jobs:
            if job.run_on_startup:
                self.logger.info("Run-on-deploy job triggered", stack=job.stack, service=job.service)
                self.fire(job)

    async def _loop(self, expression: str, action: Callable[[], None]) -> None:
        schedule = croniter(expression, datetime.now())
        while True:
            next_fire = schedule.get_next(datetime)
            delay = (next_fire - datetime.now()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            action()

    def fire(self, job: CronJob) -> bool:
        """Start a run unless the same job is still running; returns whether it started."""
        if job.key in self._active:
            self.logger.info(
                "Skipping cron firing, previous run still executing",
                stack=job.stack,
                service=job.service,
            )
            return False

        self._active.add(job.key)
        self._track(asyncio.create_task(self._run(job)))
        return True

    async def _run(self, job: CronJob) -> None:
        try:
            await self._execute(job)
        except Exception as e:
            logger.error("Cron job failed", stack=job.stack, service=job.service, error=str(e))
        finally:
            self._active.discard(job.key)

    def _spawn_cleanup(self) -> None:
        self._track(asyncio.create_task(self._cleanup()))

    def _track(self, task: asyncio.Task) -> None:
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    def is_running(self, job: CronJob) -> bool:
        return job.key in self._active

    async def drain(self) -> None:
        for timer in self._timers:
            timer.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers.clear()

        if self._inflight:
            self.logger.info("Waiting for in-flight cron runs", count=len(self._inflight))
            await asyncio.gather(*list(self._inflight), return_exceptions=True)


class CronScheduler:
    """Runs label-annotated services on cron schedules (Stopped -> Running -> Stopped)."""

    def __init__(
        self,
        config: StackrConfig,
        resolver: StackResolver | None = None,
        runner: StackRunner | None = None,
        docker_client_factory: Callable[[], docker.DockerClient] = docker.from_env,
    ):
        self.config = config
        self.resolver = resolver or StackResolver(config)
        self.runner = runner or StackRunner(config)
        self.docker_client_factory = docker_client_factory
        self._lock = asyncio.Lock()
        self._driver: _CronDriver | None = None
        self._background: set[asyncio.Task] = set()
        self.logger = logger.bind(service="cron_scheduler")

    @property
    def is_running(self) -> bool:
        return self._driver is not None

    @property
    def jobs(self) -> tuple[CronJob, ...]:
        driver = self._driver
        return driver.jobs if driver is not None else ()

    def discover_jobs(self) -> tuple[CronJob, ...]:
        """Full discovery pass over every stack's compose file.

        Remote stacks that have not been cloned yet contribute no jobs.

        Raises:
            StackResolutionError: If any stack directory is ambiguous
            ConfigurationError: If a descriptor or compose file is invalid
        """
        jobs: list[CronJob] = []
        for stack in self.resolver.discover_all():
            if not stack.compose_path.is_file():
                self.logger.debug(
                    "Compose file not present, skipping", stack=stack.name, path=str(stack.compose_path)
                )
                continue
            jobs.extend(
                jobs_from_labels(
                    stack, read_service_labels(stack.compose_path), self.config.settings.cron.profile
                )
            )
        return tuple(jobs)

    async def start(self) -> None:
        """Discover jobs and arm the driver; no-op when already running.

        Raises:
            ConfigurationError: If discovery fails or a schedule is invalid
        """
        async with self._lock:
            if self._driver is not None:
                return
            jobs = self.discover_jobs()
            validate_schedules(jobs)
            self._arm(jobs)

        self._spawn_startup_cleanup()

    async def reload(self) -> None:
        """Rediscover jobs, drain the old driver, then arm a new one.

        Discovery and validation happen before the old driver is touched, so a
        broken compose file leaves the current schedule running.
        """
        async with self._lock:
            jobs = self.discover_jobs()
            validate_schedules(jobs)

            if self._driver is not None:
                await self._driver.drain()
                self._driver = None

            self._arm(jobs)
            self.logger.info("Cron scheduler reloaded", jobs=len(jobs))

    async def stop(self) -> None:
        async with self._lock:
            if self._driver is None:
                return
            await self._driver.drain()
            self._driver = None
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)
            self.logger.info("Cron scheduler stopped")

    def _arm(self, jobs: tuple[CronJob, ...]) -> None:
        if not jobs:
            self.logger.info("No cron-enabled services detected")
        driver = _CronDriver(jobs, self.run_job, self.cleanup_containers)
        driver.arm()
        self._driver = driver
        self.logger.info("Cron scheduler started", jobs=len(jobs))

    def _spawn_startup_cleanup(self) -> None:
        task = asyncio.create_task(self.cleanup_containers())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def run_job_manually(
        self, stack: str, service: str, command: Sequence[str] | None = None
    ) -> JobRunResult:
        """Run a job now, bypassing its schedule, optionally overriding its command.

        Raises:
            JobNotFoundError: If no service in the stack carries the schedule label
        """
        for job in self.discover_jobs():
            if job.stack == stack and job.service == service:
                if command:
                    self.logger.info(
                        "Manually executing cron job with custom command",
                        stack=stack,
                        service=service,
                        command=list(command),
                    )
                else:
                    self.logger.info("Manually executing cron job", stack=stack, service=service)
                return await self.run_job(job, command or ())

        raise JobNotFoundError(
            f"cron job not found: stack={stack} service={service} "
            f"(make sure the service has the {CRON_SCHEDULE_LABEL} label)"
        )

    async def run_job(self, job: CronJob, command: Sequence[str] = ()) -> JobRunResult:
        """Pull the job's image (best effort), then run it under a fixed container name."""
        stack = self.resolver.resolve(job.stack)
        env = self.runner.prepare(stack, provision=False)
        cron = self.config.settings.cron

        logs: JobLogWriters | None = None
        if cron.enable_file_logs:
            logs = open_job_logs(self.config.cron_logs_path, job.stack, job.service)

        try:
            await self._pull_image(stack, job, env, logs)

            container_name = container_name_for(job.stack, job.service)
            if logs is not None:
                logs.write_exec(
                    header(
                        "Cron Job Execution",
                        {
                            "Stack": job.stack,
                            "Service": job.service,
                            "Schedule": job.schedule or "(manual)",
                            "Container": container_name,
                            "Time": datetime.now().astimezone().isoformat(),
                        },
                    )
                )

            self.logger.info(
                "Cron job started", stack=job.stack, service=job.service, container=container_name
            )
            result = await self.runner.run_service(
                stack,
                job.service,
                container_name,
                env,
                command=command,
                profile=job.profile,
                timeout=JOB_TIMEOUT,
                sinks=[logs.exec_log] if logs is not None and logs.exec_log else (),
            )
        finally:
            if logs is not None:
                logs.close()

        run = JobRunResult(
            stack=job.stack,
            service=job.service,
            container_name=container_name,
            exit_code=result.returncode,
            stdout=result.stdout.strip(),
            stderr=result.stderr.strip(),
            build_log=str(logs.build_path) if logs is not None else None,
            exec_log=str(logs.exec_path) if logs is not None else None,
        )
        if run.success:
            self.logger.info("Cron job finished", stack=job.stack, service=job.service)
        else:
            self.logger.error(
                "Cron job failed",
                stack=job.stack,
                service=job.service,
                exit_code=run.exit_code,
                stderr=run.stderr,
            )
        return run

    async def _pull_image(
        self, stack: StackInfo, job: CronJob, env: dict[str, str], logs: JobLogWriters | None
    ) -> None:
        if logs is not None:
            logs.write_build(
                header(
                    "Cron Job Build/Pull Phase",
                    {
                        "Stack": job.stack,
                        "Service": job.service,
                        "Time": datetime.now().astimezone().isoformat(),
                    },
                )
            )

        sinks = [logs.build_log] if logs is not None and logs.build_log else ()
        try:
            result = await self.runner.pull_service(
                stack, job.service, env, profile=job.profile, timeout=JOB_TIMEOUT, sinks=sinks
            )
        except (asyncio.TimeoutError, OSError) as e:
            self.logger.warning(
                "Cron job image pull failed", stack=job.stack, service=job.service, error=str(e)
            )
            if logs is not None:
                logs.write_build(f"Note: Pull failed ({e})\n")
            return

        if not result.success:
            self.logger.warning(
                "Cron job image pull failed, image may be built locally",
                stack=job.stack,
                service=job.service,
                exit_code=result.returncode,
            )
            if logs is not None:
                logs.write_build("Note: Pull failed (image may be built locally)\n")
        elif logs is not None and not result.stdout and not result.stderr:
            logs.write_build("Image already up to date (no pull needed)\n")

    async def cleanup_containers(self) -> list[str]:
        """Remove job containers beyond the configured retention, newest kept.

        Log files are left alone. Failures are logged and never raised.
        """
        retention = self.config.settings.cron.docker_container_retention
        try:
            client = await asyncio.to_thread(self.docker_client_factory)
            containers = await asyncio.to_thread(
                client.containers.list, all=True, filters={"name": CRON_CONTAINER_MARKER}
            )
        except docker.errors.DockerException as e:
            self.logger.warning("Cron container cleanup failed", error=str(e))
            return []

        by_name = {container.name: container for container in containers}
        removed = []
        for name in select_expired_containers(list(by_name), retention):
            try:
                await asyncio.to_thread(by_name[name].remove)
            except docker.errors.APIError as e:
                self.logger.warning("Failed to remove cron container", container=name, error=str(e))
                continue
            removed.append(name)

        if removed:
            self.logger.info("Cleaned up old cron containers", count=len(removed), containers=removed)
        return removed
