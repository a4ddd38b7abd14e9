"""Scheduled job and deploy result models."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict

from .stack import StackrModel


class CronJob(BaseModel):
    """A label-annotated service that runs on a schedule or on demand."""

    model_config = ConfigDict(frozen=True)

    stack: str
    service: str
    schedule: str = ""
    profile: str = ""
    run_on_startup: bool = False
    compose_file: Path

    @property
    def manual_only(self) -> bool:
        """Jobs with an empty schedule label only run when triggered by hand."""
        return not self.schedule.strip()

    @property
    def key(self) -> tuple[str, str]:
        return (self.stack, self.service)


class DeployResult(StackrModel):
    """Successful deploy outcome."""

    status: str = "ok"
    stack: str
    tag: str
    previous_tag: str = ""
    stdout: str = ""


class JobRunResult(StackrModel):
    """Outcome of one job execution."""

    stack: str
    service: str
    container_name: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    build_log: str | None = None
    exec_log: str | None = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0
