"""Per-run build and exec log files for cron jobs."""

from datetime import datetime
from pathlib import Path
from typing import TextIO

import structlog

from ..constants import JOB_LOG_DATE_FORMAT

logger = structlog.get_logger()


class JobLogWriters:
    """Open build/exec log files for one job run.

    Layout: <logs_dir>/<stack>/<service>-<timestamp>.build.log and .exec.log.
    Log files are never rotated or deleted by Stackr.
    """

    def __init__(self, logs_dir: Path | str, stack: str, service: str, now: datetime | None = None):
        self.directory = Path(logs_dir) / stack
        self.timestamp = (now or datetime.now()).strftime(JOB_LOG_DATE_FORMAT)
        self.build_path = self.directory / f"{service}-{self.timestamp}.build.log"
        self.exec_path = self.directory / f"{service}-{self.timestamp}.exec.log"
        self.build_log: TextIO | None = None
        self.exec_log: TextIO | None = None

    def open(self) -> "JobLogWriters":
        self.directory.mkdir(parents=True, exist_ok=True)
        self.build_log = self.build_path.open("w", encoding="utf-8")
        try:
            self.exec_log = self.exec_path.open("w", encoding="utf-8")
        except OSError:
            self.build_log.close()
            self.build_log = None
            raise
        return self

    def close(self) -> None:
        for handle in (self.build_log, self.exec_log):
            if handle is not None and not handle.closed:
                handle.close()

    def __enter__(self) -> "JobLogWriters":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def write_build(self, text: str) -> None:
        if self.build_log is not None:
            self.build_log.write(text)
            self.build_log.flush()

    def write_exec(self, text: str) -> None:
        if self.exec_log is not None:
            self.exec_log.write(text)
            self.exec_log.flush()


def open_job_logs(logs_dir: Path | str, stack: str, service: str) -> JobLogWriters | None:
    """Open log writers, or return None when the files cannot be created.

    A job still runs without file logs; the failure is only logged.
    """
    writers = JobLogWriters(logs_dir, stack, service)
    try:
        return writers.open()
    except OSError as e:
        logger.warning(
            "Failed to create job log files",
            stack=stack,
            service=service,
            directory=str(writers.directory),
            error=str(e),
        )
        return None


def header(title: str, fields: dict[str, str]) -> str:
    lines = [f"=== {title} ==="]
    lines.extend(f"{key}: {value}" for key, value in fields.items())
    lines.append("=" * (len(title) + 8))
    return "\n".join(lines) + "\n\n"
