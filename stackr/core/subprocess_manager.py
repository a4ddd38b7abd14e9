"""Centralized subprocess management with proper resource handling."""

import asyncio
import os
import threading
from collections.abc import Sequence
from typing import Any, Optional, TextIO

import structlog

from stackr.core.exceptions import DockerCommandError

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 30  # Default timeout in seconds
KILL_TIMEOUT = 5  # Time to wait after SIGTERM before SIGKILL


class SubprocessManager:
    """Manages subprocess execution with proper resource cleanup."""

    def __init__(self):
        # Shared by the server loop and the background loop; each process is
        # owned by the loop that spawned it
        self._active_processes: dict[asyncio.subprocess.Process, asyncio.AbstractEventLoop] = {}
        self._lock = threading.Lock()

    async def run_command(
        self,
        cmd: list[str],
        *,
        timeout: Optional[float] = None,
        check: bool = True,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        stdout_sinks: Sequence[TextIO] = (),
        stderr_sinks: Sequence[TextIO] = (),
    ) -> "SubprocessResult":
        """
        Run a command asynchronously with proper resource management.

        Output is always captured; when sinks are given every chunk is also
        written to them as it arrives (used to tee job output into log files).

        Args:
            cmd: Command and arguments as a list
            timeout: Timeout in seconds (default: DEFAULT_TIMEOUT)
            check: Raise exception if command fails
            cwd: Working directory for the command
            env: Environment variables (defaults to a copy of os.environ)
            stdout_sinks: Extra writers receiving stdout
            stderr_sinks: Extra writers receiving stderr

        Returns:
            SubprocessResult with returncode, stdout, and stderr

        Raises:
            DockerCommandError: If check=True and command fails
            asyncio.TimeoutError: If command times out
        """
        if timeout is None:
            timeout = DEFAULT_TIMEOUT

        logger.debug(
            "Executing command",
            command=" ".join(cmd),
            timeout=timeout,
            cwd=cwd,
        )

        kwargs: dict[str, Any] = {
            "cwd": cwd,
            "env": env if env is not None else os.environ.copy(),
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "stdin": asyncio.subprocess.DEVNULL,
        }

        process = None
        try:
            process = await asyncio.create_subprocess_exec(*cmd, **kwargs)

            with self._lock:
                self._active_processes[process] = asyncio.get_running_loop()

            stdout_chunks: list[str] = []
            stderr_chunks: list[str] = []
            try:
                await asyncio.wait_for(
                    asyncio.gather(
                        _pump(process.stdout, stdout_chunks, stdout_sinks),
                        _pump(process.stderr, stderr_chunks, stderr_sinks),
                        process.wait(),
                    ),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Command timed out, terminating process",
                    command=" ".join(cmd),
                    timeout=timeout,
                    pid=process.pid,
                )
                await _terminate(process)
                raise asyncio.TimeoutError(
                    f"Command timed out after {timeout} seconds: {' '.join(cmd)}"
                ) from None

            result = SubprocessResult(
                returncode=process.returncode or 0,
                stdout="".join(stdout_chunks),
                stderr="".join(stderr_chunks),
                cmd=cmd,
            )

            if check:
                result.check_returncode()

            return result

        finally:
            if process is not None:
                with self._lock:
                    self._active_processes.pop(process, None)

                if process.returncode is None:
                    try:
                        await _terminate(process)
                    except ProcessLookupError:
                        # Process already terminated
                        pass

    async def cleanup_all(self):
        """Terminate every tracked process spawned on the current event loop."""
        loop = asyncio.get_running_loop()
        with self._lock:
            processes = [p for p, owner in self._active_processes.items() if owner is loop]

        if not processes:
            return

        logger.info("Cleaning up active processes", count=len(processes))

        for process in processes:
            if process.returncode is None:
                try:
                    await _terminate(process)
                except ProcessLookupError:
                    pass

        with self._lock:
            for process in processes:
                self._active_processes.pop(process, None)


class SubprocessResult:
    """Result of a subprocess execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        cmd: list[str],
    ):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.cmd = cmd

    @property
    def success(self) -> bool:
        """Check if the command succeeded."""
        return self.returncode == 0

    def check_returncode(self):
        """Raise an exception if the command failed."""
        if self.returncode != 0:
            error_msg = (
                self.stderr.strip() if self.stderr
                else self.stdout.strip() if self.stdout
                else "Command failed"
            )
            raise DockerCommandError(
                f"Command failed with exit code {self.returncode}: {error_msg}"
            )


async def _pump(
    stream: asyncio.StreamReader | None, chunks: list[str], sinks: Sequence[TextIO]
) -> None:
    """Drain a process stream into chunks and any sinks."""
    if stream is None:
        return
    while True:
        data = await stream.read(4096)
        if not data:
            break
        text = data.decode(errors="replace")
        chunks.append(text)
        for sink in sinks:
            sink.write(text)
            sink.flush()


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """SIGTERM, then SIGKILL if the process ignores it."""
    process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=KILL_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(
            "Process did not terminate gracefully, sending SIGKILL",
            pid=process.pid,
        )
        process.kill()
        await process.wait()


# Global instance for convenience
_subprocess_manager = SubprocessManager()


async def run_command(*args, **kwargs) -> SubprocessResult:
    """Convenience function to run a command using the global subprocess manager."""
    return await _subprocess_manager.run_command(*args, **kwargs)


async def cleanup_all():
    """Cleanup all active subprocesses."""
    await _subprocess_manager.cleanup_all()
