"""Core exceptions for Stackr operations."""


class StackrError(Exception):
    """Base exception for Stackr operations."""


class ConfigurationError(StackrError):
    """Configuration validation or loading failed."""


class EnvFileError(StackrError):
    """Environment file could not be read or written."""


class StackResolutionError(StackrError):
    """A stack name could not be classified."""

    def __init__(self, stack_name: str, message: str):
        super().__init__(message)
        self.stack_name = stack_name


class StackNotFoundError(StackResolutionError):
    """Stack directory does not exist."""

    def __init__(self, stack_name: str):
        super().__init__(stack_name, f"stack {stack_name!r} does not exist")


class AmbiguousStackError(StackResolutionError):
    """Stack directory holds both a local compose file and a remote definition."""

    def __init__(self, stack_name: str):
        super().__init__(
            stack_name,
            f"stack {stack_name!r} has both docker-compose.yml and stackr-repo.yml - "
            "this is ambiguous, please use one or the other",
        )


class UnclassifiedStackError(StackResolutionError):
    """Stack directory holds neither a local compose file nor a remote definition."""

    def __init__(self, stack_name: str):
        super().__init__(
            stack_name,
            f"stack {stack_name!r} has neither docker-compose.yml nor stackr-repo.yml",
        )


class GitError(StackrError):
    """A git command exited with a non-zero status."""

    def __init__(
        self,
        operation: str,
        command: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = -1,
    ):
        self.operation = operation
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        if stderr.strip():
            message = f"git {operation} failed: {stderr.strip()}"
        else:
            message = f"git {operation} failed with exit code {exit_code}"
        super().__init__(message)


class RemoteStackError(StackrError):
    """Remote stack operation failed; carries an operator-facing hint."""

    def __init__(
        self,
        stack_name: str,
        operation: str,
        cause: BaseException | None = None,
        hint: str = "",
    ):
        self.stack_name = stack_name
        self.operation = operation
        self.cause = cause
        self.hint = hint
        super().__init__(self._format())

    def _format(self) -> str:
        message = f"remote stack '{self.stack_name}': {self.operation} failed"
        if self.cause is not None:
            message += f": {self.cause}"
        if self.hint:
            message += f"\n\nHint: {self.hint}"
        return message


class RetryExhaustedError(StackrError):
    """Operation kept failing until every attempt was used."""

    def __init__(self, attempts: int, last_error: BaseException | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"operation failed after {attempts} attempts: {last_error}")


class RetryCancelledError(StackrError):
    """Retry loop was cancelled while waiting for the next attempt."""


class DockerCommandError(StackrError):
    """Docker command execution failed."""


class DeployCommandError(StackrError):
    """Stack execution failed during a deploy; carries captured process output."""

    def __init__(self, message: str, exit_code: int = 1, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr

    def to_dict(self) -> dict[str, str]:
        return {
            "error": self.message,
            "exit_code": str(self.exit_code),
            "stdout": self.stdout.strip(),
            "stderr": self.stderr.strip(),
        }


class JobNotFoundError(StackrError):
    """No cron-labelled service matches the requested stack/service."""


class ArchiveError(StackrError):
    """Archiving a removed stack failed."""
