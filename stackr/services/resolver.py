"""Stack classification: local compose file vs remote repository descriptor."""

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from ..constants import LOCAL_COMPOSE_FILE, REMOTE_DEFINITION_FILE
from ..core.config_loader import StackrConfig
from ..core.exceptions import (
    AmbiguousStackError,
    ConfigurationError,
    StackNotFoundError,
    UnclassifiedStackError,
)
from ..models import RemoteStackDefinition, StackInfo, StackType


def load_remote_definition(stacks_dir: Path, stack: str) -> RemoteStackDefinition:
    """Read and validate stacks/<stack>/stackr-repo.yml.

    Raises:
        ConfigurationError: If the file is unreadable, not YAML or fails validation
    """
    path = Path(stacks_dir) / stack / REMOTE_DEFINITION_FILE
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"failed to read {REMOTE_DEFINITION_FILE}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse {REMOTE_DEFINITION_FILE}: {e}") from e

    if not isinstance(raw, dict):
        raw = {}
    try:
        return RemoteStackDefinition.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(
            f"invalid {REMOTE_DEFINITION_FILE} for stack {stack!r}: {_describe(e)}"
        ) from e


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"])
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


class StackResolver:
    """Resolves stack names to StackInfo."""

    def __init__(self, config: StackrConfig):
        self.config = config
        self.logger = structlog.get_logger().bind(component="stack_resolver")

    @property
    def stacks_dir(self) -> Path:
        return self.config.stacks_path

    @property
    def remote_root(self) -> Path:
        return self.config.remote_stacks_path

    def resolve(self, name: str) -> StackInfo:
        """Classify one stack.

        Raises:
            StackNotFoundError: The stack directory does not exist
            AmbiguousStackError: Both a compose file and a remote descriptor exist
            UnclassifiedStackError: Neither marker exists
            ConfigurationError: The remote descriptor is invalid
        """
        stack_dir = self.stacks_dir / name
        if not stack_dir.is_dir():
            raise StackNotFoundError(name)

        has_local = (stack_dir / LOCAL_COMPOSE_FILE).is_file()
        has_remote = (stack_dir / REMOTE_DEFINITION_FILE).is_file()

        if has_local and has_remote:
            raise AmbiguousStackError(name)
        if has_local:
            return StackInfo(
                name=name,
                type=StackType.LOCAL,
                compose_path=stack_dir / LOCAL_COMPOSE_FILE,
            )
        if has_remote:
            definition = load_remote_definition(self.stacks_dir, name)
            return StackInfo(
                name=name,
                type=StackType.REMOTE,
                compose_path=self.remote_compose_path(name, definition.remote_repo.subdir),
            )
        raise UnclassifiedStackError(name)

    def remote_compose_path(self, name: str, subdir: str | None) -> Path:
        repo_path = self.remote_root / name
        if subdir:
            repo_path = repo_path / subdir
        return repo_path / LOCAL_COMPOSE_FILE

    def discover_all(self) -> list[StackInfo]:
        """Every classified stack sorted by name.

        Directories holding neither marker are skipped. Any ambiguous
        directory aborts the whole pass so callers never act on a partial list.
        """
        stacks = []
        for entry in sorted(self.stacks_dir.iterdir(), key=lambda p: p.name):
            if not entry.is_dir():
                continue
            try:
                stacks.append(self.resolve(entry.name))
            except UnclassifiedStackError:
                self.logger.debug("Skipping directory without stack marker", directory=entry.name)
                continue
        return stacks

    def stack_names(self) -> list[str]:
        return [stack.name for stack in self.discover_all()]
