"""Compose file label reader.

Services may declare labels either as a list of "key=value" strings or as a
mapping; both forms are normalized to a dict of trimmed strings.
"""

import re
from pathlib import Path
from typing import Any

import structlog
import yaml

from ..constants import AUTO_DEPLOY_LABEL
from ..core.exceptions import ConfigurationError
from ..utils import parse_bool

logger = structlog.get_logger()

ENV_REFERENCE_PATTERN = re.compile(r"\$\{([^}]+)\}")


class ServiceLabels:
    """Labels and profiles of one compose service."""

    def __init__(self, name: str, labels: dict[str, str], profiles: list[str]):
        self.name = name
        self.labels = labels
        self.profiles = profiles

    def __repr__(self) -> str:
        return f"ServiceLabels(name={self.name!r}, labels={self.labels!r}, profiles={self.profiles!r})"


def normalize_labels(raw: Any) -> dict[str, str]:
    """Normalize list-form or mapping-form labels into a dict.

    Raises:
        ConfigurationError: If labels are neither a list nor a mapping
    """
    if raw is None:
        return {}
    if isinstance(raw, list):
        result = {}
        for item in raw:
            key, sep, value = str(item).partition("=")
            if not sep:
                continue
            result[key.strip()] = value.strip()
        return result
    if isinstance(raw, dict):
        return {
            str(key).strip(): "" if value is None else _scalar(value).strip()
            for key, value in raw.items()
        }
    raise ConfigurationError(f"unsupported labels format: {type(raw).__name__}")


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def read_service_labels(compose_path: Path | str) -> list[ServiceLabels]:
    """Read every service's labels and profiles from a compose file.

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    compose_path = Path(compose_path)
    try:
        parsed = yaml.safe_load(compose_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"failed to read {compose_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse {compose_path}: {e}") from e

    if not isinstance(parsed, dict):
        return []
    services = parsed.get("services") or {}
    if not isinstance(services, dict):
        return []

    result = []
    for name, service in services.items():
        service = service or {}
        if not isinstance(service, dict):
            continue
        profiles = service.get("profiles") or []
        if not isinstance(profiles, list):
            profiles = [profiles]
        result.append(
            ServiceLabels(
                name=str(name),
                labels=normalize_labels(service.get("labels")),
                profiles=[str(p) for p in profiles],
            )
        )
    return result


def resolve_env_references(value: str, env_values: dict[str, str]) -> str:
    """Replace ${VAR} references with env values, leaving unknown ones as-is."""

    def _replace(match: re.Match) -> str:
        return env_values.get(match.group(1), match.group(0))

    return ENV_REFERENCE_PATTERN.sub(_replace, value)


def is_auto_deploy_enabled(
    compose_path: Path | str, env_values: dict[str, str], stack: str = ""
) -> bool:
    """False when any service sets stackr.deploy.auto to false or a non-boolean.

    Services without the label do not affect the result.
    """
    for service in read_service_labels(compose_path):
        if AUTO_DEPLOY_LABEL not in service.labels:
            continue

        resolved = resolve_env_references(service.labels[AUTO_DEPLOY_LABEL], env_values).strip()
        try:
            enabled = parse_bool(resolved)
        except ValueError:
            logger.warning(
                "Invalid auto-deploy label value, treating as disabled",
                stack=stack,
                service=service.name,
                value=resolved,
            )
            return False

        if not enabled:
            logger.info("Auto-deployment disabled", stack=stack, service=service.name)
            return False
    return True
