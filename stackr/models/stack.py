"""Stack-related data models."""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import ReleaseType, StackType


class StackrModel(BaseModel):
    """Base model with common Stackr settings."""

    def model_dump(self, **kwargs) -> dict[str, Any]:
        """Convert to dict with exclude_none by default."""
        kwargs.setdefault("exclude_none", True)
        return super().model_dump(**kwargs)


class StackInfo(StackrModel):
    """A classified stack and the compose file it runs from."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: StackType
    compose_path: Path

    @property
    def is_remote(self) -> bool:
        return self.type is StackType.REMOTE


class ReleaseConfig(BaseModel):
    """Which version of a remote repository to check out."""

    type: ReleaseType
    ref: str = Field(min_length=1)

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("ref", mode="before")
    @classmethod
    def _require_ref(cls, value: Any) -> Any:
        # YAML reads bare numeric commit ids as numbers
        if isinstance(value, (int, float)):
            value = str(value)
        if isinstance(value, str) and not value.strip():
            raise ValueError("remote_repo.release.ref is required")
        return value


class RemoteRepoConfig(BaseModel):
    """The remote_repo block of stackr-repo.yml."""

    url: str = Field(min_length=1)
    branch: str = "main"
    path: str = "."
    release: ReleaseConfig

    @field_validator("url")
    @classmethod
    def _require_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("remote_repo.url is required")
        return value.strip()

    @field_validator("branch", mode="before")
    @classmethod
    def _default_branch(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "main"
        return value

    @field_validator("path", mode="before")
    @classmethod
    def _default_path(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return "."
        return value

    @property
    def subdir(self) -> str | None:
        """Subdirectory inside the clone, None when the repo root is used."""
        path = self.path.strip()
        if path in ("", "."):
            return None
        return path


class RemoteStackDefinition(BaseModel):
    """Content of stacks/<name>/stackr-repo.yml."""

    remote_repo: RemoteRepoConfig


class DeploymentConfig(BaseModel):
    """Content of .stackr-deployment.yaml inside a remote working copy."""

    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value


class RemoteStackStatus(StackrModel):
    """Working copy state of a remote stack."""

    stack: str
    type: StackType = StackType.REMOTE
    cloned: bool = False
    current_commit: str | None = None
    configured_ref: str | None = None
    release_type: ReleaseType | None = None
    repo_path: str | None = None
    dirty: bool | None = None
    error: str | None = None
