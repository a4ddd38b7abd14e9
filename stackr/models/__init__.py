"""Data models for Stackr."""

from .enums import ReleaseType, StackType  # noqa: F401
from .jobs import CronJob, DeployResult, JobRunResult  # noqa: F401
from .stack import (  # noqa: F401
    DeploymentConfig,
    ReleaseConfig,
    RemoteRepoConfig,
    RemoteStackDefinition,
    RemoteStackStatus,
    StackInfo,
)

__all__ = [
    # Enums
    "ReleaseType",
    "StackType",
    # Stack models
    "DeploymentConfig",
    "ReleaseConfig",
    "RemoteRepoConfig",
    "RemoteStackDefinition",
    "RemoteStackStatus",
    "StackInfo",
    # Job models
    "CronJob",
    "DeployResult",
    "JobRunResult",
]
