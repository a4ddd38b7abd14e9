"""Timeout settings configuration for Stackr operations.

Provides centralized timeout configuration using Pydantic BaseSettings
with environment variable support for operational tuning.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StackrTimeoutSettings(BaseSettings):
    """Stackr operation timeout configuration."""

    deploy_timeout: int = Field(
        900, alias="STACKR_DEPLOY_TIMEOUT", description="Stack execution timeout for deploys in seconds"
    )

    job_timeout: int = Field(
        900, alias="STACKR_JOB_TIMEOUT", description="Cron job execution timeout in seconds"
    )

    git_timeout: int = Field(
        120, alias="STACKR_GIT_TIMEOUT", description="Single git command timeout in seconds"
    )

    docker_cli_timeout: int = Field(
        60, alias="DOCKER_CLI_TIMEOUT", description="Short docker CLI command timeout in seconds"
    )

    cleanup_timeout: int = Field(
        300, alias="STACKR_CLEANUP_TIMEOUT", description="Removed-stack cleanup timeout in seconds"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


# Global settings instance
timeout_settings = StackrTimeoutSettings()

# Timeout constants for easy import
DEPLOY_TIMEOUT: int = timeout_settings.deploy_timeout
JOB_TIMEOUT: int = timeout_settings.job_timeout
GIT_TIMEOUT: int = timeout_settings.git_timeout
DOCKER_CLI_TIMEOUT: int = timeout_settings.docker_cli_timeout
CLEANUP_TIMEOUT: int = timeout_settings.cleanup_timeout
