"""Centralized constants for Stackr to eliminate duplicate strings."""

# Stack directory markers
LOCAL_COMPOSE_FILE = "docker-compose.yml"
REMOTE_DEFINITION_FILE = "stackr-repo.yml"
DEPLOYMENT_OVERRIDE_FILE = ".stackr-deployment.yaml"
GIT_METADATA_DIR = ".git"

# Default locations (relative to the repo root)
DEFAULT_GLOBAL_CONFIG = ".stackr.yaml"
DEFAULT_ENV_FILE = ".env"
DEFAULT_STACKS_DIR = "stacks"
DEFAULT_REMOTE_STACKS_DIR = ".stackr-repos"
DEFAULT_BACKUP_DIR = "./backups"
DEFAULT_CRON_LOGS_DIR = "logs/cron"

# Docker Labels
DOCKER_COMPOSE_PROJECT = "com.docker.compose.project"
CRON_SCHEDULE_LABEL = "stackr.cron.schedule"
CRON_RUN_ON_DEPLOY_LABEL = "stackr.cron.run_on_deploy"
AUTO_DEPLOY_LABEL = "stackr.deploy.auto"

# Cron job containers
CRON_CONTAINER_MARKER = "-cron-"
CLEANUP_SCHEDULE = "0 */6 * * *"

# Env file sections
SECTION_MARKER_TEMPLATE = "###### {stack} vars #####"
SECTION_CLOSING_MARKER = "##########################"
STORAGE_VARS = frozenset({"STACK_STORAGE_HDD", "STACK_STORAGE_SSD", "STORAGE_HDD", "STORAGE_SSD"})

# Environment variables injected into compose runs
ENV_COMPOSE_DIRECTORY = "COMPOSE_DIRECTORY"
ENV_COMPOSE_FILE_PATH = "DCFP"
ENV_POOL_PREFIX = "STACKR_PROV_POOL_"
ENV_PROV_DOMAIN = "STACKR_PROV_DOMAIN"

# Environment variables read by Stackr
ENV_REPO_ROOT = "STACKR_REPO_ROOT"
ENV_CONFIG_FILE = "STACKR_CONFIG_FILE"
ENV_ENV_FILE = "STACKR_ENV_FILE"
ENV_HOST = "STACKR_HOST"
ENV_PORT = "STACKR_PORT"
ENV_STACKS_DIR = "STACKR_STACKS_DIR"

# Date/Time Formats
ARCHIVE_DATE_FORMAT = "%Y%m%d_%H%M%S"
JOB_LOG_DATE_FORMAT = "%Y-%m-%d_%H-%M-%S"

# Deploy
TAG_ENV_SUFFIX = "_IMAGE_TAG"
LATEST_TAG = "latest"
SEMVER_TAG_PATTERN = r"^v\d+\.\d+\.\d+(-[a-zA-Z0-9._-]+)?$"

# Logging
LOG_FILE_NAME = "stackr.log"
