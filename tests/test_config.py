"""Tests for configuration management."""

from pathlib import Path

import pytest

from stackr.core.config_loader import StackrConfig, load_config, resolve_repo_root
from stackr.core.exceptions import ConfigurationError


def test_default_config(config, repo_root):
    """Defaults when no .stackr.yaml exists."""
    assert config.repo_root == repo_root
    assert config.env_path == repo_root / ".env"
    assert config.stacks_path == repo_root / "stacks"
    assert config.remote_stacks_path == repo_root / ".stackr-repos"
    assert config.backup_path == repo_root / "backups"
    assert config.cron_logs_path == repo_root / "logs" / "cron"
    assert config.host == "0.0.0.0"
    assert config.port == 9000
    assert config.settings.cron.profile == "cron"
    assert config.settings.cron.docker_container_retention == 5
    assert config.settings.removal.continue_on_archive_error is True
    assert config.pool_bases == {}


def test_load_yaml_config(repo_root, write_global_config, tmp_path):
    (repo_root / "services").mkdir()
    write_global_config(
        {
            "stacks_dir": "services",
            "remote_stacks_dir": "/srv/remote",
            "cron": {"enable_file_logs": False, "docker_container_retention": 2},
            "http": {"base_domain": "lab.example.com"},
            "paths": {"backup_dir": "bk", "pools": {"ssd": "/mnt/ssd", "hdd": "pools/hdd"}},
            "env": {"global": {"TZ": "UTC"}, "stacks": {"app": {"PORT": 8080}}},
        }
    )

    config = load_config(repo_root)

    assert config.stacks_path == repo_root / "services"
    assert config.remote_stacks_path == Path("/srv/remote")
    assert config.backup_path == repo_root / "bk"
    assert config.settings.cron.enable_file_logs is False
    assert config.settings.cron.docker_container_retention == 2
    assert config.settings.http.base_domain == "lab.example.com"
    assert config.settings.env.global_env == {"TZ": "UTC"}
    assert config.settings.env.stacks == {"app": {"PORT": "8080"}}
    assert config.pool_bases == {"SSD": Path("/mnt/ssd"), "HDD": repo_root / "pools" / "hdd"}


def test_env_overrides(repo_root, monkeypatch):
    (repo_root / "other-stacks").mkdir()
    monkeypatch.setenv("STACKR_ENV_FILE", "config/stackr.env")
    monkeypatch.setenv("STACKR_PORT", "9100")
    monkeypatch.setenv("STACKR_STACKS_DIR", "other-stacks")

    config = load_config(repo_root)

    assert config.env_path == repo_root / "config" / "stackr.env"
    assert config.port == 9100
    assert config.stacks_path == repo_root / "other-stacks"


def test_repo_root_from_environment(repo_root, monkeypatch):
    monkeypatch.setenv("STACKR_REPO_ROOT", str(repo_root))

    assert resolve_repo_root() == repo_root.resolve()


def test_repo_root_must_exist(tmp_path):
    with pytest.raises(ConfigurationError, match="does not exist"):
        resolve_repo_root(str(tmp_path / "missing"))


def test_repo_root_must_be_directory(tmp_path):
    file_path = tmp_path / "file"
    file_path.write_text("")

    with pytest.raises(ConfigurationError, match="must point to a directory"):
        resolve_repo_root(str(file_path))


def test_missing_stacks_dir(tmp_path):
    with pytest.raises(ConfigurationError, match="stacks dir"):
        load_config(tmp_path)


def test_invalid_yaml(repo_root):
    (repo_root / ".stackr.yaml").write_text("cron: [\n")

    with pytest.raises(ConfigurationError, match="failed to read stackr config"):
        load_config(repo_root)


def test_invalid_values(repo_root, write_global_config):
    write_global_config({"cron": {"docker_container_retention": -1}})

    with pytest.raises(ConfigurationError, match="failed to parse stackr config"):
        load_config(repo_root)


def test_empty_pool_name_rejected(repo_root):
    config = StackrConfig(repo_root=repo_root)
    config.settings.paths.pools = {" ": "/mnt/x"}

    with pytest.raises(ConfigurationError, match="empty key"):
        _ = config.pool_bases
