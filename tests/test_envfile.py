"""Tests for env file snapshot, update and section handling."""

import os
import stat

import pytest

from stackr.core import envfile
from stackr.core.exceptions import EnvFileError


class TestUpdate:
    """Setting a single key in the env file."""

    def test_replaces_existing_value_and_returns_previous(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text("# comment\nAPP_IMAGE_TAG=v1.0.0\nOTHER=keep\n")

        previous = envfile.update(path, "APP_IMAGE_TAG", "v1.1.0")

        assert previous == "v1.0.0"
        assert path.read_text() == "# comment\nAPP_IMAGE_TAG=v1.1.0\nOTHER=keep\n"

    def test_appends_missing_key_after_blank_line(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text("OTHER=keep\n")

        previous = envfile.update(path, "APP_IMAGE_TAG", "latest")

        assert previous == ""
        assert path.read_text() == "OTHER=keep\n\nAPP_IMAGE_TAG=latest\n"

    def test_preserves_comments_and_blank_lines(self, tmp_path):
        path = tmp_path / ".env"
        original = "# header\n\n  # indented comment\nA=1\n\nB=2\n"
        path.write_text(original)

        envfile.update(path, "B", "3")

        assert path.read_text() == "# header\n\n  # indented comment\nA=1\n\nB=3\n"

    def test_normalizes_crlf(self, tmp_path):
        path = tmp_path / ".env"
        path.write_bytes(b"A=1\r\nB=2\r\n")

        envfile.update(path, "A", "9")

        assert path.read_bytes() == b"A=9\nB=2\n"

    def test_empty_file(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text("")

        envfile.update(path, "A", "1")

        assert path.read_text() == "A=1\n"

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(EnvFileError):
            envfile.update(tmp_path / "missing.env", "A", "1")

    def test_keeps_file_mode(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text("A=1\n")
        os.chmod(path, 0o600)

        envfile.update(path, "A", "2")

        assert stat.S_IMODE(path.stat().st_mode) == 0o600


class TestSnapshotRestore:
    """Byte-exact rollback of the env file."""

    def test_restore_is_byte_exact(self, tmp_path):
        path = tmp_path / ".env"
        original = b"# keep me\r\nA=1\r\n\r\nB= spaced value \r\n"
        path.write_bytes(original)
        os.chmod(path, 0o640)

        snapshot = envfile.snapshot_file(path)
        envfile.update(path, "A", "2")
        envfile.update(path, "NEW", "x")
        assert path.read_bytes() != original

        envfile.restore(path, snapshot)

        assert path.read_bytes() == original
        assert stat.S_IMODE(path.stat().st_mode) == 0o640

    def test_snapshot_missing_file_raises(self, tmp_path):
        with pytest.raises(EnvFileError, match="failed to read env file"):
            envfile.snapshot_file(tmp_path / "nope.env")


class TestReadEnvFile:
    def test_missing_file_is_empty(self, tmp_path):
        assert envfile.read_env_file(tmp_path / "nope.env") == ({}, "")

    def test_values_are_not_interpolated(self, tmp_path):
        path = tmp_path / ".env"
        path.write_text("A=1\nB=${A}\nEMPTY\n")

        values = envfile.read_env_values(path)

        assert values["A"] == "1"
        assert values["B"] == "${A}"
        assert values["EMPTY"] == ""


class TestAddVarsToEnv:
    """Per-stack sections of auto-provisioned variables."""

    def test_creates_section_at_end(self):
        content, changed = envfile.add_vars_to_env("A=1\n", "MyApp", ["DB_HOST", "DB_PASS"])

        assert changed is True
        assert content == (
            "A=1\n"
            "\n"
            "###### myapp vars #####\n"
            "DB_HOST=\n"
            "DB_PASS=\n"
            "##########################\n"
        )

    def test_creates_section_in_empty_content(self):
        content, changed = envfile.add_vars_to_env("", "app", ["X"])

        assert changed is True
        assert content == "###### app vars #####\nX=\n##########################\n"

    def test_inserts_into_existing_section_without_duplicates(self):
        existing = (
            "A=1\n"
            "\n"
            "###### app vars #####\n"
            "DB_HOST=db\n"
            "##########################\n"
            "TAIL=1\n"
        )

        content, changed = envfile.add_vars_to_env(existing, "app", ["DB_HOST", "DB_PASS"])

        assert changed is True
        assert content == (
            "A=1\n"
            "\n"
            "###### app vars #####\n"
            "DB_HOST=db\n"
            "DB_PASS=\n"
            "##########################\n"
            "TAIL=1\n"
        )

    def test_no_change_when_all_present(self):
        existing = "###### app vars #####\nX=1\n##########################\n"

        content, changed = envfile.add_vars_to_env(existing, "app", ["X"])

        assert changed is False
        assert content == existing

    def test_no_names(self):
        assert envfile.add_vars_to_env("A=1\n", "app", []) == ("A=1\n", False)

    def test_section_marker_uses_lowercase_stack(self):
        assert envfile.section_marker("Grafana") == "###### grafana vars #####"
