"""Byte-exact snapshot, update and restore of the shared .env file.

The live file is the only source of truth. Callers snapshot it immediately
before mutating and restore the snapshot when the surrounding operation fails;
nothing read here is cached between operations.
"""

import os
import stat
from dataclasses import dataclass
from pathlib import Path

import structlog
from dotenv import dotenv_values

from ..constants import SECTION_CLOSING_MARKER, SECTION_MARKER_TEMPLATE
from .exceptions import EnvFileError

logger = structlog.get_logger()

DEFAULT_MODE = 0o644


@dataclass(frozen=True)
class EnvSnapshot:
    """Raw bytes and permission bits of the env file at one point in time."""

    data: bytes
    mode: int = DEFAULT_MODE


def snapshot_file(path: Path | str) -> EnvSnapshot:
    """Capture the env file contents and mode.

    Raises:
        EnvFileError: If the file cannot be read
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise EnvFileError(f"failed to read env file {path}: {e}") from e

    mode = DEFAULT_MODE
    try:
        mode = stat.S_IMODE(path.stat().st_mode)
    except OSError:
        pass
    return EnvSnapshot(data=data, mode=mode)


def restore(path: Path | str, snapshot: EnvSnapshot) -> None:
    """Write a snapshot back byte-for-byte, including its mode."""
    path = Path(path)
    try:
        path.write_bytes(snapshot.data)
        os.chmod(path, snapshot.mode)
    except OSError as e:
        raise EnvFileError(f"failed to restore env file {path}: {e}") from e


def update(path: Path | str, key: str, value: str) -> str:
    """Set key=value in the env file and return the previous value.

    Comment and blank lines are kept verbatim, every other key is left
    untouched and CRLF line endings are normalized. A missing key is appended
    after a blank separator line. The previous value is "" when the key was
    not present.

    Raises:
        EnvFileError: If the file cannot be read or written
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise EnvFileError(f"failed to read env file {path}: {e}") from e

    lines = content.replace("\r\n", "\n").split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    updated: list[str] = []
    previous = ""
    replaced = False
    for line in lines:
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            updated.append(line)
            continue

        name, sep, current = line.partition("=")
        if sep and name.strip() == key:
            previous = current
            updated.append(f"{key}={value}")
            replaced = True
            continue

        updated.append(line)

    if not replaced:
        if updated and updated[-1] != "":
            updated.append("")
        updated.append(f"{key}={value}")

    write_env_file(path, "\n".join(updated) + "\n")
    return previous.strip()


def read_env_values(path: Path | str) -> dict[str, str]:
    """Parse the env file into a dict; a missing file yields an empty dict."""
    values, _ = read_env_file(path)
    return values


def read_env_file(path: Path | str) -> tuple[dict[str, str], str]:
    """Return parsed values and raw content of the env file.

    Raises:
        EnvFileError: If the file exists but cannot be read
    """
    path = Path(path)
    if not path.exists():
        return {}, ""
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise EnvFileError(f"failed to read env file {path}: {e}") from e

    parsed = dotenv_values(path, interpolate=False)
    values = {key: value if value is not None else "" for key, value in parsed.items()}
    return values, content


def write_env_file(path: Path | str, content: str) -> None:
    """Overwrite the env file, keeping its current mode when it exists."""
    path = Path(path)
    mode = DEFAULT_MODE
    if path.exists():
        mode = stat.S_IMODE(path.stat().st_mode)
    try:
        path.write_text(content, encoding="utf-8")
        os.chmod(path, mode)
    except OSError as e:
        raise EnvFileError(f"failed to write env file {path}: {e}") from e


def section_marker(stack: str) -> str:
    return SECTION_MARKER_TEMPLATE.format(stack=stack.lower())


def add_vars_to_env(content: str, stack: str, names: list[str]) -> tuple[str, bool]:
    """Append empty NAME= entries to the stack's section of the env content.

    The section is created at the end of the file when absent. Names already
    present in the section are not duplicated. Returns the new content and
    whether anything changed.
    """
    if not names:
        return content, False

    marker = section_marker(stack)
    if marker not in content:
        parts = []
        trimmed = content.rstrip("\n")
        if trimmed:
            parts.append(trimmed + "\n\n")
        parts.append(marker + "\n")
        parts.extend(f"{name}=\n" for name in names)
        parts.append(SECTION_CLOSING_MARKER + "\n")
        return "".join(parts), True

    section_start = content.index(marker) + len(marker)
    remainder = content[section_start:]
    end = remainder.find(SECTION_CLOSING_MARKER)
    if end == -1:
        logger.warning("Env file section has no closing marker", stack=stack)
        return content, False

    body = remainder[:end]
    existing = _section_keys(body)
    to_insert = []
    for name in names:
        if name not in existing:
            to_insert.append(name)
            existing.add(name)
    if not to_insert:
        return content, False

    head = content[:section_start]
    if not head.endswith("\n"):
        head += "\n"
    body = body.lstrip("\n")
    if body and not body.endswith("\n"):
        body += "\n"
    inserted = "".join(f"{name}=\n" for name in to_insert)
    return head + body + inserted + remainder[end:], True


def _section_keys(section: str) -> set[str]:
    keys = set()
    for line in section.split("\n"):
        trimmed = line.strip()
        if not trimmed or trimmed == SECTION_CLOSING_MARKER:
            continue
        name, sep, _ = trimmed.partition("=")
        if sep and name.strip():
            keys.add(name.strip())
    return keys
