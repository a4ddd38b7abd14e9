"""Utility functions for Stackr.

Path and label-value helpers shared by the config loader, label reader
and scheduler.
"""

from pathlib import Path


def absolute_path(root: Path | str, path: Path | str | None) -> Path:
    """Resolve path against root unless it is already absolute.

    An empty path resolves to root itself.
    """
    root = Path(root)
    if path is None or not str(path).strip():
        return root
    candidate = Path(str(path).strip())
    if candidate.is_absolute():
        return candidate
    return root / candidate


def parse_bool(value: str) -> bool:
    """Parse a boolean label value (1/t/true and 0/f/false in common casings).

    Raises:
        ValueError: If value is not a recognised boolean literal
    """
    normalized = value.strip()
    if normalized in ("1", "t", "T", "TRUE", "true", "True"):
        return True
    if normalized in ("0", "f", "F", "FALSE", "false", "False"):
        return False
    raise ValueError(f"invalid boolean value: {value!r}")
