"""Enum definitions for Stackr."""

from enum import Enum


class StackType(Enum):
    """Where a stack's compose file comes from."""

    LOCAL = "local"
    REMOTE = "remote"


class ReleaseType(Enum):
    """How a remote stack's release ref is interpreted."""

    TAG = "tag"
    COMMIT = "commit"
