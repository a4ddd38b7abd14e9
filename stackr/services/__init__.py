"""
Stackr Services

Service layer for stack lifecycle operations.
"""

from .deploy import DeploymentEngine  # noqa: F401
from .remote import RemoteStackManager  # noqa: F401
from .removal import RemovalHandler  # noqa: F401
from .resolver import StackResolver  # noqa: F401
from .scheduler import CronScheduler  # noqa: F401
from .stack_runner import StackRunner  # noqa: F401
from .stack_service import StackService  # noqa: F401

__all__ = [
    "CronScheduler",
    "DeploymentEngine",
    "RemoteStackManager",
    "RemovalHandler",
    "StackResolver",
    "StackRunner",
    "StackService",
]
