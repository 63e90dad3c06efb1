"""Background OS service management."""

from .controller import (
    Completed,
    PendingManualElevation,
    ServiceController,
    ServiceOperation,
    ServiceState,
)
from .managers import ServiceManager, SystemdServiceManager, WindowsServiceManager, default_manager

__all__ = [
    "Completed",
    "PendingManualElevation",
    "ServiceController",
    "ServiceManager",
    "ServiceOperation",
    "ServiceState",
    "SystemdServiceManager",
    "WindowsServiceManager",
    "default_manager",
]
