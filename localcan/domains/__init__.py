"""Domain management for LocalCan."""

from .hosts import HostsFileEditor
from .models import AutoDetectedEntry, CustomDomain, CustomEntry, DomainAddResult, DomainEntry
from .registry import DomainRegistry, project_entries

__all__ = [
    "AutoDetectedEntry",
    "CustomDomain",
    "CustomEntry",
    "DomainAddResult",
    "DomainEntry",
    "DomainRegistry",
    "HostsFileEditor",
    "project_entries",
]
