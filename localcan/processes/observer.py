"""
Process snapshot handling.

Detecting dev servers is the job of an external scanner; LocalCan only keeps
the latest snapshot it was given.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger("localcan.processes")

RUNNING = "running"
STOPPED = "stopped"


@dataclass(frozen=True)
class ProcessEntry:
    """A detected local dev-server process."""
    pid: int
    name: str
    framework: str
    port: int
    status: str = RUNNING

    @property
    def is_running(self) -> bool:
        return self.status == RUNNING

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "name": self.name,
            "framework": self.framework,
            "port": self.port,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProcessEntry":
        return cls(
            pid=int(data["pid"]),
            name=data.get("name") or data["framework"],
            framework=data["framework"],
            port=int(data["port"]),
            status=data.get("status", RUNNING),
        )


class ProcessObserver:
    """
    Source of process scans.

    The base observer has no detection of its own and reports whatever was
    last pushed to it.
    """

    def __init__(self, initial: Optional[List[ProcessEntry]] = None):
        self._latest: List[ProcessEntry] = list(initial or [])

    def push(self, entries: List[ProcessEntry]) -> None:
        """Record a scan produced outside this process."""
        self._latest = list(entries)
        logger.debug(f"Received scan with {len(entries)} processes")

    async def scan(self) -> List[ProcessEntry]:
        """Return the current list of detected processes."""
        return list(self._latest)
