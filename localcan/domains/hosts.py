"""
Hosts file editing for custom domains.
"""

import logging
import os
import threading
from pathlib import Path
from typing import List

from ..errors import PermissionDeniedError

logger = logging.getLogger("localcan.domains.hosts")

BLOCK_BEGIN = "# BEGIN LocalCan"
BLOCK_END = "# END LocalCan"


class HostsFileEditor:
    """
    Maintains a marked block of mappings in the OS hosts file.

    Adding a mapping that is already present, or removing one that is not,
    is a no-op. Lines outside the block are never touched.
    """

    def __init__(self, path: str, address: str = "127.0.0.1"):
        self.path = Path(path)
        self.address = address
        self._lock = threading.Lock()

    def has_permission(self) -> bool:
        """Check whether the hosts file can be written, without writing it."""
        if self.path.exists():
            return os.access(self.path, os.W_OK)
        return os.access(self.path.parent, os.W_OK)

    def _read_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return f.read().splitlines()

    def _split(self, lines: List[str]):
        """Split into (before, managed, after)."""
        try:
            start = lines.index(BLOCK_BEGIN)
            end = lines.index(BLOCK_END, start)
        except ValueError:
            return lines, [], []
        return lines[:start], lines[start + 1:end], lines[end + 1:]

    def mappings(self) -> List[str]:
        """Domains currently in the managed block."""
        _, managed, _ = self._split(self._read_lines())
        domains = []
        for line in managed:
            parts = line.split()
            if len(parts) >= 2 and not parts[0].startswith("#"):
                domains.append(parts[1])
        return domains

    def _write(self, domains: List[str]) -> None:
        before, _, after = self._split(self._read_lines())
        lines = list(before)
        if domains:
            lines.append(BLOCK_BEGIN)
            lines.extend(f"{self.address}\t{d}" for d in domains)
            lines.append(BLOCK_END)
        lines.extend(after)
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        except PermissionError as e:
            raise PermissionDeniedError(
                f"Administrator privileges required to edit {self.path}"
            ) from e

    def add_mapping(self, domain: str) -> None:
        """Map domain to the local address."""
        with self._lock:
            domains = self.mappings()
            if domain in domains:
                return
            self._write(domains + [domain])
        logger.info(f"Hosts mapping added: {domain} -> {self.address}")

    def remove_mapping(self, domain: str) -> None:
        """Remove the mapping for domain."""
        with self._lock:
            domains = self.mappings()
            if domain not in domains:
                return
            self._write([d for d in domains if d != domain])
        logger.info(f"Hosts mapping removed: {domain}")
