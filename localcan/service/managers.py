"""
OS service manager backends.
"""

import asyncio
import logging
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List

from ..errors import ServiceError
from ..platform import IS_WINDOWS, run_command

logger = logging.getLogger("localcan.service.managers")

NOT_INSTALLED = "not_installed"
STOPPED = "stopped"
PENDING = "pending"
RUNNING = "running"


@dataclass(frozen=True)
class OSServiceStatus:
    installed: bool
    status: str

    @property
    def running(self) -> bool:
        return self.status == RUNNING


class ServiceManager:
    """
    Base class for a platform service manager.

    Subclasses return the command lines for each action so the same steps
    can either be executed directly or written into an elevation script.
    """

    script_suffix = ".sh"

    def __init__(
        self,
        name: str,
        display_name: str,
        description: str,
        command: List[str],
        timeout: int = 60,
    ):
        self.name = name
        self.display_name = display_name
        self.description = description
        self.command = command
        self.timeout = timeout

    def action_commands(self, action: str) -> List[List[str]]:
        raise NotImplementedError

    def render_script(self, action: str) -> str:
        raise NotImplementedError

    async def query(self) -> OSServiceStatus:
        raise NotImplementedError

    async def recent_logs(self, lines: int) -> List[str]:
        raise NotImplementedError

    async def prepare(self, action: str) -> None:
        """Filesystem work that must happen before the action commands."""

    async def cleanup(self, action: str) -> None:
        """Filesystem work that must happen after the action commands."""

    async def _run(self, cmd: List[str], check: bool = True):
        try:
            code, stdout, stderr = await run_command(cmd, timeout=self.timeout)
        except FileNotFoundError as e:
            raise ServiceError(f"{cmd[0]} not found") from e
        except asyncio.TimeoutError as e:
            raise ServiceError(f"{cmd[0]} timed out after {self.timeout}s") from e
        if check and code != 0:
            raise ServiceError(f"{' '.join(cmd[:3])} failed: {stderr or stdout}")
        return code, stdout, stderr

    async def perform(self, action: str) -> None:
        """Run an action directly. Requires privilege."""
        await self.prepare(action)
        for cmd in self.action_commands(action):
            await self._run(cmd)
        await self.cleanup(action)
        logger.info(f"Service {self.name}: {action} done")


class SystemdServiceManager(ServiceManager):
    """systemd unit under /etc/systemd/system."""

    def __init__(self, *args, unit_dir: str = "/etc/systemd/system", **kwargs):
        super().__init__(*args, **kwargs)
        self.unit_path = Path(unit_dir) / f"{self.name}.service"

    def unit_file(self) -> str:
        return (
            "[Unit]\n"
            f"Description={self.display_name} - {self.description}\n"
            "After=network.target\n"
            "\n"
            "[Service]\n"
            "Type=simple\n"
            f"ExecStart={shlex.join(self.command)}\n"
            "Restart=on-failure\n"
            "\n"
            "[Install]\n"
            "WantedBy=multi-user.target\n"
        )

    def action_commands(self, action: str) -> List[List[str]]:
        if action == "install":
            return [
                ["systemctl", "daemon-reload"],
                ["systemctl", "enable", self.name],
            ]
        if action == "uninstall":
            return [
                ["systemctl", "disable", "--now", self.name],
            ]
        if action in ("start", "stop"):
            return [["systemctl", action, self.name]]
        raise ValueError(f"Unknown action: {action}")

    async def prepare(self, action: str) -> None:
        if action == "install":
            try:
                self.unit_path.write_text(self.unit_file())
            except OSError as e:
                raise ServiceError(f"Cannot write {self.unit_path}: {e}") from e

    async def cleanup(self, action: str) -> None:
        if action == "uninstall":
            try:
                self.unit_path.unlink(missing_ok=True)
            except OSError as e:
                raise ServiceError(f"Cannot remove {self.unit_path}: {e}") from e
            await self._run(["systemctl", "daemon-reload"])

    def render_script(self, action: str) -> str:
        lines = ["#!/bin/sh", f"# {action} {self.display_name}", "set -e", ""]
        if action == "install":
            lines.append(f"cat > {shlex.quote(str(self.unit_path))} <<'EOF'")
            lines.append(self.unit_file().rstrip("\n"))
            lines.append("EOF")
        lines.extend(shlex.join(cmd) for cmd in self.action_commands(action))
        if action == "uninstall":
            lines.append(f"rm -f {shlex.quote(str(self.unit_path))}")
            lines.append("systemctl daemon-reload")
        return "\n".join(lines) + "\n"

    async def query(self) -> OSServiceStatus:
        _, stdout, _ = await self._run([
            "systemctl", "show", self.name,
            "--property=LoadState,ActiveState", "--no-pager",
        ], check=False)
        props = dict(
            line.split("=", 1) for line in stdout.splitlines() if "=" in line
        )
        if props.get("LoadState", "not-found") == "not-found":
            return OSServiceStatus(installed=False, status=NOT_INSTALLED)
        active = props.get("ActiveState", "inactive")
        if active == "active":
            return OSServiceStatus(installed=True, status=RUNNING)
        if active in ("activating", "deactivating", "reloading"):
            return OSServiceStatus(installed=True, status=PENDING)
        return OSServiceStatus(installed=True, status=STOPPED)

    async def recent_logs(self, lines: int) -> List[str]:
        code, stdout, _ = await self._run([
            "journalctl", "-u", self.name, "-n", str(lines),
            "--no-pager", "-o", "short-iso",
        ], check=False)
        if code != 0:
            return []
        return [l for l in stdout.splitlines() if l and not l.startswith("-- ")]


_SC_STATE_RE = re.compile(r"STATE\s+:\s+(\d+)")


class WindowsServiceManager(ServiceManager):
    """Windows service registered with sc.exe."""

    script_suffix = ".bat"

    def action_commands(self, action: str) -> List[List[str]]:
        if action == "install":
            return [
                ["sc.exe", "create", self.name,
                 "binPath=", subprocess.list2cmdline(self.command),
                 "start=", "auto", "DisplayName=", self.display_name],
                ["sc.exe", "description", self.name, self.description],
            ]
        if action == "uninstall":
            return [["sc.exe", "delete", self.name]]
        if action in ("start", "stop"):
            return [["sc.exe", action, self.name]]
        raise ValueError(f"Unknown action: {action}")

    async def prepare(self, action: str) -> None:
        if action == "uninstall":
            # Stopping a stopped service fails; that is fine here
            await self._run(["sc.exe", "stop", self.name], check=False)

    def render_script(self, action: str) -> str:
        lines = ["@echo off", f"REM {action} {self.display_name}"]
        if action == "uninstall":
            lines.append(f"sc.exe stop {self.name}")
        lines.extend(subprocess.list2cmdline(cmd) for cmd in self.action_commands(action))
        lines.append("pause")
        return "\r\n".join(lines) + "\r\n"

    async def query(self) -> OSServiceStatus:
        code, stdout, _ = await self._run(["sc.exe", "query", self.name], check=False)
        # 1060: the specified service does not exist
        if code == 1060 or "1060" in stdout:
            return OSServiceStatus(installed=False, status=NOT_INSTALLED)
        match = _SC_STATE_RE.search(stdout)
        state = int(match.group(1)) if match else 1
        if state == 4:
            return OSServiceStatus(installed=True, status=RUNNING)
        if state in (2, 3, 5, 6):
            return OSServiceStatus(installed=True, status=PENDING)
        return OSServiceStatus(installed=True, status=STOPPED)

    async def recent_logs(self, lines: int) -> List[str]:
        script = (
            "Get-WinEvent -FilterHashtable @{LogName='System';"
            "ProviderName='Service Control Manager'} -MaxEvents 200 "
            f"| Where-Object {{ $_.Message -like '*{self.display_name}*' }} "
            f"| Select-Object -First {lines} "
            "| ForEach-Object { \"$($_.TimeCreated.ToString('s')) $($_.Message)\" }"
        )
        code, stdout, _ = await self._run(
            ["powershell", "-NoProfile", "-Command", script], check=False
        )
        if code != 0:
            return []
        # Newest first from the event log
        return list(reversed([l for l in stdout.splitlines() if l.strip()]))


def default_manager(
    name: str,
    display_name: str,
    description: str,
    command: List[str],
    timeout: int = 60,
) -> ServiceManager:
    cls = WindowsServiceManager if IS_WINDOWS else SystemdServiceManager
    return cls(name, display_name, description, command, timeout=timeout)
