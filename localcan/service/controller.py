"""
Background service lifecycle for the LocalCan daemon.
"""

import asyncio
import logging
import os
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Union

from ..errors import ServiceError, ValidationError
from ..platform import is_admin
from ..storage.store import StateStore
from .managers import NOT_INSTALLED, PENDING, STOPPED, ServiceManager

logger = logging.getLogger("localcan.service.controller")

COLLECTION = "service"
ACTIONS = ("install", "uninstall", "start", "stop")


@dataclass(frozen=True)
class Completed:
    action: str
    kind: str = "completed"

    def to_api_response(self) -> dict:
        return {"kind": self.kind, "action": self.action}


@dataclass(frozen=True)
class PendingManualElevation:
    """The action needs a script run with administrator rights."""
    action: str
    script_path: str
    kind: str = "pending_manual_elevation"

    def to_api_response(self) -> dict:
        return {"kind": self.kind, "action": self.action, "script_path": self.script_path}


ServiceOutcome = Union[Completed, PendingManualElevation]


@dataclass
class ServiceState:
    installed: bool = False
    running: bool = False
    status: str = NOT_INSTALLED
    install_dir: str = ""
    installed_at: Optional[datetime] = None
    checked_at: Optional[datetime] = None

    def to_api_response(self) -> dict:
        return {
            "installed": self.installed,
            "running": self.running,
            "status": self.status,
            "install_dir": self.install_dir,
            "installed_at": self.installed_at.isoformat() if self.installed_at else None,
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
        }


@dataclass
class ServiceOperation:
    """A service action running in the background."""
    action: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: str = "running"
    outcome: Optional[ServiceOutcome] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def to_api_response(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "state": self.state,
            "outcome": self.outcome.to_api_response() if self.outcome else None,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class ServiceController:
    """
    Installs, removes, starts and stops the daemon as an OS service.

    Without privilege every action yields PendingManualElevation with a
    generated script; the reported state only changes once `refresh()`
    observes the effect on the OS.
    """

    MAX_OPERATIONS = 50

    def __init__(
        self,
        manager: ServiceManager,
        store: StateStore,
        scripts_dir: str,
        install_dir: str,
        log_lines: int = 20,
        privileged: Callable[[], bool] = is_admin,
    ):
        self.manager = manager
        self.store = store
        self.scripts_dir = Path(scripts_dir)
        self.install_dir = install_dir
        self.log_lines = log_lines
        self.privileged = privileged
        self._state = ServiceState(install_dir=install_dir)
        self._events: Deque[str] = deque(maxlen=log_lines)
        self._operations: Dict[str, ServiceOperation] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._pending_action: Optional[str] = None

    @property
    def name(self) -> str:
        return self.manager.name

    def _record(self, message: str) -> None:
        stamp = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        self._events.append(f"{stamp} {message}")
        logger.info(message)

    async def refresh(self) -> ServiceState:
        """Query the OS for the current service state."""
        try:
            os_status = await self.manager.query()
        except ServiceError as e:
            logger.warning(f"Service manager unavailable: {e}")
            os_status = None

        metadata = await self.store.get(COLLECTION, self.name)
        now = datetime.now(timezone.utc)

        if os_status is None or not os_status.installed:
            if metadata is not None and os_status is not None:
                await self.store.delete(COLLECTION, self.name)
            state = ServiceState(install_dir=self.install_dir, checked_at=now)
        else:
            if metadata is None:
                # Installed outside this process, e.g. by an elevation script
                metadata = {
                    "name": self.name,
                    "install_dir": self.install_dir,
                    "installed_at": now.isoformat(),
                }
                await self.store.put(COLLECTION, self.name, metadata)
            state = ServiceState(
                installed=True,
                running=os_status.running,
                status=os_status.status,
                install_dir=metadata.get("install_dir", self.install_dir),
                installed_at=datetime.fromisoformat(metadata["installed_at"]),
                checked_at=now,
            )

        if self._pending_action in ("start", "stop") and state.installed:
            state.status = PENDING
        self._state = state
        return state

    def status(self) -> ServiceState:
        """Last refreshed state. Call refresh() for current OS truth."""
        return self._state

    async def recent_logs(self) -> List[str]:
        """Most recent service log lines, oldest first, bounded."""
        try:
            lines = await self.manager.recent_logs(self.log_lines)
        except ServiceError as e:
            logger.debug(f"Service logs unavailable: {e}")
            lines = []
        if not lines:
            lines = list(self._events)
        return lines[-self.log_lines:]

    def _write_script(self, action: str) -> str:
        self.scripts_dir.mkdir(parents=True, exist_ok=True)
        path = self.scripts_dir / f"{action}-{self.name}{self.manager.script_suffix}"
        path.write_text(self.manager.render_script(action))
        os.chmod(path, 0o755)
        return str(path)

    async def _check_preconditions(self, action: str) -> Optional[ServiceOutcome]:
        """Return an outcome if nothing has to be done, raise if not allowed."""
        if action not in ACTIONS:
            raise ValidationError(f"Unknown service action: {action}")
        state = await self.refresh()
        if action == "install" and state.installed:
            return Completed(action)
        if action == "uninstall" and not state.installed:
            return Completed(action)
        if action in ("start", "stop") and not state.installed:
            raise ServiceError("Service is not installed")
        if action == "start" and state.running:
            return Completed(action)
        if action == "stop" and state.status == STOPPED:
            return Completed(action)
        return None

    async def run(self, action: str) -> ServiceOutcome:
        """Perform an action and wait for it."""
        async with self._lock:
            done = await self._check_preconditions(action)
            if done is not None:
                return done

            if not self.privileged():
                path = self._write_script(action)
                self._record(f"{action}: administrator rights required, script written to {path}")
                return PendingManualElevation(action, path)

            self._record(f"{action}: started")
            self._pending_action = action
            try:
                await self.manager.perform(action)
            finally:
                self._pending_action = None
            if action == "install":
                await self.store.put(COLLECTION, self.name, {
                    "name": self.name,
                    "install_dir": self.install_dir,
                    "installed_at": datetime.now(timezone.utc).isoformat(),
                })
            elif action == "uninstall":
                await self.store.delete(COLLECTION, self.name)
            self._record(f"{action}: completed")
        await self.refresh()
        return Completed(action)

    async def submit(self, action: str) -> ServiceOperation:
        """
        Start an action in the background.

        Actions that need elevation finish immediately with the script path.
        """
        if action not in ACTIONS:
            raise ValidationError(f"Unknown service action: {action}")

        operation = ServiceOperation(action=action)
        self._operations[operation.id] = operation
        self._trim_operations()

        if not self.privileged():
            try:
                outcome = await self.run(action)
            except ServiceError as e:
                self._fail(operation, e)
                raise
            self._finish(operation, outcome)
            return operation

        if action in ("start", "stop") and self._state.installed:
            self._state.status = PENDING
        self._tasks[operation.id] = asyncio.create_task(self._run_operation(operation))
        return operation

    async def _run_operation(self, operation: ServiceOperation) -> None:
        try:
            outcome = await self.run(operation.action)
        except (ServiceError, ValidationError) as e:
            self._fail(operation, e)
            await self.refresh()
        except Exception as e:
            logger.exception(f"Service {operation.action} crashed")
            self._fail(operation, e)
        else:
            self._finish(operation, outcome)
        finally:
            self._tasks.pop(operation.id, None)

    def _finish(self, operation: ServiceOperation, outcome: ServiceOutcome) -> None:
        operation.outcome = outcome
        operation.state = outcome.kind
        operation.finished_at = datetime.now(timezone.utc)

    def _fail(self, operation: ServiceOperation, error: Exception) -> None:
        operation.state = "failed"
        operation.error = str(error)
        operation.finished_at = datetime.now(timezone.utc)
        self._record(f"{operation.action}: failed: {error}")

    def _trim_operations(self) -> None:
        while len(self._operations) > self.MAX_OPERATIONS:
            oldest = next(iter(self._operations))
            if oldest in self._tasks:
                break
            del self._operations[oldest]

    def operation(self, op_id: str) -> Optional[ServiceOperation]:
        return self._operations.get(op_id)

    async def wait(self, op_id: str) -> Optional[ServiceOperation]:
        """Wait for a background operation to finish."""
        task = self._tasks.get(op_id)
        if task is not None:
            await asyncio.shield(task)
        return self._operations.get(op_id)

    async def close(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        self._tasks.clear()
