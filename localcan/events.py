"""
In-process change notifications between the registry, the certificate store
and the proxy.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List

logger = logging.getLogger("localcan.events")

DOMAINS_CHANGED = "domains_changed"
CERTIFICATES_CHANGED = "certificates_changed"


@dataclass
class ChangeEvent:
    """A change notification."""
    kind: str
    subject: str = ""
    action: str = ""
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Listener = Callable[[ChangeEvent], Awaitable[None]]


class EventBus:
    """
    Delivers change events to async listeners in subscription order.

    A failing listener is logged and does not stop delivery to the others;
    the publisher's own state change has already been committed.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}

    def subscribe(self, kind: str, listener: Listener) -> None:
        self._listeners.setdefault(kind, []).append(listener)

    def unsubscribe(self, kind: str, listener: Listener) -> None:
        listeners = self._listeners.get(kind, [])
        if listener in listeners:
            listeners.remove(listener)

    async def publish(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners.get(event.kind, [])):
            try:
                await listener(event)
            except Exception as e:
                logger.error(
                    f"Listener {getattr(listener, '__qualname__', listener)} "
                    f"failed on {event.kind}: {e}"
                )
