"""
Domain registry: the single source of truth for custom domains and the
projection that unifies them with detected processes.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from ..errors import ConflictError, NotFoundError, PermissionDeniedError
from ..events import DOMAINS_CHANGED, ChangeEvent, EventBus
from ..processes.observer import ProcessEntry, ProcessObserver
from ..storage.store import StateStore
from .hosts import HostsFileEditor
from .models import (
    AutoDetectedEntry,
    CustomDomain,
    CustomEntry,
    DomainAddResult,
    DomainEntry,
    framework_key,
    validate_domain,
    validate_target,
)

logger = logging.getLogger("localcan.domains.registry")

COLLECTION = "domains"

ValidDomainsLookup = Callable[[], Awaitable[Set[str]]]


def process_domains(
    processes: Iterable[ProcessEntry],
    reserved: Iterable[str] = (),
) -> List[Tuple[str, ProcessEntry]]:
    """
    Derive a unique domain for every detected process.

    The first process of a framework (lowest port) gets `<framework>.local`,
    the others `<framework>-<port>.local`. Names in `reserved` (custom
    domains) are never handed out.
    """
    result = []
    taken: Set[str] = set(reserved)
    for process in sorted(processes, key=lambda p: (framework_key(p.framework), p.port, p.pid)):
        key = framework_key(process.framework) or "app"
        domain = f"{key}.local"
        if domain in taken:
            domain = f"{key}-{process.port}.local"
        if domain in taken:
            domain = f"{key}-{process.port}-{process.pid}.local"
        taken.add(domain)
        result.append((domain, process))
    return result


def project_entries(
    processes: Iterable[ProcessEntry],
    custom_domains: Iterable[CustomDomain],
    valid_cert_domains: Set[str],
    publish_detected: bool = False,
    tls_enabled: bool = True,
) -> List[DomainEntry]:
    """
    Unify detected processes and custom domains into DomainEntry values.

    Pure function of its inputs. `protocol` is the scheme actually served:
    https only when a TLS listener is configured and a valid certificate
    exists.
    """
    entries: List[DomainEntry] = []
    custom_domains = list(custom_domains)

    for domain, process in process_domains(processes, (d.domain for d in custom_domains)):
        has_cert = domain in valid_cert_domains
        entries.append(AutoDetectedEntry(
            domain=domain,
            protocol="https" if tls_enabled and has_cert else "http",
            local_target=f"http://localhost:{process.port}",
            published=publish_detected and process.is_running,
            has_certificate=has_cert,
            pid=process.pid,
            framework=process.framework,
            status=process.status,
        ))

    for custom in sorted(custom_domains, key=lambda d: (d.created_at, d.domain)):
        has_cert = custom.domain in valid_cert_domains
        entries.append(CustomEntry(
            domain=custom.domain,
            protocol="https" if tls_enabled and custom.ssl and has_cert else "http",
            local_target=custom.target,
            published=custom.enabled,
            has_certificate=has_cert,
            domain_id=custom.id,
            ssl=custom.ssl,
        ))

    return entries


class DomainRegistry:
    """
    Registry for custom domains and the live process snapshot.

    Mutations are serialized on one lock; listings take a consistent snapshot
    under the same lock. Change events are published after the lock is
    released so listeners can read the registry.
    """

    def __init__(
        self,
        store: StateStore,
        events: EventBus,
        hosts: HostsFileEditor,
        observer: Optional[ProcessObserver] = None,
        valid_domains: Optional[ValidDomainsLookup] = None,
        publish_detected: bool = False,
        tls_enabled: bool = False,
    ):
        self.store = store
        self.events = events
        self.hosts = hosts
        self.observer = observer or ProcessObserver()
        self.publish_detected = publish_detected
        self.tls_enabled = tls_enabled
        self._valid_domains = valid_domains
        self._domains: Dict[str, CustomDomain] = {}
        self._processes: List[ProcessEntry] = []
        self._lock = asyncio.Lock()

    def set_certificate_lookup(self, valid_domains: ValidDomainsLookup) -> None:
        self._valid_domains = valid_domains

    async def load(self) -> int:
        """Load persisted custom domains."""
        async with self._lock:
            records = await self.store.list(COLLECTION)
            self._domains = {}
            for record in records:
                domain = CustomDomain.from_dict(record)
                self._domains[domain.id] = domain
        logger.info(f"Loaded {len(self._domains)} custom domains")
        return len(self._domains)

    def _taken_domains(self) -> Set[str]:
        taken = {d.domain for d in self._domains.values()}
        taken.update(domain for domain, _ in process_domains(self._processes, taken))
        return taken

    async def _notify(self, subject: str, action: str) -> None:
        await self.events.publish(ChangeEvent(DOMAINS_CHANGED, subject, action))

    async def add_custom_domain(self, domain: str, target: str, ssl: bool = False) -> DomainAddResult:
        """
        Register a custom domain.

        Raises ValidationError for a malformed domain or target and
        ConflictError if the name is taken by a custom or detected domain.
        A hosts-file failure does not undo the registration.
        """
        domain = validate_domain(domain)
        target = validate_target(target)

        async with self._lock:
            if domain in self._taken_domains():
                raise ConflictError(f"Domain {domain} is already registered")

            entry = CustomDomain(domain=domain, target=target, ssl=ssl)
            await self.store.put(COLLECTION, entry.id, entry.to_dict())
            self._domains[entry.id] = entry

        logger.info(f"Registered domain: {domain} -> {target}")
        hosts_mapped, warning = await asyncio.to_thread(self._map_hosts, domain)
        await self._notify(domain, "added")
        return DomainAddResult(domain=entry, hosts_mapped=hosts_mapped, warning=warning)

    def _map_hosts(self, domain: str) -> Tuple[bool, Optional[str]]:
        if not self.hosts.has_permission():
            logger.warning(f"No permission to edit hosts file, {domain} not mapped")
            return False, f"Administrator privileges required to map {domain} in the hosts file"
        try:
            self.hosts.add_mapping(domain)
        except (PermissionDeniedError, OSError) as e:
            logger.warning(f"Hosts mapping failed for {domain}: {e}")
            return False, str(e)
        return True, None

    def _unmap_hosts(self, domain: str) -> None:
        if not self.hosts.has_permission():
            return
        try:
            self.hosts.remove_mapping(domain)
        except (PermissionDeniedError, OSError) as e:
            logger.warning(f"Could not retract hosts mapping for {domain}: {e}")

    def _get_or_raise(self, domain_id: str) -> CustomDomain:
        entry = self._domains.get(domain_id)
        if entry is None:
            raise NotFoundError(f"Domain {domain_id} not found")
        return entry

    async def _replace(self, updated: CustomDomain) -> None:
        await self.store.put(COLLECTION, updated.id, updated.to_dict())
        self._domains[updated.id] = updated

    async def toggle_domain(self, domain_id: str) -> CustomDomain:
        """Flip the enabled (published) flag."""
        async with self._lock:
            entry = self._get_or_raise(domain_id)
            updated = CustomDomain.from_dict({**entry.to_dict(), "enabled": not entry.enabled})
            await self._replace(updated)

        logger.info(f"Domain {updated.domain} {'enabled' if updated.enabled else 'disabled'}")
        await self._notify(updated.domain, "toggled")
        return updated

    async def toggle_ssl(self, domain_id: str) -> CustomDomain:
        """Flip the desired SSL flag."""
        async with self._lock:
            entry = self._get_or_raise(domain_id)
            updated = CustomDomain.from_dict({**entry.to_dict(), "ssl": not entry.ssl})
            await self._replace(updated)

        logger.info(f"SSL {'requested' if updated.ssl else 'disabled'} for {updated.domain}")
        await self._notify(updated.domain, "ssl_toggled")
        return updated

    async def delete_domain(self, domain_id: str) -> None:
        """Remove a custom domain and retract its hosts mapping."""
        async with self._lock:
            entry = self._get_or_raise(domain_id)
            await self.store.delete(COLLECTION, domain_id)
            del self._domains[domain_id]

        logger.info(f"Deleted domain: {entry.domain}")
        await asyncio.to_thread(self._unmap_hosts, entry.domain)
        await self._notify(entry.domain, "deleted")

    async def get(self, domain_id: str) -> CustomDomain:
        async with self._lock:
            return self._get_or_raise(domain_id)

    async def list_custom(self) -> List[CustomDomain]:
        async with self._lock:
            return list(self._domains.values())

    async def snapshot(self) -> Tuple[List[ProcessEntry], List[CustomDomain]]:
        """Consistent copy of both inputs."""
        async with self._lock:
            return list(self._processes), list(self._domains.values())

    async def list_entries(self) -> List[DomainEntry]:
        """Project the current processes and custom domains into entries."""
        processes, customs = await self.snapshot()
        valid = await self._valid_domains() if self._valid_domains else set()
        return project_entries(processes, customs, valid, self.publish_detected, self.tls_enabled)

    async def list_processes(self) -> List[ProcessEntry]:
        async with self._lock:
            return list(self._processes)

    def has_hosts_permission(self) -> bool:
        return self.hosts.has_permission()

    async def update_processes(self, processes: List[ProcessEntry]) -> bool:
        """
        Replace the process snapshot.

        Returns True and publishes a change event when the derived domains
        differ from the previous snapshot.
        """
        async with self._lock:
            reserved = {d.domain for d in self._domains.values()}
            before = {(d, p.port, p.status) for d, p in process_domains(self._processes, reserved)}
            self._processes = list(processes)
            after = {(d, p.port, p.status) for d, p in process_domains(self._processes, reserved)}

        if before == after:
            return False
        logger.info(f"Process snapshot changed: {len(processes)} processes")
        await self._notify("processes", "scanned")
        return True

    async def refresh_processes(self) -> bool:
        """Pull a new scan from the observer."""
        return await self.update_processes(await self.observer.scan())

    async def categories(self) -> Dict[str, int]:
        """Counts for all, active and each detected framework."""
        async with self._lock:
            processes = list(self._processes)
            customs = list(self._domains.values())
        counts = {
            "all": len(processes) + len(customs),
            "active": sum(1 for p in processes if p.is_running) + sum(1 for d in customs if d.enabled),
        }
        for process in processes:
            key = framework_key(process.framework)
            counts[key] = counts.get(key, 0) + 1
        return counts
