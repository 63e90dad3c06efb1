"""
Routing table: a pure function of the domain entries and the certificates
valid at build time.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from ..certs.models import Certificate
from ..domains.models import DomainEntry


@dataclass(frozen=True)
class ProxyRoute:
    """Forwarding rule for one published domain."""
    domain: str
    upstream: str
    tls_required: bool
    certificate: Optional[Certificate] = field(default=None, compare=False, repr=False)

    def to_api_response(self) -> dict:
        return {
            "domain": self.domain,
            "upstream": self.upstream,
            "tls_required": self.tls_required,
        }


@dataclass(frozen=True)
class RoutingTable:
    """Immutable snapshot. Replaced as a whole, never patched."""
    routes: Mapping[str, ProxyRoute]
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = 0

    def match(self, host: Optional[str]) -> Optional[ProxyRoute]:
        """Find the route for a Host header value (port ignored, case-insensitive)."""
        if not host:
            return None
        hostname = host.strip().lower()
        if hostname.startswith("["):
            hostname = hostname.split("]", 1)[0] + "]"
        else:
            hostname = hostname.rsplit(":", 1)[0] if ":" in hostname else hostname
        return self.routes.get(hostname.rstrip("."))

    def __len__(self) -> int:
        return len(self.routes)

    def to_api_response(self) -> list:
        return [self.routes[d].to_api_response() for d in sorted(self.routes)]


EMPTY_TABLE = RoutingTable(routes=MappingProxyType({}))


def build_routing_table(
    entries: Iterable[DomainEntry],
    valid_certificates: Mapping[str, Certificate],
    version: int = 0,
) -> RoutingTable:
    """
    Build a table from scratch.

    Only published entries get a route. TLS is required only when the
    entry is served over https, which the projection already limits to
    domains with a valid certificate; the certificate is attached for SNI.
    """
    routes = {}
    for entry in entries:
        if not entry.published:
            continue
        cert = valid_certificates.get(entry.domain)
        tls = entry.protocol == "https" and cert is not None
        routes[entry.domain] = ProxyRoute(
            domain=entry.domain,
            upstream=entry.local_target,
            tls_required=tls,
            certificate=cert if tls else None,
        )
    return RoutingTable(routes=MappingProxyType(routes), version=version)
