"""
Certificate store: issues, persists and revokes per-domain certificates.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from ..errors import CAError, InstallError, NotFoundError
from ..events import CERTIFICATES_CHANGED, ChangeEvent, EventBus
from ..storage.store import StateStore
from .authority import LocalCertificateAuthority
from .models import ROOT, Certificate, RootCAInfo, RootCAStatus
from .trust import SystemTrustStore

logger = logging.getLogger("localcan.certs.store")

COLLECTION = "certificates"

Clock = Callable[[], datetime]
SslDomainsSource = Callable[[], Awaitable[Iterable[str]]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CertificateStore:
    """
    One live certificate per domain, persisted in the state store.

    Certificates are never renewed automatically; an expired certificate is
    listed as invalid until it is regenerated or deleted.
    """

    def __init__(
        self,
        store: StateStore,
        events: EventBus,
        authority: LocalCertificateAuthority,
        trust: Optional[SystemTrustStore] = None,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.events = events
        self.authority = authority
        self.trust = trust or SystemTrustStore()
        self.clock = clock
        self._certs: Dict[str, Certificate] = {}
        self._lock = asyncio.Lock()
        self._ssl_domains: Optional[SslDomainsSource] = None

    async def load(self) -> int:
        """Load persisted certificates."""
        async with self._lock:
            self._certs = {}
            for record in await self.store.list(COLLECTION):
                cert = Certificate.from_dict(record)
                self._certs[cert.domain] = cert
        logger.info(f"Loaded {len(self._certs)} certificates")
        return len(self._certs)

    async def generate(self, domain: str) -> Certificate:
        """
        Issue a certificate for domain, replacing any previous one.

        Raises CAError; other domains' certificates are never affected.
        """
        domain = (domain or "").strip().lower().rstrip(".")
        async with self._lock:
            try:
                signed = await asyncio.to_thread(self.authority.sign, domain)
            except CAError:
                raise
            except Exception as e:
                logger.error(f"Certificate issuance failed for {domain}: {e}")
                raise CAError(f"Certificate issuance failed for {domain}: {e}") from e

            cert = Certificate.from_signed(domain, signed)
            await self.store.put(COLLECTION, domain, cert.to_dict())
            replaced = domain in self._certs
            self._certs[domain] = cert

        logger.info(f"Certificate {'regenerated' if replaced else 'generated'} for {domain}")
        await self.events.publish(ChangeEvent(CERTIFICATES_CHANGED, domain, "generated"))
        return cert

    async def delete(self, domain: str) -> None:
        """Delete the certificate for domain."""
        domain = (domain or "").strip().lower().rstrip(".")
        async with self._lock:
            if domain not in self._certs:
                raise NotFoundError(f"No certificate for {domain}")
            await self.store.delete(COLLECTION, domain)
            del self._certs[domain]

        logger.info(f"Certificate deleted for {domain}")
        await self.events.publish(ChangeEvent(CERTIFICATES_CHANGED, domain, "deleted"))

    async def get(self, domain: str) -> Optional[Certificate]:
        async with self._lock:
            return self._certs.get(domain.lower())

    async def list_certificates(self) -> List[Certificate]:
        """All certificates ordered by domain."""
        async with self._lock:
            return [self._certs[d] for d in sorted(self._certs)]

    async def valid_domains(self) -> Set[str]:
        """Domains whose certificate is valid right now."""
        now = self.clock()
        async with self._lock:
            return {d for d, c in self._certs.items() if c.is_valid_at(now)}

    async def has_valid_certificate(self, domain: str) -> bool:
        return domain.lower() in await self.valid_domains()

    async def valid_material(self) -> Dict[str, Certificate]:
        """Certificates usable for TLS termination right now, by domain."""
        now = self.clock()
        async with self._lock:
            return {d: c for d, c in self._certs.items() if c.is_valid_at(now)}

    def _root_certificate(self) -> Certificate:
        cert = self.authority.ensure_root()
        return Certificate(
            domain=self.authority.name,
            expires_at=cert.not_valid_after_utc,
            issued_at=cert.not_valid_before_utc,
            issuer=self.authority.fingerprint(),
            cert_pem=self.authority.root_pem(),
            kind=ROOT,
        )

    async def root_ca(self) -> Certificate:
        """The root CA as a certificate record (kind=root)."""
        return await asyncio.to_thread(self._root_certificate)

    async def install_root_ca(self) -> bool:
        """
        Install the root CA into the OS trust store.

        Returns False if it was already installed. Raises InstallError or
        PermissionDeniedError.
        """
        try:
            await asyncio.to_thread(self.authority.ensure_root)
        except CAError as e:
            raise InstallError(str(e)) from e

        path = str(self.authority.root_path)
        if await self.trust.is_installed(path, self.authority.fingerprint()):
            logger.info("Root CA already installed")
            return False
        await self.trust.install(path)
        return True

    async def root_ca_status(self) -> RootCAInfo:
        if not self.authority.exists():
            return RootCAInfo(status=RootCAStatus.MISSING, name=self.authority.name)

        try:
            root = await self.root_ca()
        except CAError as e:
            logger.warning(f"Root CA unreadable: {e}")
            return RootCAInfo(status=RootCAStatus.MISSING, name=self.authority.name)

        path = str(self.authority.root_path)
        installed = await self.trust.is_installed(path, root.issuer)
        return RootCAInfo(
            status=RootCAStatus.AVAILABLE if installed else RootCAStatus.MISSING,
            name=self.authority.name,
            path=path,
            fingerprint=root.issuer,
            expires_at=root.expires_at,
        )

    def watch_ssl_domains(self, source: SslDomainsSource) -> None:
        """Domains that want SSL, checked for coverage on registry changes."""
        self._ssl_domains = source

    async def on_domains_changed(self, event: ChangeEvent) -> None:
        if self._ssl_domains is None:
            return
        valid = await self.valid_domains()
        for domain in await self._ssl_domains():
            if domain not in valid:
                logger.warning(f"{domain} wants SSL but has no valid certificate, serving http")
