"""Local certificate authority and per-domain certificates."""

from .authority import LocalCertificateAuthority
from .models import Certificate, RootCAInfo, RootCAStatus, SignedCertificate
from .store import CertificateStore
from .trust import SystemTrustStore

__all__ = [
    "Certificate",
    "CertificateStore",
    "LocalCertificateAuthority",
    "RootCAInfo",
    "RootCAStatus",
    "SignedCertificate",
    "SystemTrustStore",
]
