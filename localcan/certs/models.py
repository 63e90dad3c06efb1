"""
Certificate data models for LocalCan.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

ROOT = "root"
LEAF = "leaf"


class RootCAStatus(str, enum.Enum):
    AVAILABLE = "available"
    MISSING = "missing"


@dataclass(frozen=True)
class SignedCertificate:
    """Material returned by a certificate authority."""
    cert_pem: str
    key_pem: str
    expires_at: datetime
    issued_at: datetime
    issuer: str


@dataclass
class Certificate:
    """A stored certificate. Validity is always computed, never stored."""

    domain: str
    expires_at: datetime
    issuer: str
    cert_pem: str
    key_pem: str = ""
    kind: str = LEAF
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_valid_at(self, now: datetime) -> bool:
        return now < self.expires_at

    @classmethod
    def from_signed(cls, domain: str, signed: SignedCertificate, kind: str = LEAF) -> "Certificate":
        return cls(
            domain=domain,
            expires_at=signed.expires_at,
            issued_at=signed.issued_at,
            issuer=signed.issuer,
            cert_pem=signed.cert_pem,
            key_pem=signed.key_pem,
            kind=kind,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "domain": self.domain,
            "expires_at": self.expires_at.isoformat(),
            "issued_at": self.issued_at.isoformat(),
            "issuer": self.issuer,
            "kind": self.kind,
            "cert_pem": self.cert_pem,
            "key_pem": self.key_pem,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Certificate":
        """Create from dictionary."""
        return cls(
            domain=data["domain"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            issued_at=datetime.fromisoformat(data["issued_at"]) if data.get("issued_at") else datetime.now(timezone.utc),
            issuer=data.get("issuer", ""),
            kind=data.get("kind", LEAF),
            cert_pem=data.get("cert_pem", ""),
            key_pem=data.get("key_pem", ""),
        )

    def to_api_response(self, now: datetime) -> dict:
        """Convert to API response, without key material."""
        return {
            "domain": self.domain,
            "kind": self.kind,
            "issuer": self.issuer,
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "is_valid": self.is_valid_at(now),
        }


@dataclass(frozen=True)
class RootCAInfo:
    status: RootCAStatus
    name: str
    path: Optional[str] = None
    fingerprint: Optional[str] = None
    expires_at: Optional[datetime] = None

    def to_api_response(self) -> dict:
        return {
            "status": self.status.value,
            "name": self.name,
            "path": self.path,
            "fingerprint": self.fingerprint,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
