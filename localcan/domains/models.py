"""
Domain data models for LocalCan.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union
from urllib.parse import urlparse

from ..errors import ValidationError

AUTO_DETECTED = "auto-detected"
CUSTOM = "custom"

# Valid domain pattern: allows subdomains of any depth, requires a TLD
_DOMAIN_RE = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+"
    r"[a-z]{2,}$"
)


def normalize_domain(domain: str) -> str:
    return domain.strip().lower().rstrip(".")


def validate_domain(domain: str) -> str:
    """Return the normalized domain or raise ValidationError."""
    domain = normalize_domain(domain or "")
    if not domain:
        raise ValidationError("Domain is required")
    if "." not in domain:
        raise ValidationError("Domain must include a TLD (e.g., .local)")
    if not _DOMAIN_RE.match(domain):
        raise ValidationError(f"Invalid domain format: {domain}")
    return domain


def validate_target(target: str) -> str:
    """Return the stripped target URL or raise ValidationError."""
    target = (target or "").strip()
    if not target:
        raise ValidationError("Target is required")
    parsed = urlparse(target)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Target must be a valid URL (http:// or https://)")
    return target.rstrip("/")


def suggest_domain(target: str) -> Optional[str]:
    """Suggest a domain for a localhost target, e.g. app-3000.local."""
    parsed = urlparse((target or "").strip())
    if parsed.hostname in ("localhost", "127.0.0.1") and parsed.port:
        return f"app-{parsed.port}.local"
    return None


def framework_key(framework: str) -> str:
    """Category key for a framework name, e.g. 'Next.js' -> 'nextjs'."""
    return re.sub(r"[^a-z0-9]", "", framework.lower())


@dataclass
class CustomDomain:
    """A user-declared domain mapping to a local target URL."""

    domain: str
    target: str
    ssl: bool = False
    enabled: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "domain": self.domain,
            "target": self.target,
            "ssl": self.ssl,
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CustomDomain":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            domain=data["domain"],
            target=data["target"],
            ssl=data.get("ssl", False),
            enabled=data.get("enabled", False),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(timezone.utc),
        )


@dataclass(frozen=True)
class AutoDetectedEntry:
    """Domain derived from a detected process. Read-only."""

    domain: str
    protocol: str
    local_target: str
    published: bool
    has_certificate: bool
    pid: int
    framework: str
    status: str
    source_kind: str = AUTO_DETECTED

    @property
    def category(self) -> str:
        return framework_key(self.framework)

    def to_api_response(self) -> dict:
        return {
            "source_kind": self.source_kind,
            "domain": self.domain,
            "protocol": self.protocol,
            "local_target": self.local_target,
            "published": self.published,
            "has_certificate": self.has_certificate,
            "pid": self.pid,
            "framework": self.framework,
            "status": self.status,
        }


@dataclass(frozen=True)
class CustomEntry:
    """Domain derived from a CustomDomain. Supports toggle and delete by domain_id."""

    domain: str
    protocol: str
    local_target: str
    published: bool
    has_certificate: bool
    domain_id: str
    ssl: bool
    source_kind: str = CUSTOM

    @property
    def category(self) -> str:
        return CUSTOM

    def to_api_response(self) -> dict:
        return {
            "source_kind": self.source_kind,
            "domain": self.domain,
            "protocol": self.protocol,
            "local_target": self.local_target,
            "published": self.published,
            "has_certificate": self.has_certificate,
            "id": self.domain_id,
            "ssl": self.ssl,
        }


DomainEntry = Union[AutoDetectedEntry, CustomEntry]


@dataclass(frozen=True)
class DomainAddResult:
    """Outcome of adding a custom domain."""

    domain: CustomDomain
    hosts_mapped: bool
    warning: Optional[str] = None

    def to_api_response(self) -> dict:
        resp = {**self.domain.to_dict(), "hosts_mapped": self.hosts_mapped}
        if self.warning:
            resp["warning"] = self.warning
        return resp
