"""
Error taxonomy for the LocalCan core.

Every mutating operation raises one of these before touching state, so a
failed call leaves the registry, the certificate store and the routing table
as they were.
"""


class LocalCanError(Exception):
    """Base class for all core errors."""


class ValidationError(LocalCanError, ValueError):
    """Malformed domain, target or request."""


class ConflictError(LocalCanError, ValueError):
    """A domain name is already taken."""


class NotFoundError(LocalCanError, LookupError):
    """An id or domain does not exist."""


class PermissionDeniedError(LocalCanError, PermissionError):
    """The process lacks the privilege for a hosts-file, trust-store or service action."""


class BindError(LocalCanError, OSError):
    """The proxy could not bind its listening port."""

    def __init__(self, port: int, reason: str):
        self.port = port
        self.reason = reason
        super().__init__(f"Cannot bind port {port}: {reason}")


class CAError(LocalCanError, RuntimeError):
    """Certificate issuance failed for a domain."""


class InstallError(LocalCanError, RuntimeError):
    """The root CA could not be installed into the trust store."""


class ServiceError(LocalCanError, RuntimeError):
    """The OS service manager reported a failure."""
