"""
Local certificate authority that signs per-domain leaf certificates.
"""

import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from ..domains.models import validate_domain
from ..errors import CAError, ValidationError
from .models import SignedCertificate

logger = logging.getLogger("localcan.certs.authority")

ROOT_CERT_FILE = "rootCA.pem"
ROOT_KEY_FILE = "rootCA-key.pem"


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption()
    )


class LocalCertificateAuthority:
    """
    Root CA kept on disk under `ca_dir`.

    The root is created on first use and reused afterwards. Leaf
    certificates carry the domain as CN and SAN.
    """

    def __init__(
        self,
        ca_dir: str,
        name: str = "LocalCan Root CA",
        ca_validity_days: int = 3650,
        cert_validity_days: int = 825,
        key_size: int = 2048,
    ):
        self.ca_dir = Path(ca_dir)
        self.name = name
        self.ca_validity_days = ca_validity_days
        self.cert_validity_days = cert_validity_days
        self.key_size = key_size
        self._cert: Optional[x509.Certificate] = None
        self._key: Optional[rsa.RSAPrivateKey] = None
        self._root_lock = threading.Lock()

    @property
    def root_path(self) -> Path:
        return self.ca_dir / ROOT_CERT_FILE

    @property
    def key_path(self) -> Path:
        return self.ca_dir / ROOT_KEY_FILE

    def exists(self) -> bool:
        return self.root_path.exists() and self.key_path.exists()

    def ensure_root(self) -> x509.Certificate:
        """Load the root CA, creating it if it does not exist yet."""
        if self._cert is not None:
            return self._cert
        # Called from worker threads; only one may create the files
        with self._root_lock:
            if self._cert is not None:
                return self._cert
            try:
                if self.exists():
                    self._key = serialization.load_pem_private_key(
                        self.key_path.read_bytes(), password=None
                    )
                    self._cert = x509.load_pem_x509_certificate(self.root_path.read_bytes())
                else:
                    self._create_root()
            except (OSError, ValueError) as e:
                raise CAError(f"Certificate authority unavailable: {e}") from e
            return self._cert

    def _create_root(self) -> None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        now = datetime.now(timezone.utc)
        subject = issuer = x509.Name([
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "LocalCan"),
            x509.NameAttribute(NameOID.COMMON_NAME, self.name),
        ])
        cert = x509.CertificateBuilder().subject_name(
            subject
        ).issuer_name(
            issuer
        ).public_key(
            key.public_key()
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            now - timedelta(minutes=5)
        ).not_valid_after(
            now + timedelta(days=self.ca_validity_days)
        ).add_extension(
            x509.BasicConstraints(ca=True, path_length=0), critical=True,
        ).add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False,
                key_encipherment=False, data_encipherment=False,
                key_agreement=False, key_cert_sign=True, crl_sign=True,
                encipher_only=False, decipher_only=False,
            ),
            critical=True,
        ).add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False,
        ).sign(key, hashes.SHA256())

        self.ca_dir.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(_key_pem(key))
        os.chmod(self.key_path, 0o600)
        self.root_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        self._cert, self._key = cert, key
        logger.info(f"Created root CA {self.name} at {self.root_path}")

    def fingerprint(self) -> str:
        return self.ensure_root().fingerprint(hashes.SHA256()).hex()

    def root_expires_at(self) -> datetime:
        return self.ensure_root().not_valid_after_utc

    def root_pem(self) -> str:
        return self.ensure_root().public_bytes(serialization.Encoding.PEM).decode()

    def sign(self, domain: str) -> SignedCertificate:
        """Issue a leaf certificate for domain."""
        try:
            domain = validate_domain(domain)
        except ValidationError as e:
            raise CAError(str(e)) from e

        root = self.ensure_root()
        key = rsa.generate_private_key(public_exponent=65537, key_size=self.key_size)
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(days=self.cert_validity_days)

        cert = x509.CertificateBuilder().subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
        ).issuer_name(
            root.subject
        ).public_key(
            key.public_key()
        ).serial_number(
            x509.random_serial_number()
        ).not_valid_before(
            now - timedelta(minutes=5)
        ).not_valid_after(
            expires_at
        ).add_extension(
            x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False,
        ).add_extension(
            x509.BasicConstraints(ca=False, path_length=None), critical=True,
        ).add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False,
        ).sign(self._key, hashes.SHA256())

        cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
        logger.info(f"Signed certificate for {domain}, expires {expires_at.date()}")
        return SignedCertificate(
            # Full chain so clients can build the path to the root
            cert_pem=cert_pem + self.root_pem(),
            key_pem=_key_pem(key).decode(),
            expires_at=expires_at.replace(microsecond=0),
            issued_at=now.replace(microsecond=0),
            issuer=self.fingerprint(),
        )
