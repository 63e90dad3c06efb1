"""
Installing the root CA into the operating system trust store.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import List

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from ..errors import InstallError, PermissionDeniedError
from ..platform import IS_MACOS, IS_WINDOWS, is_admin, run_command

logger = logging.getLogger("localcan.certs.trust")

LINUX_ANCHOR_DIR = "/usr/local/share/ca-certificates"
LINUX_ANCHOR_NAME = "localcan-root-ca.crt"
MACOS_KEYCHAIN = "/Library/Keychains/System.keychain"


def sha1_thumbprint(ca_path: str) -> str:
    """SHA-1 thumbprint of a PEM certificate, as Windows tools show it."""
    cert = x509.load_pem_x509_certificate(Path(ca_path).read_bytes())
    return cert.fingerprint(hashes.SHA1()).hex()


class SystemTrustStore:
    """Adds the root CA to the system trust store via the platform tool."""

    def __init__(self, anchor_dir: str = LINUX_ANCHOR_DIR, timeout: int = 60):
        self.anchor_dir = Path(anchor_dir)
        self.timeout = timeout

    def _install_cmd(self, ca_path: str) -> List[str]:
        if IS_WINDOWS:
            return ["certutil", "-addstore", "-f", "Root", ca_path]
        if IS_MACOS:
            return [
                "security", "add-trusted-cert", "-d", "-r", "trustRoot",
                "-k", MACOS_KEYCHAIN, ca_path,
            ]
        return ["update-ca-certificates"]

    async def is_installed(self, ca_path: str, fingerprint: str) -> bool:
        """Check whether the CA with this SHA-256 fingerprint is trusted."""
        if IS_WINDOWS:
            # certutil matches a CertId by serial number or SHA-1 thumbprint
            try:
                cmd = ["certutil", "-store", "Root", sha1_thumbprint(ca_path)]
            except (OSError, ValueError) as e:
                logger.debug(f"Cannot read root CA {ca_path}: {e}")
                return False
        elif IS_MACOS:
            cmd = ["security", "find-certificate", "-Z", "-a", MACOS_KEYCHAIN]
        else:
            anchor = self.anchor_dir / LINUX_ANCHOR_NAME
            ca = Path(ca_path)
            return anchor.exists() and ca.exists() and anchor.read_bytes() == ca.read_bytes()

        try:
            code, stdout, _ = await run_command(cmd, timeout=self.timeout)
        except (FileNotFoundError, asyncio.TimeoutError) as e:
            logger.debug(f"Trust store query failed: {e}")
            return False
        if IS_MACOS:
            return code == 0 and fingerprint.upper() in stdout.upper()
        return code == 0

    async def install(self, ca_path: str) -> None:
        """Install the CA. Raises PermissionDeniedError or InstallError."""
        if not is_admin():
            raise PermissionDeniedError(
                "Administrator privileges required to install the root CA"
            )

        if not IS_WINDOWS and not IS_MACOS:
            try:
                self.anchor_dir.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(ca_path, self.anchor_dir / LINUX_ANCHOR_NAME)
            except OSError as e:
                raise InstallError(f"Could not copy root CA: {e}") from e

        cmd = self._install_cmd(ca_path)
        try:
            code, stdout, stderr = await run_command(cmd, timeout=self.timeout)
        except FileNotFoundError as e:
            raise InstallError(f"{cmd[0]} not found") from e
        except asyncio.TimeoutError as e:
            raise InstallError(f"{cmd[0]} timed out after {self.timeout}s") from e

        if code != 0:
            raise InstallError(f"{cmd[0]} failed: {stderr or stdout}")
        logger.info(f"Root CA installed into system trust store: {ca_path}")
