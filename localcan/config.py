"""
Configuration management for LocalCan.
"""

import os
import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


def _default_data_dir() -> str:
    if sys.platform == "win32":
        base = os.environ.get("PROGRAMDATA", r"C:\ProgramData")
        return str(Path(base) / "LocalCan")
    return str(Path.home() / ".localcan")


def _default_hosts_file() -> str:
    if sys.platform == "win32":
        root = os.environ.get("SystemRoot", r"C:\Windows")
        return str(Path(root) / "System32" / "drivers" / "etc" / "hosts")
    return "/etc/hosts"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Control plane
    host: str = "127.0.0.1"
    port: int = 8470

    # Local state
    data_dir: str = _default_data_dir()

    # Redis (optional, JSON state file is used when empty)
    redis_url: str = ""
    key_prefix: str = "localcan:"

    # Proxy
    proxy_host: str = "0.0.0.0"
    proxy_port: int = 80
    proxy_tls_port: Optional[int] = None
    proxy_autostart: bool = False
    upstream_connect_timeout: float = 5.0
    upstream_read_timeout: float = 30.0

    # Domains
    publish_detected: bool = False
    hosts_file: str = _default_hosts_file()
    hosts_address: str = "127.0.0.1"

    # Certificates
    ca_name: str = "LocalCan Root CA"
    ca_validity_days: int = 3650
    cert_validity_days: int = 825

    # Background service
    service_name: str = "LocalCanProxy"
    service_display_name: str = "LocalCan Proxy Service"
    service_description: str = "Routes local development domains to running dev servers"
    service_log_lines: int = 20
    service_command_timeout: int = 60

    # Periodic refresh of process and service state
    refresh_interval: float = 10.0

    # Logging
    log_level: str = "INFO"

    # Debug mode
    debug: bool = False

    model_config = {
        "env_prefix": "LOCALCAN_",
        "env_file": ".env",
        "extra": "ignore"
    }

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    def ensure_dirs(self) -> None:
        """Create the local state directories if missing."""
        for sub in ("", "ca", "certs", "scripts"):
            (self.data_path / sub).mkdir(parents=True, exist_ok=True)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
