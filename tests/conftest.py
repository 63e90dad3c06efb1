"""
Pytest configuration for LocalCan tests.
"""

import os
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

# Set test environment variables
os.environ["LOCALCAN_DEBUG"] = "true"
os.environ["LOCALCAN_REFRESH_INTERVAL"] = "0"
os.environ["LOCALCAN_REDIS_URL"] = ""

from localcan.certs.authority import LocalCertificateAuthority
from localcan.certs.store import CertificateStore
from localcan.config import Settings
from localcan.domains.hosts import HostsFileEditor
from localcan.domains.registry import DomainRegistry
from localcan.errors import InstallError, PermissionDeniedError
from localcan.events import CERTIFICATES_CHANGED, DOMAINS_CHANGED, EventBus
from localcan.processes.observer import ProcessEntry, ProcessObserver
from localcan.service.managers import (
    NOT_INSTALLED,
    RUNNING,
    STOPPED,
    OSServiceStatus,
    ServiceManager,
)
from localcan.storage.store import StateStore


class FakeClock:
    """Settable clock for validity checks."""

    def __init__(self, now=None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTrustStore:
    """Trust store that records installs instead of touching the OS."""

    def __init__(self, privileged=True, fail=False):
        self.privileged = privileged
        self.fail = fail
        self.installed = set()
        self.install_calls = 0

    async def is_installed(self, ca_path: str, fingerprint: str) -> bool:
        return fingerprint in self.installed

    async def install(self, ca_path: str) -> None:
        self.install_calls += 1
        if not self.privileged:
            raise PermissionDeniedError("Administrator privileges required to install the root CA")
        if self.fail:
            raise InstallError("certutil failed")
        from cryptography import x509
        from cryptography.hazmat.primitives import hashes
        with open(ca_path, "rb") as f:
            cert = x509.load_pem_x509_certificate(f.read())
        self.installed.add(cert.fingerprint(hashes.SHA256()).hex())


class FakeServiceManager(ServiceManager):
    """Service manager backed by an in-memory OS state."""

    def __init__(self, available=True):
        super().__init__(
            name="LocalCanProxy",
            display_name="LocalCan Proxy Service",
            description="test",
            command=["localcan", "serve"],
        )
        self.available = available
        self.os_status = OSServiceStatus(installed=False, status=NOT_INSTALLED)
        self.performed: List[str] = []
        self.fail_on = None

    def action_commands(self, action):
        return [["svc", action, self.name]]

    def render_script(self, action):
        return f"#!/bin/sh\nsvc {action} {self.name}\n"

    async def query(self):
        if not self.available:
            from localcan.errors import ServiceError
            raise ServiceError("svc not found")
        return self.os_status

    async def recent_logs(self, lines):
        return []

    async def perform(self, action):
        if action == self.fail_on:
            from localcan.errors import ServiceError
            raise ServiceError(f"{action} failed")
        self.performed.append(action)
        self.apply(action)

    def apply(self, action):
        """Simulate the OS effect of an action."""
        if action == "install":
            self.os_status = OSServiceStatus(installed=True, status=STOPPED)
        elif action == "uninstall":
            self.os_status = OSServiceStatus(installed=False, status=NOT_INSTALLED)
        elif action == "start":
            self.os_status = OSServiceStatus(installed=True, status=RUNNING)
        elif action == "stop":
            self.os_status = OSServiceStatus(installed=True, status=STOPPED)


class EventRecorder:
    """Collects published events."""

    def __init__(self, bus: EventBus):
        self.events = []
        bus.subscribe(DOMAINS_CHANGED, self._record)
        bus.subscribe(CERTIFICATES_CHANGED, self._record)

    async def _record(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind for e in self.events]


@pytest.fixture(scope="session")
def authority(tmp_path_factory):
    """One root CA for the whole session; creating RSA keys is slow."""
    ca = LocalCertificateAuthority(
        ca_dir=str(tmp_path_factory.mktemp("ca")),
        name="LocalCan Test Root CA",
        cert_validity_days=30,
    )
    ca.ensure_root()
    return ca


@pytest.fixture
def test_settings(tmp_path):
    """Provide test settings."""
    hosts = tmp_path / "hosts"
    hosts.write_text("127.0.0.1\tlocalhost\n")
    return Settings(
        data_dir=str(tmp_path / "data"),
        hosts_file=str(hosts),
        proxy_host="127.0.0.1",
        proxy_port=0,
        refresh_interval=0,
    )


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorder(events):
    return EventRecorder(events)


@pytest.fixture
def state_store(tmp_path):
    return StateStore(data_dir=str(tmp_path / "state"))


@pytest.fixture
def hosts_file(tmp_path):
    path = tmp_path / "hosts"
    path.write_text("127.0.0.1\tlocalhost\n")
    return HostsFileEditor(str(path))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def trust():
    return FakeTrustStore()


@pytest.fixture
def observer():
    return ProcessObserver()


@pytest.fixture
def registry(state_store, events, hosts_file, observer):
    return DomainRegistry(
        store=state_store, events=events, hosts=hosts_file, observer=observer, tls_enabled=True,
    )


@pytest.fixture
def cert_store(state_store, events, authority, trust, clock):
    return CertificateStore(
        store=state_store,
        events=events,
        authority=authority,
        trust=trust,
        clock=clock,
    )


@pytest.fixture
def wired_registry(registry, cert_store):
    """Registry whose projection reads certificate validity from cert_store."""
    registry.set_certificate_lookup(cert_store.valid_domains)
    return registry


def make_process(framework="Next.js", port=3000, pid=1000, status="running", name=None):
    return ProcessEntry(pid=pid, name=name or framework.lower(), framework=framework, port=port, status=status)
