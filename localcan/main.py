"""
LocalCan control plane.

Wires the domain registry, certificate store, proxy controller and service
controller together and exposes them over a FastAPI app.
"""

import asyncio
import logging
import sys
from typing import Callable, Optional

from fastapi import FastAPI

from . import __version__
from .api import certificates, domains, health, processes, proxy, service
from .certs.authority import LocalCertificateAuthority
from .certs.store import CertificateStore
from .certs.trust import SystemTrustStore
from .config import Settings, get_settings
from .domains.hosts import HostsFileEditor
from .domains.registry import DomainRegistry
from .errors import LocalCanError
from .events import CERTIFICATES_CHANGED, DOMAINS_CHANGED, EventBus
from .platform import is_admin
from .processes.observer import ProcessObserver
from .proxy.controller import ProxyController
from .proxy.forwarder import UpstreamForwarder
from .service.controller import ServiceController
from .service.managers import ServiceManager, default_manager
from .storage.store import StateStore

logger = logging.getLogger("localcan.main")


async def refresh_components(
    registry: DomainRegistry,
    proxy_controller: ProxyController,
    service_controller: ServiceController,
) -> None:
    """One tick of the periodic refresh."""
    await registry.refresh_processes()
    # Certificates expire without an event
    await proxy_controller.check_certificates()
    await service_controller.refresh()


def create_app(
    settings: Optional[Settings] = None,
    observer: Optional[ProcessObserver] = None,
    trust: Optional[SystemTrustStore] = None,
    service_manager: Optional[ServiceManager] = None,
    privileged: Callable[[], bool] = is_admin,
) -> FastAPI:
    """Build the control-plane app and its components."""
    settings = settings or get_settings()
    settings.ensure_dirs()
    data = settings.data_path

    app = FastAPI(
        title="LocalCan",
        description="Local domains, certificates and reverse proxy for development servers",
        version=__version__,
        debug=settings.debug,
    )

    events = EventBus()
    store = StateStore(
        data_dir=str(data),
        redis_url=settings.redis_url,
        key_prefix=settings.key_prefix,
    )

    registry = DomainRegistry(
        store=store,
        events=events,
        hosts=HostsFileEditor(settings.hosts_file, settings.hosts_address),
        observer=observer,
        publish_detected=settings.publish_detected,
        tls_enabled=settings.proxy_tls_port is not None,
    )

    authority = LocalCertificateAuthority(
        ca_dir=str(data / "ca"),
        name=settings.ca_name,
        ca_validity_days=settings.ca_validity_days,
        cert_validity_days=settings.cert_validity_days,
    )
    cert_store = CertificateStore(
        store=store,
        events=events,
        authority=authority,
        trust=trust or SystemTrustStore(timeout=settings.service_command_timeout),
    )

    async def ssl_domains():
        return [d.domain for d in await registry.list_custom() if d.ssl]

    registry.set_certificate_lookup(cert_store.valid_domains)
    cert_store.watch_ssl_domains(ssl_domains)

    proxy_controller = ProxyController(
        registry=registry,
        certificates=cert_store,
        host=settings.proxy_host,
        tls_port=settings.proxy_tls_port,
        certs_dir=str(data / "certs"),
        forwarder=UpstreamForwarder(
            connect_timeout=settings.upstream_connect_timeout,
            read_timeout=settings.upstream_read_timeout,
        ),
    )

    events.subscribe(DOMAINS_CHANGED, proxy_controller.on_change)
    events.subscribe(CERTIFICATES_CHANGED, proxy_controller.on_change)
    events.subscribe(DOMAINS_CHANGED, cert_store.on_domains_changed)

    manager = service_manager or default_manager(
        name=settings.service_name,
        display_name=settings.service_display_name,
        description=settings.service_description,
        command=[sys.executable, "-m", "localcan", "serve", "--proxy"],
        timeout=settings.service_command_timeout,
    )
    service_controller = ServiceController(
        manager=manager,
        store=store,
        scripts_dir=str(data / "scripts"),
        install_dir=str(data),
        log_lines=settings.service_log_lines,
        privileged=privileged,
    )

    app.state.settings = settings
    app.state.events = events
    app.state.state_store = store
    app.state.domain_registry = registry
    app.state.certificate_store = cert_store
    app.state.proxy = proxy_controller
    app.state.service = service_controller
    app.state.refresh_task = None

    app.include_router(processes.router)
    app.include_router(domains.router)
    app.include_router(certificates.router)
    app.include_router(proxy.router)
    app.include_router(service.router)
    app.include_router(health.router)

    async def refresh_loop():
        while True:
            await asyncio.sleep(settings.refresh_interval)
            try:
                await refresh_components(registry, proxy_controller, service_controller)
            except (LocalCanError, OSError) as e:
                logger.warning(f"Periodic refresh failed: {e}")

    @app.on_event("startup")
    async def startup_event():
        await registry.load()
        await cert_store.load()
        await proxy_controller.rebuild()
        await service_controller.refresh()

        if settings.proxy_autostart:
            try:
                await proxy_controller.start(settings.proxy_port)
            except LocalCanError as e:
                logger.error(f"Proxy not started: {e}")

        if settings.refresh_interval > 0:
            app.state.refresh_task = asyncio.create_task(refresh_loop())
        logger.info(f"LocalCan {__version__} started, data in {data}")

    @app.on_event("shutdown")
    async def shutdown_event():
        task = app.state.refresh_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await service_controller.close()
        await proxy_controller.close()
        await store.close()
        logger.info("LocalCan stopped")

    return app
