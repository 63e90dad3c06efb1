"""
Proxy controller: owns the listeners and keeps the routing table in sync
with the domain registry and the certificate store.
"""

import asyncio
import contextlib
import errno
import logging
import socket
import ssl
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import uvicorn

from ..certs.models import Certificate
from ..certs.store import CertificateStore
from ..domains.registry import DomainRegistry
from ..errors import BindError
from ..events import ChangeEvent
from .app import create_proxy_app
from .forwarder import UpstreamForwarder
from .routing import EMPTY_TABLE, RoutingTable, build_routing_table

logger = logging.getLogger("localcan.proxy.controller")


@dataclass(frozen=True)
class ProxyStatus:
    is_running: bool
    port: Optional[int]
    tls_port: Optional[int]
    routes: int

    def to_api_response(self) -> dict:
        return {
            "is_running": self.is_running,
            "port": self.port,
            "tls_port": self.tls_port,
            "routes": self.routes,
        }


class _ProxyServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the control plane."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind a listening TCP socket or raise BindError."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
        sock.setblocking(False)
    except PermissionError as e:
        sock.close()
        raise BindError(port, "insufficient privilege for this port") from e
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise BindError(port, "port already in use") from e
        if e.errno == errno.EACCES:
            raise BindError(port, "insufficient privilege for this port") from e
        raise BindError(port, str(e)) from e
    return sock


class SNIContextProvider:
    """Selects the TLS context by SNI from the current routing table."""

    def __init__(self, controller: "ProxyController", certs_dir: str):
        self.controller = controller
        self.certs_dir = Path(certs_dir)
        self._contexts: Dict[Tuple[str, str], ssl.SSLContext] = {}

    def _context_for(self, cert: Certificate) -> ssl.SSLContext:
        key = (cert.domain, cert.issued_at.isoformat())
        context = self._contexts.get(key)
        if context is None:
            self.certs_dir.mkdir(parents=True, exist_ok=True)
            cert_path = self.certs_dir / f"{cert.domain}.pem"
            key_path = self.certs_dir / f"{cert.domain}-key.pem"
            cert_path.write_text(cert.cert_pem)
            key_path.write_text(cert.key_pem)
            key_path.chmod(0o600)
            context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
            context.load_cert_chain(str(cert_path), str(key_path))
            self._contexts[key] = context
        return context

    def clear(self) -> None:
        self._contexts.clear()

    def server_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.sni_callback = self.sni_callback
        return context

    def sni_callback(self, ssl_socket, server_name, ssl_context):
        if not server_name:
            return None
        route = self.controller.table.match(server_name)
        if route is None or not route.tls_required or route.certificate is None:
            logger.debug(f"No TLS route for SNI {server_name}")
            return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
        try:
            ssl_socket.context = self._context_for(route.certificate)
        except (OSError, ssl.SSLError) as e:
            logger.error(f"Cannot load certificate for {server_name}: {e}")
            return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR
        return None


class ProxyController:
    """
    Runs the HTTP (and optional TLS) listener.

    The routing table is rebuilt from scratch on every registry or
    certificate change and swapped by reference; requests read
    `self.table` once when accepted.
    """

    def __init__(
        self,
        registry: DomainRegistry,
        certificates: CertificateStore,
        host: str = "0.0.0.0",
        tls_port: Optional[int] = None,
        certs_dir: str = "certs",
        forwarder: Optional[UpstreamForwarder] = None,
        log_level: str = "warning",
    ):
        self.registry = registry
        self.certificates = certificates
        self.host = host
        self.tls_port_setting = tls_port
        self.forwarder = forwarder or UpstreamForwarder()
        self.log_level = log_level.lower()
        self.sni = SNIContextProvider(self, certs_dir)
        self._table: RoutingTable = EMPTY_TABLE
        self._version = 0
        self._built_with: Set[str] = set()
        self._rebuild_lock = asyncio.Lock()
        self._state_lock = asyncio.Lock()
        self._servers: List[Tuple[_ProxyServer, asyncio.Task]] = []
        self._port: Optional[int] = None
        self._tls_port: Optional[int] = None
        self.app = create_proxy_app(
            lambda: self._table,
            self.forwarder,
            lambda: self._tls_port or 0,
        )

    @property
    def table(self) -> RoutingTable:
        return self._table

    @property
    def is_running(self) -> bool:
        return bool(self._servers)

    async def rebuild(self) -> RoutingTable:
        """Recompute the routing table and swap it in."""
        async with self._rebuild_lock:
            entries = await self.registry.list_entries()
            material = await self.certificates.valid_material()
            self._version += 1
            table = build_routing_table(entries, material, version=self._version)
            self._table = table
            self._built_with = set(material)
            self.sni.clear()
        logger.info(f"Routing table v{table.version}: {len(table)} routes")
        return table

    async def on_change(self, event: ChangeEvent) -> None:
        await self.rebuild()

    async def check_certificates(self) -> bool:
        """
        Rebuild if the set of valid certificates changed since the last build.

        Expiry publishes no event, so this runs on the periodic refresh.
        """
        if await self.certificates.valid_domains() == self._built_with:
            return False
        logger.info("Certificate validity changed, rebuilding routes")
        await self.rebuild()
        return True

    def status(self) -> ProxyStatus:
        return ProxyStatus(
            is_running=self.is_running,
            port=self._port,
            tls_port=self._tls_port,
            routes=len(self._table),
        )

    async def _serve(self, sock: socket.socket, ssl_context: Optional[ssl.SSLContext]):
        config = uvicorn.Config(
            self.app,
            log_level=self.log_level,
            lifespan="off",
            access_log=False,
            log_config=None,
            server_header=False,
            date_header=False,
        )
        config.load()
        config.ssl = ssl_context
        server = _ProxyServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))
        while not server.started:
            if task.done():
                # Surface the startup failure
                task.result()
                raise RuntimeError("Proxy server exited during startup")
            await asyncio.sleep(0.01)
        return server, task

    async def start(self, port: int) -> ProxyStatus:
        """
        Bind and serve. No-op if already running.

        Raises BindError without side effects if a port cannot be bound.
        """
        async with self._state_lock:
            if self.is_running:
                return self.status()

            http_sock = bind_socket(self.host, port)
            tls_sock = None
            if self.tls_port_setting:
                try:
                    tls_sock = bind_socket(self.host, self.tls_port_setting)
                except BindError:
                    http_sock.close()
                    raise

            try:
                await self.rebuild()
                self._servers.append(await self._serve(http_sock, None))
                if tls_sock is not None:
                    self._servers.append(await self._serve(tls_sock, self.sni.server_context()))
            except Exception:
                await self._shutdown_servers()
                http_sock.close()
                if tls_sock is not None:
                    tls_sock.close()
                raise

            self._port = http_sock.getsockname()[1]
            self._tls_port = tls_sock.getsockname()[1] if tls_sock is not None else None
            logger.info(
                f"Proxy listening on {self.host}:{self._port}"
                + (f" and TLS on {self._tls_port}" if self._tls_port else "")
            )
            return self.status()

    async def _shutdown_servers(self) -> None:
        for server, _ in self._servers:
            server.should_exit = True
        for _, task in self._servers:
            try:
                await asyncio.wait_for(task, timeout=10)
            except asyncio.TimeoutError:
                task.cancel()
            except Exception as e:
                logger.warning(f"Proxy server exited with error: {e}")
        self._servers = []

    async def stop(self) -> ProxyStatus:
        """Close the listeners. Always succeeds."""
        async with self._state_lock:
            if not self.is_running:
                return self.status()
            await self._shutdown_servers()
            logger.info(f"Proxy stopped (port {self._port})")
            self._port = None
            self._tls_port = None
            return self.status()

    async def close(self) -> None:
        await self.stop()
        await self.forwarder.close()
