"""Reverse proxy for local domains."""

from .controller import ProxyController, ProxyStatus
from .forwarder import UpstreamForwarder
from .routing import ProxyRoute, RoutingTable, build_routing_table

__all__ = [
    "ProxyController",
    "ProxyRoute",
    "ProxyStatus",
    "RoutingTable",
    "UpstreamForwarder",
    "build_routing_table",
]
