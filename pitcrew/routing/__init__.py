"""Routing backends."""

from pitcrew.routing.base import RouteInfo, RoutingBackend, route_path_prefix
from pitcrew.routing.proxy import ProxyRoutingBackend

__all__ = ["ProxyRoutingBackend", "RouteInfo", "RoutingBackend", "route_path_prefix"]
