"""Routing backend base class.

A routing backend forwards a public, session-scoped path prefix to a
private address and port. One route per (session, service); each route
owns exactly one target registration.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class RouteInfo:
    """A provisioned route and its target registration placeholder."""

    rule_ref: str
    target_ref: str
    url: str  # Externally reachable prefix, always ends with "/"
    session_id: str
    service: str
    port: int

    def to_descriptor(self) -> dict[str, Any]:
        """Shape stored in ``Session.routes``."""
        data = asdict(self)
        data.pop("session_id")
        return data

    @classmethod
    def from_descriptor(cls, session_id: str, data: dict[str, Any]) -> "RouteInfo":
        return cls(
            rule_ref=data["rule_ref"],
            target_ref=data["target_ref"],
            url=data["url"],
            session_id=session_id,
            service=data["service"],
            port=data["port"],
        )


def route_path_prefix(session_id: str, service: str) -> str:
    return f"/session/{session_id}/{service}/"


class RoutingBackend(ABC):
    """Abstract interface for per-session routing."""

    @abstractmethod
    async def create_route(
        self,
        session_id: str,
        service: str,
        port: int,
        health_check_path: str,
    ) -> RouteInfo:
        """Create a route rule plus an empty target registration.

        Idempotent per (session_id, service).
        """
        ...

    @abstractmethod
    async def register_target(self, route: RouteInfo, address: str, port: int) -> None:
        """Point a route's target registration at a private address."""
        ...

    @abstractmethod
    async def remove_route(self, route: RouteInfo) -> None:
        """Remove a route and its target. Removing a missing route is a no-op."""
        ...

    @abstractmethod
    async def list_routes(self) -> list[RouteInfo]:
        """List every route this backend currently holds."""
        ...

    async def close(self) -> None:
        return None
