"""Self-hosted routing backend.

Route rules live in the ``route_rules`` table and are served by the
in-process reverse proxy (``pitcrew.api.proxy``), which plays the role a
cloud load balancer would: path prefix match, then forward to the
registered private target.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from sqlmodel import select

from pitcrew.errors import BackendError
from pitcrew.models.route import RouteRule
from pitcrew.routing.base import RouteInfo, RoutingBackend, route_path_prefix
from pitcrew.utils.datetime import utcnow

if TYPE_CHECKING:
    from pitcrew.config import RoutingConfig
    from pitcrew.db.session import SessionFactory

logger = structlog.get_logger()


class ProxyRoutingBackend(RoutingBackend):
    """Routing backend backed by the route_rules table."""

    def __init__(
        self,
        config: "RoutingConfig",
        session_factory: "SessionFactory | None" = None,
    ) -> None:
        if session_factory is None:
            from pitcrew.db.session import get_async_session

            session_factory = get_async_session
        self._config = config
        self._session_factory = session_factory
        self._base_url = config.public_base_url.rstrip("/")
        self._log = logger.bind(routing="proxy")

    def _to_info(self, rule: RouteRule) -> RouteInfo:
        return RouteInfo(
            rule_ref=rule.id,
            target_ref=rule.target_ref,
            url=f"{self._base_url}{rule.path_prefix}",
            session_id=rule.session_id,
            service=rule.service,
            port=rule.port,
        )

    async def create_route(
        self,
        session_id: str,
        service: str,
        port: int,
        health_check_path: str,
    ) -> RouteInfo:
        path_prefix = route_path_prefix(session_id, service)

        async with self._session_factory() as db:
            result = await db.execute(
                select(RouteRule).where(RouteRule.path_prefix == path_prefix)
            )
            rule = result.scalars().first()
            if rule is not None:
                return self._to_info(rule)

            rule = RouteRule(
                id=f"rule-{uuid.uuid4().hex[:12]}",
                target_ref=f"tg-{uuid.uuid4().hex[:12]}",
                session_id=session_id,
                service=service,
                path_prefix=path_prefix,
                port=port,
                health_check_path=health_check_path,
                deregistration_delay_seconds=self._config.deregistration_delay_seconds,
                stickiness_enabled=self._config.stickiness_enabled,
            )
            db.add(rule)

        self._log.info(
            "routing.route_created",
            session_id=session_id,
            service=service,
            rule_ref=rule.id,
            path_prefix=path_prefix,
        )
        return self._to_info(rule)

    async def register_target(self, route: RouteInfo, address: str, port: int) -> None:
        async with self._session_factory() as db:
            rule = await db.get(RouteRule, route.rule_ref)
            if rule is None:
                raise BackendError(
                    f"Route not found: {route.rule_ref}",
                    details={"rule_ref": route.rule_ref},
                )
            rule.target_address = address
            rule.target_port = port
            rule.registered_at = utcnow()

        self._log.info(
            "routing.target_registered",
            session_id=route.session_id,
            service=route.service,
            target_ref=route.target_ref,
            address=address,
            port=port,
        )

    async def remove_route(self, route: RouteInfo) -> None:
        async with self._session_factory() as db:
            rule = await db.get(RouteRule, route.rule_ref)
            if rule is None:
                self._log.debug("routing.remove.not_found", rule_ref=route.rule_ref)
                return
            await db.delete(rule)

        self._log.info(
            "routing.route_removed",
            session_id=route.session_id,
            service=route.service,
            rule_ref=route.rule_ref,
        )

    async def list_routes(self) -> list[RouteInfo]:
        async with self._session_factory() as db:
            result = await db.execute(select(RouteRule).order_by(RouteRule.created_at))
            return [self._to_info(rule) for rule in result.scalars().all()]

    async def resolve(self, session_id: str, service: str) -> RouteRule | None:
        """Find the rule serving a public path, for the reverse proxy."""
        path_prefix = route_path_prefix(session_id, service)
        async with self._session_factory() as db:
            result = await db.execute(
                select(RouteRule).where(RouteRule.path_prefix == path_prefix)
            )
            return result.scalars().first()
