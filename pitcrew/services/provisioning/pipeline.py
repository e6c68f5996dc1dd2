"""CreationPipeline - bring a new session from ``starting`` to ``running``.

Steps:
1. Launch the compute task sized per the session's resource profile
2. Create one route per sandbox service (target registration left empty)
3. Poll the compute backend until the task is running with an address
4. Register that address with every route target (bounded retry)
5. Poll the public health check through the routing layer
6. Push the initially requested challenge into the sandbox
7. Transition to ``running``

Any failure moves the session to ``failed`` with a cause. Nothing is rolled
back here: the cleanup sweeper reclaims compute tasks and routes left behind
by failed sessions.

Every write is conditional on the session still being ``starting``. When a
termination wins that race the pipeline stops the task it launched and exits.

A run cut short by shutdown is failed as ``provisioning_interrupted``.
Sessions left ``starting`` by a previous process are handed back to the
queue on startup; a run picks up from the compute handle it recorded.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import timedelta
from functools import partial
from typing import TYPE_CHECKING

import structlog

from pitcrew.drivers.base import TaskState
from pitcrew.errors import PitcrewError, ProvisioningError
from pitcrew.models.session import Session, SessionStatus
from pitcrew.routing.base import RouteInfo
from pitcrew.services.readiness import Probe, poll, retry
from pitcrew.store.sessions import SessionStore
from pitcrew.utils.datetime import utcnow

if TYPE_CHECKING:
    from pitcrew.challenges.loader import ChallengeLoader
    from pitcrew.clients.sandbox import SandboxClient
    from pitcrew.config import ResourceProfile, Settings
    from pitcrew.db.session import SessionFactory
    from pitcrew.drivers.base import ComputeBackend
    from pitcrew.routing.base import RoutingBackend

logger = structlog.get_logger()

_STARTING = (SessionStatus.STARTING,)

INTERRUPTED_REASON = "provisioning_interrupted"


class _Superseded(Exception):
    """The session left ``starting`` underneath the pipeline."""


def build_task_env(session: Session, profile: "ResourceProfile", settings: "Settings") -> dict[str, str]:
    """Environment handed to the sandbox container."""
    return {
        "USER_ID": session.user_id,
        "SESSION_ID": session.id,
        "INITIAL_CHALLENGE_ID": session.current_challenge_id or "",
        "JAVA_OPTS": f"-Xmx{profile.java_heap_mb}m",
        "SESSION_TIMEOUT": str(settings.session.timeout_minutes),
        "IDLE_TIMEOUT": str(settings.session.idle_timeout_minutes),
    }


class CreationPipeline:
    """Drives one session through provisioning."""

    def __init__(
        self,
        *,
        compute: "ComputeBackend",
        routing: "RoutingBackend",
        sandbox_client: "SandboxClient",
        challenge_loader: "ChallengeLoader",
        settings: "Settings",
        session_factory: "SessionFactory | None" = None,
    ) -> None:
        if session_factory is None:
            from pitcrew.db.session import get_async_session

            session_factory = get_async_session
        self._compute = compute
        self._routing = routing
        self._sandbox = sandbox_client
        self._loader = challenge_loader
        self._settings = settings
        self._session_factory = session_factory
        self._log = logger.bind(service="creation_pipeline")

    async def run(self, session_id: str) -> Session | None:
        """Provision ``session_id``.

        Never raises for provisioning problems; they are recorded on the
        session. Returns the final record, or None if the session was not
        (or no longer) ``starting``.
        """
        session = await self._load(session_id)
        if session is None or session.status != SessionStatus.STARTING:
            self._log.info(
                "pipeline.skip",
                session_id=session_id,
                status=session.status.value if session else None,
            )
            return None

        log = self._log.bind(session_id=session_id, user_id=session.user_id)
        log.info("pipeline.start", profile=session.resource_profile)

        handle: str | None = session.compute_handle
        try:
            profile = self._settings.get_profile(session.resource_profile)
            if profile is None:
                raise ProvisioningError(f"Unknown resource profile: {session.resource_profile}")

            # 1. Compute task
            if handle is None:
                try:
                    handle = await self._compute.launch(
                        profile,
                        build_task_env(session, profile, self._settings),
                        labels={"user_id": session.user_id, "session_id": session.id},
                    )
                except PitcrewError:
                    raise
                except Exception as exc:
                    raise ProvisioningError(f"Task launch failed: {exc}") from exc
                await self._write(session_id, compute_handle=handle)
                log.info("pipeline.launched", compute_handle=handle)

            # 2. Routes, one per service
            routes = await self._provision_routes(session_id)
            await self._write(session_id, routes=[r.to_descriptor() for r in routes])
            log.info("pipeline.routes_provisioned", routes=len(routes))

            # 3. Wait for the task to be addressable
            address = await self._wait_for_task(handle)
            await self._write(session_id, private_address=address)
            log.info("pipeline.task_running", address=address)

            # 4. Point every route at the task
            await self._register_targets(routes, address)
            log.info("pipeline.targets_registered")

            # 5. Public health check
            await self._wait_for_health(routes)
            log.info("pipeline.healthy")

            # 6. Initial challenge
            if session.current_challenge_id:
                payload = await self._loader.load(session.current_challenge_id)
                await self._sandbox.load_challenge(address, payload)
                log.info("pipeline.challenge_loaded", challenge_id=session.current_challenge_id)

            # 7. Running
            return await self._mark_running(session_id)

        except _Superseded:
            log.info("pipeline.superseded", compute_handle=handle)
            return await self._release_orphan(session_id, handle, log)
        except PitcrewError as exc:
            return await self._fail(session_id, handle, exc.message, log)
        except Exception as exc:
            log.exception("pipeline.unexpected_error", error=str(exc))
            return await self._fail(session_id, handle, f"Unexpected error: {exc}", log)

    async def fail_interrupted(self, session_ids: Iterable[str]) -> list[str]:
        """Fail sessions whose pipeline run was abandoned by shutdown.

        Returns the IDs actually moved to ``failed``; sessions that already
        left ``starting`` are left alone.
        """
        failed = []
        for session_id in session_ids:
            async with self._session_factory() as db:
                updated = await SessionStore(db).transition(
                    session_id,
                    from_statuses=_STARTING,
                    to_status=SessionStatus.FAILED,
                    failure_reason=INTERRUPTED_REASON,
                )
            if updated is not None:
                failed.append(session_id)
                self._log.warning("pipeline.interrupted", session_id=session_id)
        return failed

    async def recover(self, dispatch: Callable[[str], bool]) -> list[str]:
        """Re-dispatch every ``starting`` session left by a previous process.

        Sessions the queue will not take are failed as interrupted.

        Returns:
            The re-dispatched session IDs.
        """
        async with self._session_factory() as db:
            starting = await SessionStore(db).list_by_status(_STARTING)

        resumed, rejected = [], []
        for session in starting:
            if dispatch(session.id):
                resumed.append(session.id)
            else:
                rejected.append(session.id)

        if rejected:
            await self.fail_interrupted(rejected)
        if starting:
            self._log.info("pipeline.recovered", resumed=len(resumed), failed=len(rejected))
        return resumed

    async def _load(self, session_id: str) -> Session | None:
        async with self._session_factory() as db:
            return await SessionStore(db).get(session_id)

    async def _write(self, session_id: str, **fields) -> Session:
        async with self._session_factory() as db:
            updated = await SessionStore(db).update_where(
                session_id, statuses=_STARTING, **fields
            )
        if updated is None:
            raise _Superseded()
        return updated

    async def _provision_routes(self, session_id: str) -> list[RouteInfo]:
        routes = []
        for service in self._settings.services:
            try:
                route = await self._routing.create_route(
                    session_id,
                    service.name,
                    service.port,
                    service.health_check_path,
                )
            except PitcrewError:
                raise
            except Exception as exc:
                raise ProvisioningError(
                    f"Route creation failed for {service.name}: {exc}"
                ) from exc
            routes.append(route)
        return routes

    async def _wait_for_task(self, handle: str) -> str:
        async def check() -> Probe:
            description = await self._compute.describe(handle)
            if description.state == TaskState.STOPPED:
                return Probe.fail(f"Task stopped: {description.stop_reason or 'unknown reason'}")
            if description.state == TaskState.RUNNING and description.address:
                return Probe.ready(description.address)
            return Probe.pending(description.state.value)

        provisioning = self._settings.provisioning
        result = await poll(
            check,
            max_attempts=provisioning.task_poll_attempts,
            interval=provisioning.task_poll_interval_seconds,
            label="compute task",
        )
        return result.unwrap()

    async def _register_targets(self, routes: list[RouteInfo], address: str) -> None:
        provisioning = self._settings.provisioning
        for route in routes:
            try:
                await retry(
                    partial(self._routing.register_target, route, address, route.port),
                    max_attempts=provisioning.registration_attempts,
                    interval=provisioning.registration_backoff_seconds,
                    label=f"register {route.service}",
                )
            except PitcrewError:
                raise
            except Exception as exc:
                raise ProvisioningError(
                    f"Target registration failed for {route.service}: {exc}"
                ) from exc

    async def _wait_for_health(self, routes: list[RouteInfo]) -> None:
        api = self._settings.get_service("api")
        api_route = next((r for r in routes if r.service == "api"), None)
        if api is None or api_route is None:
            raise ProvisioningError("No api route to health check")
        url = api_route.url + api.health_check_path.lstrip("/")

        async def check() -> Probe:
            if await self._sandbox.health(url):
                return Probe.ready()
            return Probe.pending("health check not passing")

        provisioning = self._settings.provisioning
        result = await poll(
            check,
            max_attempts=provisioning.health_poll_attempts,
            interval=provisioning.health_poll_interval_seconds,
            label="public health check",
        )
        result.unwrap()

    async def _mark_running(self, session_id: str) -> Session:
        now = utcnow()
        async with self._session_factory() as db:
            store = SessionStore(db)
            current = await store.get(session_id)
            if current is None:
                raise _Superseded()
            expires_at = max(
                current.expires_at,
                now + timedelta(minutes=self._settings.session.timeout_minutes),
            )
            updated = await store.transition(
                session_id,
                from_statuses=_STARTING,
                to_status=SessionStatus.RUNNING,
                last_activity=now,
                expires_at=expires_at,
            )
        if updated is None:
            raise _Superseded()
        self._log.info("pipeline.running", session_id=session_id)
        return updated

    async def _fail(self, session_id: str, handle: str | None, reason: str, log) -> Session | None:
        async with self._session_factory() as db:
            updated = await SessionStore(db).transition(
                session_id,
                from_statuses=_STARTING,
                to_status=SessionStatus.FAILED,
                failure_reason=reason,
            )
        if updated is None:
            # Terminated while provisioning; terminate owns the record now
            log.info("pipeline.failed_after_termination", reason=reason)
            return await self._release_orphan(session_id, handle, log)
        log.warning("pipeline.failed", reason=reason, compute_handle=handle)
        return updated

    async def _release_orphan(self, session_id: str, handle: str | None, log) -> Session | None:
        """Stop our task unless the session record (and so terminate) knows it."""
        current = await self._load(session_id)
        if handle is None or (current is not None and current.compute_handle == handle):
            return current
        try:
            await self._compute.stop(handle)
        except Exception as exc:
            log.warning("pipeline.orphan_stop_failed", compute_handle=handle, error=str(exc))
        return current
