"""CleanupSweeper - periodic convergence of abandoned sessions.

Each cycle:
1. Terminates active sessions that expired or went idle
2. Finishes sessions stuck in ``stopping`` across two consecutive cycles
3. Releases compute tasks of ``failed`` sessions
4. Stops compute tasks tagged with a session that no longer owns them
5. Removes routes whose session is no longer active

Every item is handled independently; one failure never blocks the rest of
the sweep. This is also where resources left behind by failed creation
pipelines are reclaimed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from pitcrew.models.session import ACTIVE_STATUSES, SessionStatus, TerminationReason
from pitcrew.store.sessions import SessionStore
from pitcrew.utils.datetime import utcnow

if TYPE_CHECKING:
    from pitcrew.config import Settings
    from pitcrew.db.session import SessionFactory
    from pitcrew.drivers.base import ComputeBackend
    from pitcrew.managers.session import SessionController
    from pitcrew.routing.base import RoutingBackend

logger = structlog.get_logger()

ControllerFactory = Callable[[AsyncSession], "SessionController"]


@dataclass
class SweepReport:
    """What one sweep cycle did."""

    expired: list[str] = field(default_factory=list)
    idle: list[str] = field(default_factory=list)
    stale_stopping: list[str] = field(default_factory=list)
    failed_released: list[str] = field(default_factory=list)
    orphaned_tasks: list[str] = field(default_factory=list)
    orphaned_routes: list[str] = field(default_factory=list)
    errors: int = 0

    @property
    def total(self) -> int:
        return (
            len(self.expired)
            + len(self.idle)
            + len(self.stale_stopping)
            + len(self.failed_released)
            + len(self.orphaned_tasks)
            + len(self.orphaned_routes)
        )


class CleanupSweeper:
    """Periodically converges sessions and backend resources to a clean state."""

    def __init__(
        self,
        *,
        settings: "Settings",
        compute: "ComputeBackend",
        routing: "RoutingBackend",
        controller_factory: ControllerFactory,
        session_factory: "SessionFactory | None" = None,
    ) -> None:
        if session_factory is None:
            from pitcrew.db.session import get_async_session

            session_factory = get_async_session
        self._settings = settings
        self._config = settings.sweeper
        self._compute = compute
        self._routing = routing
        self._controller_factory = controller_factory
        self._session_factory = session_factory
        self._log = logger.bind(service="cleanup_sweeper")

        self._running = False
        self._task: asyncio.Task | None = None
        self._run_lock = asyncio.Lock()
        # Sessions seen in ``stopping`` by the previous cycle
        self._stopping_seen: set[str] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start background sweep loop."""
        if self._running:
            self._log.warning("sweeper.already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._background_loop(), name="cleanup-sweeper")
        self._log.info("sweeper.started", interval_seconds=self._config.interval_seconds)

    async def stop(self) -> None:
        """Stop background sweep loop gracefully."""
        if not self._running:
            return

        self._log.info("sweeper.stopping")
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._log.info("sweeper.stopped")

    async def run_once(self) -> SweepReport:
        """Execute one sweep cycle."""
        async with self._run_lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> SweepReport:
        report = SweepReport()
        self._log.info("sweeper.cycle.start")

        await self._retire_inactive(report)
        await self._finish_stale_stopping(report)
        await self._release_failed(report)
        await self._reconcile_backends(report)

        self._log.info(
            "sweeper.cycle.complete",
            expired=len(report.expired),
            idle=len(report.idle),
            stale_stopping=len(report.stale_stopping),
            failed_released=len(report.failed_released),
            orphaned_tasks=len(report.orphaned_tasks),
            orphaned_routes=len(report.orphaned_routes),
            errors=report.errors,
        )
        return report

    async def _retire_inactive(self, report: SweepReport) -> None:
        now = utcnow()
        idle_threshold = timedelta(minutes=self._settings.session.idle_timeout_minutes)

        async with self._session_factory() as db:
            sessions = await SessionStore(db).list_by_status(ACTIVE_STATUSES)
            candidates = []
            for session in sessions:
                if session.is_expired(now):
                    candidates.append((session.id, TerminationReason.EXPIRED))
                elif now - session.last_activity > idle_threshold:
                    candidates.append((session.id, TerminationReason.IDLE))

        for session_id, reason in candidates:
            try:
                async with self._session_factory() as db:
                    controller = self._controller_factory(db)
                    result = await controller.terminate(session_id, reason=reason)
            except Exception as exc:
                report.errors += 1
                self._log.exception(
                    "sweeper.terminate_failed",
                    session_id=session_id,
                    reason=reason.value,
                    error=str(exc),
                )
                continue

            if result.status == SessionStatus.STOPPED:
                bucket = report.expired if reason == TerminationReason.EXPIRED else report.idle
                bucket.append(session_id)
                self._log.info("sweeper.session_retired", session_id=session_id, reason=reason.value)

    async def _finish_stale_stopping(self, report: SweepReport) -> None:
        async with self._session_factory() as db:
            stopping = await SessionStore(db).list_by_status([SessionStatus.STOPPING])
        current = {s.id for s in stopping}
        stale = current & self._stopping_seen
        self._stopping_seen = current - stale

        for session_id in sorted(stale):
            try:
                async with self._session_factory() as db:
                    controller = self._controller_factory(db)
                    session = await controller.get(session_id)
                    if session.status != SessionStatus.STOPPING:
                        continue
                    await controller.finish_stopping(session)
                report.stale_stopping.append(session_id)
                self._log.info("sweeper.stale_stopping_finished", session_id=session_id)
            except Exception as exc:
                report.errors += 1
                self._log.exception(
                    "sweeper.stale_stopping_failed",
                    session_id=session_id,
                    error=str(exc),
                )

    async def _release_failed(self, report: SweepReport) -> None:
        async with self._session_factory() as db:
            failed = await SessionStore(db).list_by_status([SessionStatus.FAILED])
            pending = [
                (s.id, s.compute_handle) for s in failed if s.terminated_at is None
            ]

        for session_id, handle in pending:
            try:
                if handle:
                    await self._compute.stop(handle)
                async with self._session_factory() as db:
                    await SessionStore(db).update_where(
                        session_id,
                        statuses=[SessionStatus.FAILED],
                        terminated_at=utcnow(),
                        termination_reason=TerminationReason.PROVISIONING_FAILED.value,
                    )
                report.failed_released.append(session_id)
                self._log.info(
                    "sweeper.failed_released",
                    session_id=session_id,
                    compute_handle=handle,
                )
            except Exception as exc:
                report.errors += 1
                self._log.warning(
                    "sweeper.failed_release_error",
                    session_id=session_id,
                    compute_handle=handle,
                    error=str(exc),
                )

    async def _reconcile_backends(self, report: SweepReport) -> None:
        # List backend resources before reading live sessions: anything a
        # pipeline creates after this point belongs to a session already live.
        try:
            tasks = await self._compute.list_tasks()
        except Exception as exc:
            report.errors += 1
            self._log.warning("sweeper.list_tasks_failed", error=str(exc))
            tasks = []

        try:
            routes = await self._routing.list_routes()
        except Exception as exc:
            report.errors += 1
            self._log.warning("sweeper.list_routes_failed", error=str(exc))
            routes = []

        async with self._session_factory() as db:
            live = await SessionStore(db).active_ids()

        for task in tasks:
            if task.session_id is None or task.session_id in live:
                continue
            try:
                await self._compute.stop(task.handle)
                report.orphaned_tasks.append(task.handle)
                self._log.info(
                    "sweeper.orphaned_task_stopped",
                    compute_handle=task.handle,
                    session_id=task.session_id,
                )
            except Exception as exc:
                report.errors += 1
                self._log.warning(
                    "sweeper.orphaned_task_error",
                    compute_handle=task.handle,
                    error=str(exc),
                )

        for route in routes:
            if route.session_id in live:
                continue
            try:
                await self._routing.remove_route(route)
                report.orphaned_routes.append(route.rule_ref)
                self._log.info(
                    "sweeper.orphaned_route_removed",
                    rule_ref=route.rule_ref,
                    session_id=route.session_id,
                    service=route.service,
                )
            except Exception as exc:
                report.errors += 1
                self._log.warning(
                    "sweeper.orphaned_route_error",
                    rule_ref=route.rule_ref,
                    error=str(exc),
                )

    async def _background_loop(self) -> None:
        """Internal background loop.

        If run_on_startup is enabled, lifecycle already executed one cycle,
        so the loop sleeps before its first cycle.
        """
        first_iteration = True

        while self._running:
            should_sleep = (first_iteration and self._config.run_on_startup) or (
                not first_iteration
            )
            if should_sleep:
                try:
                    await asyncio.sleep(self._config.interval_seconds)
                except asyncio.CancelledError:
                    break

            first_iteration = False

            try:
                await self.run_once()
            except Exception as exc:
                self._log.exception("sweeper.cycle_error", error=str(exc))
