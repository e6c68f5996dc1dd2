"""SessionController - the session lifecycle state machine.

Key responsibilities:
- Admission: at most one active session per user (create, resume, reuse
  or conflict)
- Challenge load / switch / exit on a running sandbox
- Keep-alive and termination

The creation pipeline itself runs off the request path; admission only
creates the record and hands the session ID to ``dispatch``.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from pitcrew.challenges.loader import validate_challenge_id
from pitcrew.concurrency.locks import user_lock
from pitcrew.drivers.base import TaskState
from pitcrew.errors import (
    ActiveSessionExistsError,
    ChallengeConflictError,
    InvalidStateError,
    NotFoundError,
    PitcrewError,
    SandboxError,
    SessionExpiredError,
    ValidationError,
)
from pitcrew.models.session import (
    ACTIVE_STATUSES,
    Session,
    SessionStatus,
    TerminationReason,
)
from pitcrew.store.sessions import SessionStore
from pitcrew.utils.datetime import utcnow

if TYPE_CHECKING:
    from pitcrew.challenges.loader import ChallengeLoader, ChallengePayload
    from pitcrew.clients.sandbox import SandboxClient
    from pitcrew.config import Settings
    from pitcrew.drivers.base import ComputeBackend

logger = structlog.get_logger()

# Returns False when the creation pipeline could not be scheduled
Dispatcher = Callable[[str], bool]

QUEUE_FULL_REASON = "provisioning_queue_full"

_CHALLENGE_STATUSES = (
    SessionStatus.RUNNING,
    SessionStatus.LOADING_CHALLENGE,
    SessionStatus.SWITCHING_CHALLENGE,
)


class AdmissionOutcome(str, Enum):
    CREATED = "created"  # New session, creation pipeline dispatched
    RESUMED = "resumed"  # Same challenge already loaded (or loading)
    LOADED = "loaded"  # Idle sandbox reused for the requested challenge


@dataclass
class AdmissionResult:
    session: Session
    outcome: AdmissionOutcome
    estimated_ready_at: datetime | None = None


class SessionController:
    """Drives sessions through the lifecycle state machine."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        compute: "ComputeBackend",
        sandbox_client: "SandboxClient",
        challenge_loader: "ChallengeLoader",
        settings: "Settings",
        dispatch: Dispatcher,
    ) -> None:
        self._db = db_session
        self._store = SessionStore(db_session)
        self._compute = compute
        self._sandbox = sandbox_client
        self._loader = challenge_loader
        self._settings = settings
        self._dispatch = dispatch
        self._log = logger.bind(manager="session")

    @property
    def store(self) -> SessionStore:
        return self._store

    def _timeout(self) -> timedelta:
        return timedelta(minutes=self._settings.session.timeout_minutes)

    def _extended_expiry(self, session: Session, now: datetime) -> datetime:
        """Expiry pushed to ``now + timeout``, never pulled back."""
        return max(session.expires_at, now + self._timeout())

    def _estimated_ready_at(self, session: Session) -> datetime | None:
        if session.status != SessionStatus.STARTING:
            return None
        return session.created_at + timedelta(
            seconds=self._settings.session.estimated_startup_seconds
        )

    # Queries

    async def get(self, session_id: str, user_id: str | None = None) -> Session:
        """Get a session, scoped to ``user_id`` when given.

        Raises:
            NotFoundError: Unknown session, or owned by someone else.
        """
        session = await self._store.get(session_id)
        if session is None or (user_id is not None and session.user_id != user_id):
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    async def refresh_status(self, session_id: str, user_id: str | None = None) -> Session:
        """Get a session, reconciled against its compute task.

        A running session whose task has stopped is terminated with reason
        ``task_stopped``. If the backend cannot be reached the stored record
        is returned as is.

        Raises:
            NotFoundError: Unknown session, or owned by someone else.
        """
        session = await self.get(session_id, user_id)
        if session.status not in _CHALLENGE_STATUSES or not session.compute_handle:
            return session

        try:
            info = await self._compute.describe(session.compute_handle)
        except Exception as exc:
            self._log.warning(
                "session.refresh.describe_failed",
                session_id=session_id,
                compute_handle=session.compute_handle,
                error=str(exc),
            )
            return session

        if info.state != TaskState.STOPPED:
            return session

        self._log.warning(
            "session.refresh.task_stopped",
            session_id=session_id,
            compute_handle=session.compute_handle,
            stop_reason=info.stop_reason,
        )
        return await self.terminate(session_id, reason=TerminationReason.TASK_STOPPED)

    async def list_for_user(
        self,
        user_id: str,
        statuses: Iterable[SessionStatus] | None = None,
        *,
        limit: int = 50,
    ) -> list[Session]:
        return await self._store.list_by_user(user_id, statuses, limit=limit)

    # Admission

    async def request_session(
        self,
        user_id: str,
        challenge_id: str,
        resource_profile: str | None = None,
    ) -> AdmissionResult:
        """Start or resume ``challenge_id`` for ``user_id``.

        Raises:
            ValidationError: Unknown resource profile or malformed challenge ID.
            NotFoundError: Unknown challenge.
            ChallengeConflictError: A different challenge is loaded.
        """
        validate_challenge_id(challenge_id)
        profile_id = resource_profile or self._settings.session.default_profile
        if self._settings.get_profile(profile_id) is None:
            raise ValidationError(
                f"Invalid resource profile: {profile_id}",
                details={"resource_profile": profile_id},
            )

        self._log.info(
            "session.request",
            user_id=user_id,
            challenge_id=challenge_id,
            profile=profile_id,
        )

        async with user_lock(user_id):
            existing = await self._store.get_active_for_user(user_id)

            if existing is not None and existing.is_expired():
                # Not swept yet; retire it here rather than hand it back
                self._log.info("session.request.retire_expired", session_id=existing.id)
                await self.terminate(existing.id, reason=TerminationReason.EXPIRED)
                existing = None

            if existing is None:
                # Unknown challenges are rejected before anything is written
                await self._loader.load(challenge_id)
                try:
                    return await self._create(user_id, challenge_id, profile_id)
                except ActiveSessionExistsError:
                    # Another process won the create; attach to its session
                    existing = await self._store.get_active_for_user(user_id)
                    if existing is None:
                        raise

            return await self._attach(existing, challenge_id)

    async def _create(self, user_id: str, challenge_id: str, profile_id: str) -> AdmissionResult:
        now = utcnow()
        session = Session(
            id=f"sess-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            current_challenge_id=challenge_id,
            status=SessionStatus.STARTING,
            resource_profile=profile_id,
            created_at=now,
            last_activity=now,
            expires_at=now + self._timeout(),
        )
        session = await self._store.create(session)
        self._log.info("session.create", session_id=session.id, user_id=user_id)

        if not self._dispatch(session.id):
            failed = await self._store.transition(
                session.id,
                from_statuses=(SessionStatus.STARTING,),
                to_status=SessionStatus.FAILED,
                failure_reason=QUEUE_FULL_REASON,
            )
            self._log.warning("session.create.dispatch_failed", session_id=session.id)
            session = failed or session

        return AdmissionResult(
            session=session,
            outcome=AdmissionOutcome.CREATED,
            estimated_ready_at=self._estimated_ready_at(session),
        )

    async def _attach(self, session: Session, challenge_id: str) -> AdmissionResult:
        current = session.current_challenge_id

        if current and current != challenge_id:
            self._log.info(
                "session.request.conflict",
                session_id=session.id,
                current_challenge=current,
                requested=challenge_id,
            )
            raise ChallengeConflictError(session_id=session.id, current_challenge=current)

        if current == challenge_id:
            self._log.info("session.request.resume", session_id=session.id)
            return AdmissionResult(
                session=session,
                outcome=AdmissionOutcome.RESUMED,
                estimated_ready_at=self._estimated_ready_at(session),
            )

        if session.status != SessionStatus.RUNNING:
            raise InvalidStateError(
                f"Session is {session.status.value}, retry shortly",
                details={"session_id": session.id, "status": session.status.value},
            )

        loaded = await self._load_into_idle(session, challenge_id)
        return AdmissionResult(session=loaded, outcome=AdmissionOutcome.LOADED)

    async def _load_into_idle(self, session: Session, challenge_id: str) -> Session:
        """Reuse an idle sandbox: running -> loading_challenge -> running."""
        payload = await self._loader.load(challenge_id)

        loading = await self._store.transition(
            session.id,
            from_statuses=(SessionStatus.RUNNING,),
            to_status=SessionStatus.LOADING_CHALLENGE,
        )
        if loading is None:
            raise InvalidStateError(
                "Session changed state concurrently",
                details={"session_id": session.id},
            )

        self._log.info("session.load_challenge", session_id=session.id, challenge_id=challenge_id)
        try:
            await self._push(loading, payload)
        except PitcrewError:
            await self._store.transition(
                session.id,
                from_statuses=(SessionStatus.LOADING_CHALLENGE,),
                to_status=SessionStatus.RUNNING,
                current_challenge_id=None,
            )
            raise

        return await self._finish_challenge_change(
            session.id, SessionStatus.LOADING_CHALLENGE, challenge_id
        )

    # Challenge switch / exit

    async def switch_challenge(
        self,
        session_id: str,
        new_challenge_id: str,
        *,
        save_current_work: bool = False,
        user_id: str | None = None,
    ) -> Session:
        """Replace the loaded challenge on a running session.

        Raises:
            InvalidStateError: Session is not running.
            SessionExpiredError: Session is past its expiry or already ended.
            SandboxError: Saving or loading inside the sandbox failed.
        """
        validate_challenge_id(new_challenge_id)
        session = await self.get(session_id, user_id)

        async with user_lock(session.user_id):
            session = await self.get(session_id, user_id)
            self._ensure_live(session)
            if session.status != SessionStatus.RUNNING:
                raise InvalidStateError(
                    f"Cannot switch challenge while {session.status.value}",
                    details={"session_id": session_id, "status": session.status.value},
                )
            if session.current_challenge_id == new_challenge_id:
                return session

            payload = await self._loader.load(new_challenge_id)

            previous = session.current_challenge_id
            if save_current_work and previous:
                await self._sandbox.save_workspace(self._address(session), previous)

            switching = await self._store.transition(
                session_id,
                from_statuses=(SessionStatus.RUNNING,),
                to_status=SessionStatus.SWITCHING_CHALLENGE,
            )
            if switching is None:
                raise InvalidStateError(
                    "Session changed state concurrently",
                    details={"session_id": session_id},
                )

            self._log.info(
                "session.switch_challenge",
                session_id=session_id,
                previous=previous,
                challenge_id=new_challenge_id,
            )
            try:
                await self._push(switching, payload)
            except PitcrewError:
                # The old workspace is gone from the sandbox at this point
                await self._store.transition(
                    session_id,
                    from_statuses=(SessionStatus.SWITCHING_CHALLENGE,),
                    to_status=SessionStatus.RUNNING,
                    current_challenge_id=None,
                )
                raise

            return await self._finish_challenge_change(
                session_id, SessionStatus.SWITCHING_CHALLENGE, new_challenge_id
            )

    async def exit_challenge(self, session_id: str, *, user_id: str | None = None) -> Session:
        """Clear the loaded challenge, keeping the sandbox warm for reuse.

        Also accepted while a load or switch is in flight. The record goes
        idle at once and the interrupted change fails with InvalidStateError
        when it tries to commit, so the sandbox may still hold that pushed
        workspace until the next load replaces it.
        """
        session = await self.get(session_id, user_id)
        self._ensure_live(session)
        if session.status not in _CHALLENGE_STATUSES:
            raise InvalidStateError(
                f"Cannot exit challenge while {session.status.value}",
                details={"session_id": session_id, "status": session.status.value},
            )

        now = utcnow()
        updated = await self._store.transition(
            session_id,
            from_statuses=_CHALLENGE_STATUSES,
            to_status=SessionStatus.RUNNING,
            current_challenge_id=None,
            last_activity=now,
            expires_at=self._extended_expiry(session, now),
        )
        if updated is None:
            raise InvalidStateError(
                "Session changed state concurrently",
                details={"session_id": session_id},
            )

        self._log.info(
            "session.exit_challenge",
            session_id=session_id,
            challenge_id=session.current_challenge_id,
        )
        return updated

    # Keep-alive

    async def keep_alive(self, session_id: str, *, user_id: str | None = None) -> Session:
        """Extend a live session's expiry from now.

        Raises:
            SessionExpiredError: Already expired; nothing is written.
        """
        session = await self.get(session_id, user_id)
        self._ensure_live(session)
        if session.status not in ACTIVE_STATUSES:
            raise InvalidStateError(
                f"Cannot keep alive a {session.status.value} session",
                details={"session_id": session_id, "status": session.status.value},
            )

        now = utcnow()
        updated = await self._store.update_where(
            session_id,
            statuses=ACTIVE_STATUSES,
            last_activity=now,
            expires_at=self._extended_expiry(session, now),
        )
        if updated is None:
            raise SessionExpiredError(details={"session_id": session_id})

        self._log.debug("session.keepalive", session_id=session_id, expires_at=updated.expires_at)
        return updated

    # Termination

    async def terminate(
        self,
        session_id: str,
        *,
        user_id: str | None = None,
        reason: TerminationReason = TerminationReason.USER_REQUESTED,
    ) -> Session:
        """Stop a session's sandbox. Idempotent.

        Only the caller that moves the session into ``stopping`` stops the
        compute task, so a handle is stopped at most once. Stop failures are
        logged and never block reaching ``stopped``.
        """
        session = await self.get(session_id, user_id)
        if session.status not in ACTIVE_STATUSES:
            return session

        stopping = await self._store.transition(
            session_id,
            from_statuses=ACTIVE_STATUSES,
            to_status=SessionStatus.STOPPING,
            termination_reason=reason.value,
        )
        if stopping is None:
            # Someone else is terminating it (or just did)
            return await self.get(session_id)

        self._log.info(
            "session.terminate",
            session_id=session_id,
            reason=reason.value,
            compute_handle=stopping.compute_handle,
        )
        return await self.finish_stopping(stopping)

    async def finish_stopping(self, session: Session) -> Session:
        """Stop the compute task of a ``stopping`` session and mark it stopped."""
        if session.compute_handle:
            try:
                await self._compute.stop(session.compute_handle)
            except Exception as exc:
                self._log.warning(
                    "session.terminate.stop_failed",
                    session_id=session.id,
                    compute_handle=session.compute_handle,
                    error=str(exc),
                )

        stopped = await self._store.transition(
            session.id,
            from_statuses=(SessionStatus.STOPPING,),
            to_status=SessionStatus.STOPPED,
            terminated_at=utcnow(),
        )
        return stopped or await self.get(session.id)

    # Helpers

    def _ensure_live(self, session: Session) -> None:
        """Raise the "gone" condition for sessions that ended or expired."""
        if session.status in (SessionStatus.STOPPING, SessionStatus.STOPPED):
            raise SessionExpiredError(
                "Session has ended",
                details={"session_id": session.id, "reason": session.termination_reason},
            )
        if session.status in ACTIVE_STATUSES and session.is_expired():
            raise SessionExpiredError(details={"session_id": session.id})

    def _address(self, session: Session) -> str:
        if not session.private_address:
            raise InvalidStateError(
                "Sandbox address unknown",
                details={"session_id": session.id},
            )
        return session.private_address

    async def _push(self, session: Session, payload: "ChallengePayload") -> None:
        try:
            await self._sandbox.load_challenge(self._address(session), payload)
        except PitcrewError:
            raise
        except Exception as exc:
            raise SandboxError(f"Challenge load failed: {exc}") from exc

    async def _finish_challenge_change(
        self,
        session_id: str,
        from_status: SessionStatus,
        challenge_id: str,
    ) -> Session:
        """Commit the new challenge and the return to running in one write."""
        now = utcnow()
        current = await self._store.get(session_id)
        if current is None:
            raise NotFoundError(f"Session not found: {session_id}")

        updated = await self._store.transition(
            session_id,
            from_statuses=(from_status,),
            to_status=SessionStatus.RUNNING,
            current_challenge_id=challenge_id,
            last_activity=now,
            expires_at=self._extended_expiry(current, now),
        )
        if updated is None:
            raise InvalidStateError(
                f"Session left {from_status.value} during the challenge change",
                details={"session_id": session_id},
            )
        return updated
