"""SessionStore - persistence access for Session records.

All writes are single-record. Status changes go through ``transition``,
a conditional UPDATE that only applies when the record is still in one of
the expected source statuses, so concurrent writers never move a session
along an edge the state machine does not define.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from pitcrew.errors import ActiveSessionExistsError
from pitcrew.models.session import (
    ACTIVE_STATUSES,
    Session,
    SessionStatus,
    can_transition,
)

logger = structlog.get_logger()


class SessionStore:
    """Keyed access to Session records."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session
        self._log = logger.bind(store="session")

    async def get(self, session_id: str) -> Session | None:
        """Get a session by ID, bypassing any stale identity-map copy."""
        result = await self._db.execute(
            select(Session)
            .where(Session.id == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_active_for_user(self, user_id: str) -> Session | None:
        """Get the user's unique non-terminal session, if any."""
        result = await self._db.execute(
            select(Session)
            .where(
                Session.user_id == user_id,
                Session.status.in_(list(ACTIVE_STATUSES)),
            )
            .order_by(Session.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def list_by_user(
        self,
        user_id: str,
        statuses: Iterable[SessionStatus] | None = None,
        *,
        limit: int = 50,
    ) -> list[Session]:
        """List a user's sessions, most recent first."""
        query = select(Session).where(Session.user_id == user_id)
        if statuses is not None:
            query = query.where(Session.status.in_(list(statuses)))
        query = (
            query.order_by(Session.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )

        result = await self._db.execute(query)
        return list(result.scalars().all())

    async def list_by_status(self, statuses: Iterable[SessionStatus]) -> list[Session]:
        result = await self._db.execute(
            select(Session)
            .where(Session.status.in_(list(statuses)))
            .order_by(Session.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def active_ids(self) -> set[str]:
        """IDs of every session that still owns live resources by design."""
        result = await self._db.execute(
            select(Session.id).where(
                Session.status.in_(list(ACTIVE_STATUSES | {SessionStatus.STOPPING}))
            )
        )
        return {row[0] for row in result.all()}

    async def create(self, session: Session) -> Session:
        """Insert a new active session (create-if-absent keyed by user).

        Raises:
            ActiveSessionExistsError: The user already has an active session.
        """
        session.active_user_id = session.user_id
        self._db.add(session)
        try:
            await self._db.commit()
        except IntegrityError as exc:
            await self._db.rollback()
            self._log.info(
                "session_store.create.conflict",
                session_id=session.id,
                user_id=session.user_id,
            )
            raise ActiveSessionExistsError(details={"user_id": session.user_id}) from exc

        await self._db.refresh(session)
        return session

    async def update(self, session: Session, **fields: Any) -> Session:
        """Last-write-wins field update of a single record (no status change)."""
        if "status" in fields:
            raise ValueError("use transition() to change status")
        for key, value in fields.items():
            setattr(session, key, value)
        await self._db.commit()
        await self._db.refresh(session)
        return session

    async def update_where(
        self,
        session_id: str,
        *,
        statuses: Iterable[SessionStatus],
        **fields: Any,
    ) -> Session | None:
        """Conditionally update fields of a session still in one of ``statuses``.

        Returns:
            The updated session, or None if the precondition failed.
        """
        if "status" in fields:
            raise ValueError("use transition() to change status")

        result = await self._db.execute(
            update(Session)
            .where(Session.id == session_id, Session.status.in_(list(statuses)))
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()

        if result.rowcount != 1:
            return None
        return await self.get(session_id)

    async def transition(
        self,
        session_id: str,
        *,
        from_statuses: Iterable[SessionStatus],
        to_status: SessionStatus,
        **fields: Any,
    ) -> Session | None:
        """Conditionally move a session to ``to_status``.

        Returns:
            The updated session, or None if the session was no longer in any
            of ``from_statuses``.
        """
        sources = list(from_statuses)
        for source in sources:
            if not can_transition(source, to_status):
                raise ValueError(f"illegal transition {source.value} -> {to_status.value}")

        values = dict(fields, status=to_status)
        if to_status not in ACTIVE_STATUSES:
            # Stopping sessions no longer block admission
            values["active_user_id"] = None

        result = await self._db.execute(
            update(Session)
            .where(Session.id == session_id, Session.status.in_(sources))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()

        if result.rowcount != 1:
            self._log.debug(
                "session_store.transition.skipped",
                session_id=session_id,
                to_status=to_status.value,
            )
            return None

        return await self.get(session_id)
