"""Sessions API endpoints.

POST /v1/sessions                       start or resume a challenge
GET  /v1/sessions                       list the caller's sessions
GET  /v1/sessions/{id}                  session status
POST /v1/sessions/{id}/keepalive        extend expiry
POST /v1/sessions/{id}/exit             exit the current challenge
POST /v1/sessions/{id}/switch           switch to another challenge
POST /v1/sessions/{id}/terminate        stop the sandbox
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime

from fastapi import APIRouter, Query, Response
from pydantic import BaseModel, Field

from pitcrew.api.dependencies import CurrentUserDep, SessionControllerDep
from pitcrew.managers.session import AdmissionOutcome
from pitcrew.models.session import ACTIVE_STATUSES, Session, SessionStatus
from pitcrew.utils.datetime import utcnow

router = APIRouter()


# Request/Response Models


class StartSessionRequest(BaseModel):
    """Request to start (or resume) a challenge."""

    challenge_id: str = Field(min_length=1, max_length=128)
    resource_profile: str | None = None


class SwitchChallengeRequest(BaseModel):
    new_challenge_id: str = Field(min_length=1, max_length=128)
    save_current_work: bool = False


class RouteResponse(BaseModel):
    service: str
    url: str


class SessionResponse(BaseModel):
    """Public view of a session (no compute or routing internals)."""

    id: str
    user_id: str
    status: SessionStatus
    current_challenge_id: str | None
    resource_profile: str
    routes: list[RouteResponse]
    failure_reason: str | None
    termination_reason: str | None
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    terminated_at: datetime | None
    remaining_minutes: int
    is_expired: bool


class StartSessionResponse(SessionResponse):
    outcome: AdmissionOutcome
    estimated_ready_at: datetime | None = None


class SessionSummary(BaseModel):
    total: int
    active: int
    by_status: dict[str, int]


class SessionListResponse(BaseModel):
    items: list[SessionResponse]
    summary: SessionSummary


def _session_to_response(session: Session) -> SessionResponse:
    now = utcnow()
    expired = session.is_active and session.is_expired(now)
    remaining = 0
    if session.is_active and not expired:
        remaining = int((session.expires_at - now).total_seconds() // 60)

    return SessionResponse(
        id=session.id,
        user_id=session.user_id,
        status=session.status,
        current_challenge_id=session.current_challenge_id,
        resource_profile=session.resource_profile,
        routes=[
            RouteResponse(service=r["service"], url=r["url"]) for r in session.routes or []
        ],
        failure_reason=session.failure_reason,
        termination_reason=session.termination_reason,
        created_at=session.created_at,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        terminated_at=session.terminated_at,
        remaining_minutes=remaining,
        is_expired=expired,
    )


# Endpoints


@router.post("", response_model=StartSessionResponse, status_code=201)
async def start_session(
    request: StartSessionRequest,
    response: Response,
    controller: SessionControllerDep,
    user_id: CurrentUserDep,
) -> StartSessionResponse:
    """Start a challenge.

    - 201: new session created, poll until status leaves ``starting``
    - 200: existing session resumed or idle sandbox reused
    - 409: another challenge is loaded, exit it first
    """
    result = await controller.request_session(
        user_id,
        request.challenge_id,
        request.resource_profile,
    )
    if result.outcome != AdmissionOutcome.CREATED:
        response.status_code = 200

    return StartSessionResponse(
        **_session_to_response(result.session).model_dump(),
        outcome=result.outcome,
        estimated_ready_at=result.estimated_ready_at,
    )


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    controller: SessionControllerDep,
    user_id: CurrentUserDep,
    status: SessionStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
) -> SessionListResponse:
    """List the caller's sessions, most recent first."""
    statuses = [status] if status is not None else None
    sessions = await controller.list_for_user(user_id, statuses, limit=limit)

    counts = Counter(s.status.value for s in sessions)
    return SessionListResponse(
        items=[_session_to_response(s) for s in sessions],
        summary=SessionSummary(
            total=len(sessions),
            active=sum(1 for s in sessions if s.status in ACTIVE_STATUSES),
            by_status=dict(counts),
        ),
    )


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    controller: SessionControllerDep,
    user_id: CurrentUserDep,
) -> SessionResponse:
    """Get session status, reconciled against the live compute task."""
    session = await controller.refresh_status(session_id, user_id)
    return _session_to_response(session)


@router.post("/{session_id}/keepalive", response_model=SessionResponse)
async def keepalive(
    session_id: str,
    controller: SessionControllerDep,
    user_id: CurrentUserDep,
) -> SessionResponse:
    """Extend session expiry. Answers 410 once the session has expired."""
    session = await controller.keep_alive(session_id, user_id=user_id)
    return _session_to_response(session)


@router.post("/{session_id}/exit", response_model=SessionResponse)
async def exit_challenge(
    session_id: str,
    controller: SessionControllerDep,
    user_id: CurrentUserDep,
) -> SessionResponse:
    """Exit the current challenge; the sandbox stays up for reuse."""
    session = await controller.exit_challenge(session_id, user_id=user_id)
    return _session_to_response(session)


@router.post("/{session_id}/switch", response_model=SessionResponse)
async def switch_challenge(
    session_id: str,
    request: SwitchChallengeRequest,
    controller: SessionControllerDep,
    user_id: CurrentUserDep,
) -> SessionResponse:
    """Switch a running session to another challenge."""
    session = await controller.switch_challenge(
        session_id,
        request.new_challenge_id,
        save_current_work=request.save_current_work,
        user_id=user_id,
    )
    return _session_to_response(session)


@router.post("/{session_id}/terminate", response_model=SessionResponse)
async def terminate_session(
    session_id: str,
    controller: SessionControllerDep,
    user_id: CurrentUserDep,
) -> SessionResponse:
    """Stop the session's sandbox.

    Idempotent: repeated calls return the same terminal state.
    """
    session = await controller.terminate(session_id, user_id=user_id)
    return _session_to_response(session)
