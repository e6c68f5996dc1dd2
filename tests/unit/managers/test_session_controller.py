"""Unit tests for SessionController.

Covers admission (create / resume / reuse / conflict), challenge switch and
exit, keep-alive and termination against in-memory backends.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from pitcrew.errors import (
    ChallengeConflictError,
    InvalidStateError,
    NotFoundError,
    PitcrewError,
    SandboxError,
    SessionExpiredError,
    ValidationError,
)
from pitcrew.managers.session import AdmissionOutcome
from pitcrew.managers.session.session import QUEUE_FULL_REASON
from pitcrew.models.session import (
    ACTIVE_STATUSES,
    Session,
    SessionStatus,
    TerminationReason,
    can_transition,
)
from pitcrew.store.sessions import SessionStore
from pitcrew.utils.datetime import utcnow
from tests.fakes import sandbox_failure


async def _seed(
    db_session,
    *,
    session_id: str,
    user_id: str,
    status: SessionStatus = SessionStatus.RUNNING,
    challenge_id: str | None = "hello-world",
    **fields,
) -> Session:
    """Insert a session directly in a given state."""
    now = utcnow()
    values = {
        "created_at": now,
        "last_activity": now,
        "expires_at": now + timedelta(minutes=240),
        "compute_handle": f"task-{session_id}",
        "private_address": "10.1.1.1",
    }
    values.update(fields)
    store = SessionStore(db_session)
    session = await store.create(
        Session(
            id=session_id,
            user_id=user_id,
            status=status,
            current_challenge_id=challenge_id,
            **values,
        )
    )
    if status not in ACTIVE_STATUSES:
        session = await store.update(session, active_user_id=None)
    return session


class TestAdmissionCreate:
    async def test_new_user_gets_starting_session(self, controller, dispatcher, test_settings):
        result = await controller.request_session("user-a", "hello-world")

        assert result.outcome == AdmissionOutcome.CREATED
        assert result.session.status == SessionStatus.STARTING
        assert result.session.current_challenge_id == "hello-world"
        assert result.session.resource_profile == test_settings.session.default_profile
        assert result.estimated_ready_at == result.session.created_at + timedelta(
            seconds=test_settings.session.estimated_startup_seconds
        )
        assert dispatcher.dispatched == [result.session.id]

    async def test_pipeline_brings_session_to_running(self, controller, pipeline, routing):
        result = await controller.request_session("user-a", "hello-world")

        await pipeline.run(result.session.id)

        session = await controller.get(result.session.id)
        assert session.status == SessionStatus.RUNNING
        assert session.current_challenge_id == "hello-world"
        assert {r["service"] for r in session.routes} == {"api", "nt4", "halsim", "jdtls"}
        assert len(routing.routes_for(session.id)) == 4

    async def test_unknown_profile_rejected(self, controller, dispatcher):
        with pytest.raises(ValidationError):
            await controller.request_session("user-a", "hello-world", "gigantic")

        assert dispatcher.dispatched == []
        assert await controller.list_for_user("user-a") == []

    async def test_malformed_challenge_id_rejected(self, controller):
        with pytest.raises(ValidationError):
            await controller.request_session("user-a", "../etc/passwd")

    async def test_unknown_challenge_rejected_before_create(self, controller, dispatcher):
        with pytest.raises(NotFoundError):
            await controller.request_session("user-a", "no-such-challenge")

        assert dispatcher.dispatched == []
        assert await controller.list_for_user("user-a") == []

    async def test_dispatch_rejected_marks_failed(self, controller, dispatcher):
        dispatcher.accept = False

        result = await controller.request_session("user-a", "hello-world")

        assert result.session.status == SessionStatus.FAILED
        assert result.session.failure_reason == QUEUE_FULL_REASON
        assert result.estimated_ready_at is None

    async def test_failed_session_does_not_block_new_one(self, controller, dispatcher):
        dispatcher.accept = False
        first = await controller.request_session("user-a", "hello-world")
        dispatcher.accept = True

        second = await controller.request_session("user-a", "hello-world")

        assert second.outcome == AdmissionOutcome.CREATED
        assert second.session.id != first.session.id

    async def test_expired_unswept_session_is_retired(self, controller, db_session, compute):
        past = utcnow() - timedelta(minutes=5)
        await _seed(
            db_session,
            session_id="sess-old",
            user_id="user-a",
            expires_at=past,
            last_activity=past - timedelta(minutes=240),
        )

        result = await controller.request_session("user-a", "hello-world")

        old = await controller.get("sess-old")
        assert old.status == SessionStatus.STOPPED
        assert old.termination_reason == TerminationReason.EXPIRED.value
        assert compute.stopped == ["task-sess-old"]
        assert result.outcome == AdmissionOutcome.CREATED
        assert result.session.id != "sess-old"


class TestAdmissionExisting:
    async def test_same_challenge_resumes(self, controller, dispatcher):
        first = await controller.request_session("user-a", "hello-world")

        second = await controller.request_session("user-a", "hello-world")

        assert second.outcome == AdmissionOutcome.RESUMED
        assert second.session.id == first.session.id
        assert second.estimated_ready_at is not None
        assert dispatcher.dispatched == [first.session.id]

    async def test_different_challenge_conflicts(self, controller, pipeline):
        first = await controller.request_session("user-a", "hello-world")
        await pipeline.run(first.session.id)

        with pytest.raises(ChallengeConflictError) as exc_info:
            await controller.request_session("user-a", "motors")

        exc = exc_info.value
        assert exc.status_code == 409
        assert exc.details["current_challenge"] == "hello-world"
        assert exc.details["session_id"] == first.session.id
        assert exc.details["action"] == "exit_current_challenge_required"

    async def test_exit_then_reuse_without_new_task(self, controller, pipeline, compute, sandbox):
        first = await controller.request_session("user-a", "hello-world")
        await pipeline.run(first.session.id)
        await controller.exit_challenge(first.session.id, user_id="user-a")

        result = await controller.request_session("user-a", "motors")

        assert result.outcome == AdmissionOutcome.LOADED
        assert result.session.id == first.session.id
        assert result.session.status == SessionStatus.RUNNING
        assert result.session.current_challenge_id == "motors"
        assert result.estimated_ready_at is None
        assert len(compute.launched) == 1
        assert sandbox.loads[-1] == ("10.0.0.1", "motors")

    async def test_reuse_with_unknown_challenge_leaves_session_idle(self, controller, db_session):
        await _seed(db_session, session_id="sess-1", user_id="user-a", challenge_id=None)

        with pytest.raises(NotFoundError):
            await controller.request_session("user-a", "no-such-challenge")

        session = await controller.get("sess-1")
        assert session.status == SessionStatus.RUNNING
        assert session.current_challenge_id is None

    async def test_reuse_load_failure_returns_to_idle(self, controller, db_session, sandbox):
        await _seed(db_session, session_id="sess-1", user_id="user-a", challenge_id=None)
        sandbox.load_error = sandbox_failure()

        with pytest.raises(SandboxError):
            await controller.request_session("user-a", "motors")

        session = await controller.get("sess-1")
        assert session.status == SessionStatus.RUNNING
        assert session.current_challenge_id is None

    async def test_idle_but_not_running_is_retryable_state_error(self, controller, db_session):
        await _seed(
            db_session,
            session_id="sess-1",
            user_id="user-a",
            status=SessionStatus.LOADING_CHALLENGE,
            challenge_id=None,
        )

        with pytest.raises(InvalidStateError):
            await controller.request_session("user-a", "motors")


class TestAdmissionConcurrency:
    async def test_concurrent_same_challenge_creates_once(
        self, make_controller, session_factory, dispatcher
    ):
        async def admit():
            async with session_factory() as db:
                return await make_controller(db).request_session("user-a", "hello-world")

        results = await asyncio.gather(*[admit() for _ in range(5)])

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes.count(AdmissionOutcome.CREATED.value) == 1
        assert outcomes.count(AdmissionOutcome.RESUMED.value) == 4
        assert len({r.session.id for r in results}) == 1
        assert len(dispatcher.dispatched) == 1

    async def test_concurrent_different_challenges_conflict(
        self, make_controller, session_factory, dispatcher
    ):
        async def admit(challenge_id):
            async with session_factory() as db:
                return await make_controller(db).request_session("user-a", challenge_id)

        results = await asyncio.gather(
            admit("hello-world"), admit("motors"), admit("drivetrain"), return_exceptions=True
        )

        created = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, ChallengeConflictError)]
        assert len(created) == 1
        assert len(conflicts) == 2
        assert len(dispatcher.dispatched) == 1

    async def test_users_are_independent(self, make_controller, session_factory, dispatcher):
        async def admit(user_id):
            async with session_factory() as db:
                return await make_controller(db).request_session(user_id, "hello-world")

        results = await asyncio.gather(admit("user-a"), admit("user-b"))

        assert all(r.outcome == AdmissionOutcome.CREATED for r in results)
        assert len(dispatcher.dispatched) == 2


class TestSwitchChallenge:
    async def test_switch_saves_and_loads(self, controller, db_session, sandbox):
        await _seed(db_session, session_id="sess-1", user_id="user-a")

        session = await controller.switch_challenge(
            "sess-1", "motors", save_current_work=True, user_id="user-a"
        )

        assert session.status == SessionStatus.RUNNING
        assert session.current_challenge_id == "motors"
        assert sandbox.saves == [("10.1.1.1", "hello-world")]
        assert sandbox.loads == [("10.1.1.1", "motors")]

    async def test_switch_without_save(self, controller, db_session, sandbox):
        await _seed(db_session, session_id="sess-1", user_id="user-a")

        await controller.switch_challenge("sess-1", "motors")

        assert sandbox.saves == []

    async def test_switch_requires_running(self, controller, db_session):
        await _seed(db_session, session_id="sess-1", user_id="user-a", status=SessionStatus.STARTING)

        with pytest.raises(InvalidStateError):
            await controller.switch_challenge("sess-1", "motors")

    async def test_switch_load_failure_clears_challenge(self, controller, db_session, sandbox):
        await _seed(db_session, session_id="sess-1", user_id="user-a")
        sandbox.load_error = sandbox_failure()

        with pytest.raises(SandboxError):
            await controller.switch_challenge("sess-1", "motors")

        session = await controller.get("sess-1")
        assert session.status == SessionStatus.RUNNING
        assert session.current_challenge_id is None

    async def test_switch_save_failure_changes_nothing(self, controller, db_session, sandbox):
        await _seed(db_session, session_id="sess-1", user_id="user-a")
        sandbox.save_error = sandbox_failure()

        with pytest.raises(SandboxError):
            await controller.switch_challenge("sess-1", "motors", save_current_work=True)

        session = await controller.get("sess-1")
        assert session.status == SessionStatus.RUNNING
        assert session.current_challenge_id == "hello-world"
        assert sandbox.loads == []

    async def test_switch_on_expired_session_is_gone(self, controller, db_session):
        await _seed(
            db_session,
            session_id="sess-1",
            user_id="user-a",
            expires_at=utcnow() - timedelta(minutes=1),
        )

        with pytest.raises(SessionExpiredError):
            await controller.switch_challenge("sess-1", "motors")


class TestExitChallenge:
    async def test_exit_clears_challenge_and_keeps_task(self, controller, db_session, compute):
        await _seed(db_session, session_id="sess-1", user_id="user-a")

        session = await controller.exit_challenge("sess-1")

        assert session.status == SessionStatus.RUNNING
        assert session.current_challenge_id is None
        assert session.is_idle
        assert compute.stopped == []

    async def test_exit_while_starting_rejected(self, controller, db_session):
        await _seed(db_session, session_id="sess-1", user_id="user-a", status=SessionStatus.STARTING)

        with pytest.raises(InvalidStateError):
            await controller.exit_challenge("sess-1")

    async def test_exit_on_stopped_session_is_gone(self, controller, db_session):
        await _seed(db_session, session_id="sess-1", user_id="user-a", status=SessionStatus.STOPPED)

        with pytest.raises(SessionExpiredError):
            await controller.exit_challenge("sess-1")

    async def test_exit_extends_expiry(self, controller, db_session, test_settings):
        await _seed(
            db_session,
            session_id="sess-1",
            user_id="user-a",
            expires_at=utcnow() + timedelta(minutes=40),
        )

        session = await controller.exit_challenge("sess-1")

        assert session.expires_at >= session.last_activity + timedelta(
            minutes=test_settings.session.timeout_minutes
        )

    async def test_exit_during_load_leaves_session_idle(
        self, controller, make_controller, session_factory, db_session, sandbox, monkeypatch
    ):
        await _seed(db_session, session_id="sess-1", user_id="user-a", challenge_id=None)
        pushed = []

        async def load_then_exit(address, payload):
            pushed.append(payload.challenge_id)
            async with session_factory() as other_db:
                exited = await make_controller(other_db).exit_challenge("sess-1")
            assert exited.is_idle
            return {"success": True}

        monkeypatch.setattr(sandbox, "load_challenge", load_then_exit)

        with pytest.raises(InvalidStateError):
            await controller.request_session("user-a", "motors")

        session = await controller.get("sess-1")
        assert pushed == ["motors"]
        assert session.status == SessionStatus.RUNNING
        assert session.current_challenge_id is None


class TestRefreshStatus:
    async def test_crashed_task_terminates_session(self, controller, db_session, compute):
        await _seed(db_session, session_id="sess-1", user_id="user-a")

        session = await controller.refresh_status("sess-1", "user-a")

        assert session.status == SessionStatus.STOPPED
        assert session.termination_reason == TerminationReason.TASK_STOPPED.value
        assert session.active_user_id is None
        assert compute.stopped == ["task-sess-1"]

    async def test_live_task_leaves_session_running(self, controller, db_session, compute):
        await _seed(db_session, session_id="sess-1", user_id="user-a")
        compute.add_task("task-sess-1", "sess-1")

        session = await controller.refresh_status("sess-1")

        assert session.status == SessionStatus.RUNNING
        assert compute.stopped == []

    async def test_starting_session_not_described(self, controller, db_session, compute):
        await _seed(db_session, session_id="sess-1", user_id="user-a", status=SessionStatus.STARTING)

        session = await controller.refresh_status("sess-1")

        assert session.status == SessionStatus.STARTING
        assert compute.stopped == []

    async def test_describe_failure_returns_stored_record(
        self, controller, db_session, compute, monkeypatch
    ):
        await _seed(db_session, session_id="sess-1", user_id="user-a")

        async def unreachable(handle):
            raise ConnectionError("backend down")

        monkeypatch.setattr(compute, "describe", unreachable)

        session = await controller.refresh_status("sess-1")

        assert session.status == SessionStatus.RUNNING

    async def test_other_users_session_not_found(self, controller, db_session):
        await _seed(db_session, session_id="sess-1", user_id="user-a")

        with pytest.raises(NotFoundError):
            await controller.refresh_status("sess-1", "user-b")


class TestKeepAlive:
    async def test_extends_expiry_from_now(self, controller, db_session, test_settings):
        past = utcnow() - timedelta(minutes=60)
        await _seed(
            db_session,
            session_id="sess-1",
            user_id="user-a",
            last_activity=past,
            expires_at=utcnow() + timedelta(minutes=10),
        )
        before = utcnow()

        session = await controller.keep_alive("sess-1")

        assert session.last_activity >= before
        assert session.expires_at >= before + timedelta(
            minutes=test_settings.session.timeout_minutes
        )

    async def test_never_shortens_expiry(self, controller, db_session):
        far = utcnow() + timedelta(days=2)
        await _seed(db_session, session_id="sess-1", user_id="user-a", expires_at=far)

        session = await controller.keep_alive("sess-1")

        assert session.expires_at == far

    async def test_expired_session_is_gone_and_untouched(self, controller, db_session):
        past = utcnow() - timedelta(minutes=1)
        seeded = await _seed(
            db_session,
            session_id="sess-1",
            user_id="user-a",
            expires_at=past,
            last_activity=past - timedelta(minutes=30),
        )

        with pytest.raises(SessionExpiredError):
            await controller.keep_alive("sess-1")

        session = await controller.get("sess-1")
        assert session.expires_at == seeded.expires_at
        assert session.last_activity == seeded.last_activity
        assert session.status == SessionStatus.RUNNING

    async def test_failed_session_rejected(self, controller, db_session):
        await _seed(db_session, session_id="sess-1", user_id="user-a", status=SessionStatus.FAILED)

        with pytest.raises(InvalidStateError):
            await controller.keep_alive("sess-1")


class TestTerminate:
    async def test_terminate_is_idempotent(self, controller, db_session, compute):
        await _seed(db_session, session_id="sess-1", user_id="user-a")

        first = await controller.terminate("sess-1")
        second = await controller.terminate("sess-1")

        assert first.status == SessionStatus.STOPPED
        assert second.status == SessionStatus.STOPPED
        assert first.terminated_at == second.terminated_at
        assert first.termination_reason == TerminationReason.USER_REQUESTED.value
        assert compute.stopped == ["task-sess-1"]

    async def test_concurrent_terminate_stops_once(
        self, make_controller, session_factory, db_session, compute
    ):
        await _seed(db_session, session_id="sess-1", user_id="user-a")

        async def terminate():
            async with session_factory() as db:
                return await make_controller(db).terminate("sess-1")

        await asyncio.gather(terminate(), terminate(), terminate())

        assert compute.stopped == ["task-sess-1"]
        async with session_factory() as db:
            assert (await SessionStore(db).get("sess-1")).status == SessionStatus.STOPPED

    async def test_stop_failure_does_not_block(self, controller, db_session, compute):
        await _seed(db_session, session_id="sess-1", user_id="user-a")
        compute.stop_error = RuntimeError("task already gone")

        session = await controller.terminate("sess-1")

        assert session.status == SessionStatus.STOPPED
        assert session.terminated_at is not None

    async def test_terminate_while_starting_beats_pipeline(self, controller, pipeline, compute):
        result = await controller.request_session("user-a", "hello-world")

        stopped = await controller.terminate(result.session.id)
        outcome = await pipeline.run(result.session.id)

        assert stopped.status == SessionStatus.STOPPED
        assert outcome is None
        assert compute.launched == []

    async def test_failed_session_left_as_is(self, controller, db_session, compute):
        await _seed(db_session, session_id="sess-1", user_id="user-a", status=SessionStatus.FAILED)

        session = await controller.terminate("sess-1")

        assert session.status == SessionStatus.FAILED
        assert compute.stopped == []

    async def test_other_users_session_not_found(self, controller, db_session):
        await _seed(db_session, session_id="sess-1", user_id="user-a")

        with pytest.raises(NotFoundError):
            await controller.terminate("sess-1", user_id="user-b")


class TestStateMachineClosure:
    """Every operation against every state only ever follows legal edges."""

    OPERATIONS = {
        "keep_alive": lambda c, sid: c.keep_alive(sid),
        "exit": lambda c, sid: c.exit_challenge(sid),
        "switch": lambda c, sid: c.switch_challenge(sid, "motors"),
        "terminate": lambda c, sid: c.terminate(sid),
        "request": lambda c, sid: c.request_session(f"user-{sid}", "hello-world"),
    }

    @pytest.mark.parametrize("status", list(SessionStatus))
    @pytest.mark.parametrize("operation", list(OPERATIONS))
    async def test_only_legal_transitions(self, controller, db_session, status, operation):
        session_id = f"{status.value}-{operation}"
        await _seed(db_session, session_id=session_id, user_id=f"user-{session_id}", status=status)

        try:
            await self.OPERATIONS[operation](controller, session_id)
        except PitcrewError:
            after = await controller.get(session_id)
            assert after.status == status
            return

        after = (await controller.get(session_id)).status
        assert (
            after == status
            or can_transition(status, after)
            or (after == SessionStatus.STOPPED and can_transition(status, SessionStatus.STOPPING))
        )
