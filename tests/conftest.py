"""Test configuration and fixtures."""

from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import SQLModel

from pitcrew.config import Settings
from pitcrew.db.session import make_session_factory
from pitcrew.managers.session import SessionController
from pitcrew.services.provisioning.pipeline import CreationPipeline
from tests.fakes import (
    FakeChallengeLoader,
    FakeComputeBackend,
    FakeRoutingBackend,
    FakeSandboxClient,
    RecordingDispatcher,
)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings with a file-backed SQLite database and no polling delays."""
    return Settings(
        database={"url": f"sqlite+aiosqlite:///{tmp_path / 'pitcrew-test.db'}"},
        provisioning={
            "task_poll_attempts": 5,
            "task_poll_interval_seconds": 0,
            "registration_attempts": 3,
            "registration_backoff_seconds": 0,
            "health_poll_attempts": 3,
            "health_poll_interval_seconds": 0,
            "queue_workers": 2,
            "queue_max_size": 8,
        },
        challenges={"root_path": str(tmp_path / "challenges")},
    )


@pytest.fixture
async def engine(test_settings: Settings):
    engine = create_async_engine(test_settings.database.url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def db_session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def compute() -> FakeComputeBackend:
    return FakeComputeBackend()


@pytest.fixture
def routing() -> FakeRoutingBackend:
    return FakeRoutingBackend()


@pytest.fixture
def loader() -> FakeChallengeLoader:
    return FakeChallengeLoader({"hello-world", "motors", "drivetrain"})


@pytest.fixture
def sandbox() -> FakeSandboxClient:
    return FakeSandboxClient()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def make_controller(compute, sandbox, loader, test_settings, dispatcher):
    """Build a controller bound to a given database session."""

    def _make(db) -> SessionController:
        return SessionController(
            db,
            compute=compute,
            sandbox_client=sandbox,
            challenge_loader=loader,
            settings=test_settings,
            dispatch=dispatcher,
        )

    return _make


@pytest.fixture
def controller(make_controller, db_session) -> SessionController:
    return make_controller(db_session)


@pytest.fixture
def pipeline(compute, routing, sandbox, loader, test_settings, session_factory) -> CreationPipeline:
    return CreationPipeline(
        compute=compute,
        routing=routing,
        sandbox_client=sandbox,
        challenge_loader=loader,
        settings=test_settings,
        session_factory=session_factory,
    )
