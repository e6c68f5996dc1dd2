"""FastAPI dependencies and process-wide collaborators.

Backends and clients are created once per process and shared; database
sessions and controllers are per request.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from pitcrew.challenges.loader import ChallengeLoader, FilesystemChallengeLoader
from pitcrew.clients.sandbox import SandboxClient
from pitcrew.config import get_settings
from pitcrew.db.session import get_session_dependency
from pitcrew.drivers.base import ComputeBackend
from pitcrew.errors import UnauthorizedError
from pitcrew.managers.session import SessionController
from pitcrew.routing.base import RoutingBackend
from pitcrew.routing.proxy import ProxyRoutingBackend
from pitcrew.services.provisioning.pipeline import CreationPipeline

_compute: ComputeBackend | None = None
_routing: RoutingBackend | None = None
_sandbox_client: SandboxClient | None = None
_challenge_loader: ChallengeLoader | None = None


def get_compute_backend() -> ComputeBackend:
    """Get the compute backend singleton."""
    global _compute
    if _compute is None:
        settings = get_settings()
        if settings.compute.type == "docker":
            from pitcrew.drivers.docker import DockerComputeBackend

            _compute = DockerComputeBackend(settings.compute.docker)
        else:
            raise ValueError(f"Unsupported compute backend: {settings.compute.type}")
    return _compute


def get_routing_backend() -> RoutingBackend:
    """Get the routing backend singleton."""
    global _routing
    if _routing is None:
        settings = get_settings()
        if settings.routing.type == "proxy":
            _routing = ProxyRoutingBackend(settings.routing)
        else:
            raise ValueError(f"Unsupported routing backend: {settings.routing.type}")
    return _routing


def get_sandbox_client() -> SandboxClient:
    global _sandbox_client
    if _sandbox_client is None:
        settings = get_settings()
        api = settings.get_service("api")
        _sandbox_client = SandboxClient(
            api_port=api.port if api else 30003,
            timeout=settings.provisioning.sandbox_request_timeout_seconds,
        )
    return _sandbox_client


def get_challenge_loader() -> ChallengeLoader:
    global _challenge_loader
    if _challenge_loader is None:
        _challenge_loader = FilesystemChallengeLoader(get_settings().challenges.root_path)
    return _challenge_loader


def build_creation_pipeline() -> CreationPipeline:
    return CreationPipeline(
        compute=get_compute_backend(),
        routing=get_routing_backend(),
        sandbox_client=get_sandbox_client(),
        challenge_loader=get_challenge_loader(),
        settings=get_settings(),
    )


def dispatch_creation(session_id: str) -> bool:
    """Hand a new session to the provisioning queue."""
    from pitcrew.services.lifecycle import get_provisioning_queue

    queue = get_provisioning_queue()
    if queue is None:
        return False
    return queue.enqueue(session_id=session_id)


def build_session_controller(db: AsyncSession) -> SessionController:
    return SessionController(
        db,
        compute=get_compute_backend(),
        sandbox_client=get_sandbox_client(),
        challenge_loader=get_challenge_loader(),
        settings=get_settings(),
        dispatch=dispatch_creation,
    )


async def close_backends() -> None:
    """Release backend clients at shutdown."""
    global _compute, _routing
    if _compute is not None:
        await _compute.close()
        _compute = None
    if _routing is not None:
        await _routing.close()
        _routing = None


async def get_session_controller(
    db: Annotated[AsyncSession, Depends(get_session_dependency)],
) -> SessionController:
    return build_session_controller(db)


def get_current_user(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """Caller identity, established by the upstream authenticating proxy."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("Missing X-User-Id header")
    return x_user_id.strip()


# Type aliases for dependency injection
SessionControllerDep = Annotated[SessionController, Depends(get_session_controller)]
RoutingBackendDep = Annotated[RoutingBackend, Depends(get_routing_backend)]
CurrentUserDep = Annotated[str, Depends(get_current_user)]
