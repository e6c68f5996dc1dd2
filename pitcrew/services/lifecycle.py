"""Background service lifecycle for FastAPI lifespan integration.

Manages the startup and shutdown of:
- ProvisioningQueue (creation pipeline workers), including sessions left
  ``starting`` across a restart
- CleanupSweeper (periodic convergence)
"""

from __future__ import annotations

import structlog

from pitcrew.api.dependencies import (
    build_creation_pipeline,
    build_session_controller,
    dispatch_creation,
    get_compute_backend,
    get_routing_backend,
)
from pitcrew.config import get_settings
from pitcrew.services.cleanup.sweeper import CleanupSweeper
from pitcrew.services.provisioning.pipeline import CreationPipeline
from pitcrew.services.provisioning.queue import ProvisioningQueue

logger = structlog.get_logger()

# Global instances
_creation_pipeline: CreationPipeline | None = None
_provisioning_queue: ProvisioningQueue | None = None
_cleanup_sweeper: CleanupSweeper | None = None


async def init_background_services() -> tuple[ProvisioningQueue, CleanupSweeper | None]:
    """Start the provisioning queue and, if enabled, the cleanup sweeper.

    Called during FastAPI lifespan startup, after database initialization.
    """
    global _creation_pipeline, _provisioning_queue, _cleanup_sweeper

    settings = get_settings()

    _creation_pipeline = build_creation_pipeline()
    _provisioning_queue = ProvisioningQueue(
        config=settings.provisioning, runner=_creation_pipeline.run
    )
    await _provisioning_queue.start()
    await _creation_pipeline.recover(dispatch_creation)

    if not settings.sweeper.enabled:
        logger.info("sweeper.disabled")
        return _provisioning_queue, None

    _cleanup_sweeper = CleanupSweeper(
        settings=settings,
        compute=get_compute_backend(),
        routing=get_routing_backend(),
        controller_factory=build_session_controller,
    )

    if settings.sweeper.run_on_startup:
        logger.info("sweeper.run_on_startup.start")
        try:
            report = await _cleanup_sweeper.run_once()
            logger.info("sweeper.run_on_startup.complete", total=report.total)
        except Exception as e:
            logger.exception("sweeper.run_on_startup.failed", error=str(e))

    await _cleanup_sweeper.start()
    return _provisioning_queue, _cleanup_sweeper


async def shutdown_background_services() -> None:
    """Stop background services gracefully.

    Called during FastAPI lifespan shutdown.
    """
    global _creation_pipeline, _provisioning_queue, _cleanup_sweeper

    if _cleanup_sweeper is not None:
        await _cleanup_sweeper.stop()
        _cleanup_sweeper = None

    if _provisioning_queue is not None:
        abandoned = await _provisioning_queue.stop()
        if abandoned and _creation_pipeline is not None:
            await _creation_pipeline.fail_interrupted(abandoned)
        _provisioning_queue = None

    _creation_pipeline = None


def get_provisioning_queue() -> ProvisioningQueue | None:
    """Get the global provisioning queue instance."""
    return _provisioning_queue


def get_cleanup_sweeper() -> CleanupSweeper | None:
    """Get the global cleanup sweeper instance."""
    return _cleanup_sweeper
