"""ProvisioningQueue - in-process bounded queue for creation pipelines.

Sits between admission and the long-running creation pipeline:
- Admission only enqueues, it never provisions on the request path
- A fixed worker pool bounds how many sandboxes come up concurrently
- Dedup by session_id: a session already queued is not queued twice
- A job that cannot be queued is reported back to the caller, who fails
  the session instead of leaving it in ``starting``
- Jobs cut short by ``stop()`` are reported back the same way
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from pitcrew.config import ProvisioningConfig

logger = structlog.get_logger()

PipelineRunner = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ProvisioningJob:
    session_id: str


@dataclass
class ProvisioningQueueStats:
    """Observable statistics for the provisioning queue."""

    enqueue_total: int = 0
    dedup_total: int = 0
    drop_total: int = 0
    consumed_total: int = 0
    success_total: int = 0
    failure_total: int = 0
    active_workers: int = 0


class ProvisioningQueue:
    """Bounded queue with fixed workers running the creation pipeline.

    Usage:
        queue = ProvisioningQueue(config=settings.provisioning, runner=pipeline.run)
        await queue.start()

        accepted = queue.enqueue(session_id="sess-123")

        abandoned = await queue.stop()
        await pipeline.fail_interrupted(abandoned)
    """

    def __init__(
        self,
        config: "ProvisioningConfig",
        runner: PipelineRunner,
    ) -> None:
        self._config = config
        self._runner = runner
        self._log = logger.bind(service="provisioning_queue")

        self._queue: asyncio.Queue[ProvisioningJob | None] = asyncio.Queue(
            maxsize=config.queue_max_size,
        )
        # session_ids queued or being processed
        self._pending: set[str] = set()

        self._workers: list[asyncio.Task] = []
        # session_ids whose pipeline was cancelled mid-run
        self._interrupted: list[str] = []
        self._running = False
        self._stats = ProvisioningQueueStats()

    @property
    def stats(self) -> ProvisioningQueueStats:
        return self._stats

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start worker tasks."""
        if self._running:
            self._log.warning("provisioning_queue.already_running")
            return

        self._running = True
        num_workers = self._config.queue_workers

        for i in range(num_workers):
            task = asyncio.create_task(
                self._worker_loop(worker_id=i),
                name=f"provisioning-worker-{i}",
            )
            self._workers.append(task)

        self._log.info(
            "provisioning_queue.started",
            workers=num_workers,
            max_size=self._config.queue_max_size,
        )

    async def stop(self, timeout: float = 10.0) -> list[str]:
        """Stop workers, letting in-flight jobs finish within ``timeout``.

        Returns:
            Session IDs whose pipeline never completed: jobs cancelled after
            the timeout plus jobs still queued. Their sessions are still
            ``starting`` and the caller must fail them.
        """
        if not self._running:
            return []

        self._log.info("provisioning_queue.stopping", depth=self._queue.qsize())
        self._running = False

        for _ in self._workers:
            try:
                self._queue.put_nowait(None)
            except asyncio.QueueFull:
                pass

        if self._workers:
            _, pending = await asyncio.wait(self._workers, timeout=timeout)
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._workers.clear()

        abandoned = list(self._interrupted)
        self._interrupted.clear()
        while True:
            try:
                job = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            if job is not None and job.session_id not in abandoned:
                abandoned.append(job.session_id)
        self._pending.clear()

        self._log.info(
            "provisioning_queue.stopped",
            stats_enqueue=self._stats.enqueue_total,
            stats_drop=self._stats.drop_total,
            stats_consumed=self._stats.consumed_total,
            abandoned=len(abandoned),
        )
        return abandoned

    def enqueue(self, *, session_id: str) -> bool:
        """Queue a creation pipeline run (non-blocking).

        Returns:
            True if the session is (now or already) queued, False if the job
            was dropped because the queue is full or not running.
        """
        if not self._running:
            self._stats.drop_total += 1
            self._log.warning("provisioning_queue.not_running", session_id=session_id)
            return False

        if session_id in self._pending:
            self._stats.dedup_total += 1
            self._log.debug("provisioning_queue.dedup", session_id=session_id)
            return True

        try:
            self._queue.put_nowait(ProvisioningJob(session_id=session_id))
        except asyncio.QueueFull:
            self._stats.drop_total += 1
            self._log.warning(
                "provisioning_queue.full",
                session_id=session_id,
                max_size=self._config.queue_max_size,
            )
            return False

        self._pending.add(session_id)
        self._stats.enqueue_total += 1
        self._log.debug(
            "provisioning_queue.enqueued",
            session_id=session_id,
            depth=self._queue.qsize(),
        )
        return True

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def _worker_loop(self, worker_id: int) -> None:
        self._log.info("provisioning_worker.started", worker_id=worker_id)

        while True:
            try:
                job = await self._queue.get()
            except asyncio.CancelledError:
                break

            if job is None:
                self._queue.task_done()
                break

            self._stats.active_workers += 1
            try:
                await self._process_job(job, worker_id)
            except asyncio.CancelledError:
                self._interrupted.append(job.session_id)
                raise
            finally:
                self._stats.active_workers -= 1
                self._pending.discard(job.session_id)
                self._queue.task_done()

        self._log.info("provisioning_worker.stopped", worker_id=worker_id)

    async def _process_job(self, job: ProvisioningJob, worker_id: int) -> None:
        self._stats.consumed_total += 1
        self._log.debug(
            "provisioning_worker.processing",
            worker_id=worker_id,
            session_id=job.session_id,
        )

        try:
            await self._runner(job.session_id)
            self._stats.success_total += 1
        except Exception as exc:
            self._stats.failure_total += 1
            self._log.exception(
                "provisioning_worker.failed",
                session_id=job.session_id,
                worker_id=worker_id,
                error=str(exc),
            )
