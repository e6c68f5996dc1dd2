"""Readiness prober - bounded polling primitives.

Every wait in the creation pipeline goes through ``poll`` (observe until a
condition holds) or ``retry`` (repeat a side effect until it succeeds).
Both are bounded by an attempt budget with a fixed delay between attempts.

``poll`` distinguishes "still coming up" from "never will": a check
returning ``Probe.fail`` ends the loop immediately instead of burning the
remaining attempts.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import structlog

from pitcrew.errors import ProbeTimeoutError, ProvisioningError

logger = structlog.get_logger()

T = TypeVar("T")


class ProbeOutcome(str, Enum):
    READY = "ready"
    TIMEOUT = "timeout"
    FAILED = "failed"


@dataclass(frozen=True)
class Probe:
    """Result of one check."""

    state: str  # ready | pending | fail
    value: Any = None
    detail: str | None = None

    @classmethod
    def ready(cls, value: Any = None) -> "Probe":
        return cls(state="ready", value=value)

    @classmethod
    def pending(cls, detail: str | None = None) -> "Probe":
        return cls(state="pending", detail=detail)

    @classmethod
    def fail(cls, reason: str) -> "Probe":
        return cls(state="fail", detail=reason)


@dataclass
class ProbeResult(Generic[T]):
    outcome: ProbeOutcome
    attempts: int
    value: T | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome == ProbeOutcome.READY

    def unwrap(self) -> T | None:
        """Return the ready value or raise the matching provisioning error."""
        if self.outcome == ProbeOutcome.READY:
            return self.value
        if self.outcome == ProbeOutcome.FAILED:
            raise ProvisioningError(self.reason, details={"attempts": self.attempts})
        raise ProbeTimeoutError(self.reason, details={"attempts": self.attempts})


async def poll(
    check: Callable[[], Awaitable[Probe]],
    *,
    max_attempts: int,
    interval: float,
    label: str,
) -> ProbeResult:
    """Call ``check`` until it reports ready or fail, at most ``max_attempts`` times.

    Exceptions raised by ``check`` count as pending: backends are eventually
    consistent and a transient error says nothing about the final state.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    log = logger.bind(probe=label)
    last_detail: str | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            probe = await check()
        except Exception as exc:
            probe = Probe.pending(f"{type(exc).__name__}: {exc}")

        if probe.state == "ready":
            log.debug("readiness.ready", attempts=attempt)
            return ProbeResult(ProbeOutcome.READY, attempts=attempt, value=probe.value)

        if probe.state == "fail":
            log.warning("readiness.failed", attempts=attempt, reason=probe.detail)
            return ProbeResult(ProbeOutcome.FAILED, attempts=attempt, reason=probe.detail)

        last_detail = probe.detail
        log.debug(
            "readiness.pending",
            attempt=attempt,
            max_attempts=max_attempts,
            detail=last_detail,
        )
        if attempt < max_attempts:
            await asyncio.sleep(interval)

    reason = f"{label} not ready after {max_attempts} attempts"
    if last_detail:
        reason = f"{reason}: {last_detail}"
    log.warning("readiness.timeout", attempts=max_attempts, detail=last_detail)
    return ProbeResult(ProbeOutcome.TIMEOUT, attempts=max_attempts, reason=reason)


async def retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    interval: float,
    label: str,
) -> T:
    """Run ``operation`` until it succeeds; re-raise its last error when out of attempts."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    log = logger.bind(operation=label)
    last_exc: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            last_exc = exc
            log.warning(
                "retry.attempt_failed",
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(exc),
            )
            if attempt < max_attempts:
                await asyncio.sleep(interval)

    raise last_exc  # type: ignore[misc]
