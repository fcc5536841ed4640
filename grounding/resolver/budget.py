from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from grounding.resolver.types import SourceDiagnostic, SourceFailureReason, SourceResult

logger = logging.getLogger(__name__)

MIN_TIMEOUT_MS = 100
MAX_TIMEOUT_MS = 15000


def clamp_timeout_ms(value: int | None, fallback: int) -> int:
    timeout = fallback if value is None else value
    return max(MIN_TIMEOUT_MS, min(MAX_TIMEOUT_MS, int(timeout)))


def allocate(remaining_ms: int, cap_ms: int, reserve_ms: int, floor_ms: int) -> int | None:
    """Timeout for one stage, or None when the stage must be skipped.

    The stage gets whatever is left after the reserve for later stages, never
    less than its floor, never more than its cap or the time that is actually
    left. A stage whose floor no longer fits is skipped rather than run with a
    near-zero timeout.
    """
    if remaining_ms <= 0 or remaining_ms < floor_ms:
        return None
    timeout = min(cap_ms, max(floor_ms, remaining_ms - reserve_ms), remaining_ms)
    if timeout < floor_ms or timeout <= 0:
        return None
    return timeout


class Deadline:
    def __init__(self, timeout_ms: int, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.timeout_ms = timeout_ms
        self.started_at = clock()
        self.expires_at = self.started_at + timeout_ms / 1000

    def remaining_ms(self) -> int:
        return max(0, int((self.expires_at - self._clock()) * 1000))

    def elapsed_ms(self) -> int:
        return int((self._clock() - self.started_at) * 1000)


class StageState:
    """Mutable accumulator threaded through one resolution's stages."""

    def __init__(self) -> None:
        self.products: list[dict[str, Any]] = []
        self.counts: dict[str, int] = {}
        self.diagnostics: list[SourceDiagnostic] = []
        self.allocations: dict[str, int] = {}
        self.elapsed: dict[str, int] = {}

    def count(self, stage_name: str) -> int:
        return self.counts.get(stage_name, 0)


class Stage:
    def __init__(
        self,
        name: str,
        run: Callable[[int], Awaitable[SourceResult]],
        *,
        cap_ms: int = 0,
        floor_ms: int = 0,
        enabled: bool = True,
        should_run: Callable[[StageState], bool] | None = None,
        timed: bool = True,
        timeout_failure: SourceFailureReason = SourceFailureReason.UPSTREAM_TIMEOUT,
        error_failure: SourceFailureReason = SourceFailureReason.UPSTREAM_ERROR,
    ) -> None:
        self.name = name
        self.run = run
        self.cap_ms = cap_ms
        self.floor_ms = floor_ms
        self.enabled = enabled
        self.should_run = should_run
        self.timed = timed
        self.timeout_failure = timeout_failure
        self.error_failure = error_failure

    def ready(self, state: StageState) -> bool:
        if not self.enabled:
            return False
        return self.should_run(state) if self.should_run else True


def reserve_for(stages: list[Stage], index: int) -> int:
    return sum(stage.cap_ms for stage in stages[index + 1 :] if stage.enabled and stage.timed)


async def _run_bounded(stage: Stage, timeout_ms: int | None) -> SourceResult:
    try:
        if timeout_ms is None:
            return await stage.run(0)
        return await asyncio.wait_for(stage.run(timeout_ms), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        logger.warning("stage=%s exceeded timeout_ms=%s", stage.name, timeout_ms)
        return SourceResult(ok=False, failure=stage.timeout_failure)
    except Exception:
        logger.exception("stage=%s failed", stage.name)
        return SourceResult(ok=False, failure=stage.error_failure)


async def run_stages(stages: list[Stage], deadline: Deadline, state: StageState | None = None) -> StageState:
    state = state or StageState()
    for index, stage in enumerate(stages):
        if not stage.ready(state):
            continue

        timeout_ms: int | None = None
        if stage.timed:
            timeout_ms = allocate(
                deadline.remaining_ms(),
                stage.cap_ms,
                reserve_for(stages, index),
                stage.floor_ms,
            )
            if timeout_ms is None:
                logger.info("stage=%s skipped remaining_ms=%s", stage.name, deadline.remaining_ms())
                state.diagnostics.append(
                    SourceDiagnostic(
                        source_name=stage.name,
                        ok=False,
                        reason=SourceFailureReason.BUDGET_EXHAUSTED.value,
                        attempts=0,
                    )
                )
                continue
            state.allocations[stage.name] = timeout_ms

        started = time.monotonic()
        result = await _run_bounded(stage, timeout_ms)
        state.elapsed[stage.name] = int((time.monotonic() - started) * 1000)

        if result.ok and result.products:
            state.products.extend(result.products)
            state.counts[stage.name] = len(result.products)
            diagnostic = SourceDiagnostic(
                source_name=stage.name,
                ok=True,
                count=len(result.products),
                attempts=result.attempts,
                timeout_ms=timeout_ms,
            )
        else:
            reason = result.reason or SourceFailureReason.NO_RESULTS.value
            diagnostic = SourceDiagnostic(
                source_name=stage.name,
                ok=False,
                reason=reason,
                attempts=result.attempts,
                timeout_ms=timeout_ms,
            )
        state.diagnostics.append(diagnostic)
        logger.info(
            "stage=%s ok=%s count=%s reason=%s timeout_ms=%s elapsed_ms=%s",
            stage.name,
            diagnostic.ok,
            diagnostic.count,
            diagnostic.reason,
            timeout_ms,
            state.elapsed[stage.name],
        )
    return state
