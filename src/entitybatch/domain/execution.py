"""Bounded-concurrency executor for batches of zero-argument coroutines.

Operations start in input order and are tracked by their input index. With
``concurrency`` N at most N operations are in flight; whenever one settles the
next queued operation is dispatched. Failures are recorded against their
index and never stop sibling operations.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from .errors import InvalidArgumentError
from .types import ExecutionMetrics, ExecutionReport, OperationError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from .rate_limiting import RateLimiter
    from .types import WorkItem

log = getLogger(__name__)

type ProgressCallback = Callable[[int, int], None]
type ErrorCallback = Callable[[Exception, int], None]


@dataclass(slots=True)
class _RunState[T]:
    total: int
    results: list[T | None]
    errors: list[OperationError] = field(default_factory=list[OperationError])
    completed: int = 0
    busy_time: float = 0.0
    on_progress: ProgressCallback | None = None
    on_error: ErrorCallback | None = None

    def record_success(self, index: int, value: T, elapsed: float) -> None:
        self.results[index] = value
        self._settle(elapsed)

    def record_failure(self, index: int, error: Exception, elapsed: float) -> None:
        self.errors.append(OperationError(index=index, error=error))
        if self.on_error is not None:
            self.on_error(error, index)
        self._settle(elapsed)

    def _settle(self, elapsed: float) -> None:
        self.busy_time += elapsed
        self.completed += 1
        if self.on_progress is not None:
            self.on_progress(self.completed, self.total)


class ConcurrencyExecutor:
    """Run work items sequentially or under a sliding pool of ``concurrency`` slots."""

    def __init__(
        self,
        concurrency: int = 1,
        *,
        rate_limiter: RateLimiter | None = None,
        parallel: bool = True,
    ) -> None:
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency <= 0:
            raise InvalidArgumentError(
                f"concurrency must be a positive integer, got {concurrency!r}"
            )
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter
        self.parallel = parallel

    async def execute[T](
        self,
        operations: Sequence[WorkItem[T]],
        *,
        on_progress: ProgressCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> ExecutionReport[T]:
        state: _RunState[T] = _RunState(
            total=len(operations),
            results=[None] * len(operations),
            on_progress=on_progress,
            on_error=on_error,
        )
        started = time.perf_counter()

        if len(operations) <= 1 or not self.parallel or self.concurrency == 1:
            slots = 1
            for index, operation in enumerate(operations):
                await self._run_one(index, operation, state)
        else:
            slots = min(self.concurrency, len(operations))
            queue = iter(enumerate(operations))
            await asyncio.gather(*(self._worker(queue, state) for _ in range(slots)))

        metrics = _build_metrics(state, time.perf_counter() - started, slots)
        state.errors.sort(key=lambda error: error.index)
        log.debug(
            "Executed %s operations with %s slot(s): %s succeeded, %s failed in %.3fs",
            state.total,
            slots,
            metrics.success_count,
            metrics.failure_count,
            metrics.total_time,
        )
        return ExecutionReport(results=state.results, errors=state.errors, metrics=metrics)

    async def _worker[T](
        self, queue: Iterator[tuple[int, WorkItem[T]]], state: _RunState[T]
    ) -> None:
        # The shared iterator is only advanced between awaits, so each index is
        # taken by exactly one worker.
        for index, operation in queue:
            await self._run_one(index, operation, state)

    async def _run_one[T](self, index: int, operation: WorkItem[T], state: _RunState[T]) -> None:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()
        op_started = time.perf_counter()
        try:
            value = await operation()
        except Exception as exc:  # noqa: BLE001
            log.debug("Operation %s failed: %s", index, exc)
            state.record_failure(index, exc, time.perf_counter() - op_started)
        else:
            state.record_success(index, value, time.perf_counter() - op_started)


def _build_metrics(state: _RunState[object], total_time: float, slots: int) -> ExecutionMetrics:
    failure_count = len(state.errors)
    success_count = state.total - failure_count
    sequential_estimate = state.busy_time
    speedup = sequential_estimate / total_time if total_time > 0 else 1.0
    return ExecutionMetrics(
        total_time=total_time,
        success_count=success_count,
        failure_count=failure_count,
        sequential_estimate=sequential_estimate,
        speedup_factor=speedup,
        items_per_second=state.total / total_time if total_time > 0 else 0.0,
        parallel_efficiency=speedup / slots,
        connection_utilization=min(1.0, speedup / slots),
    )


async def execute_in_parallel[T](
    operations: Sequence[WorkItem[T]],
    *,
    concurrency: int,
    rate_limiter: RateLimiter | None = None,
    on_progress: ProgressCallback | None = None,
    on_error: ErrorCallback | None = None,
) -> ExecutionReport[T]:
    """Shorthand for a one-off :class:`ConcurrencyExecutor` run."""

    executor = ConcurrencyExecutor(concurrency, rate_limiter=rate_limiter)
    return await executor.execute(operations, on_progress=on_progress, on_error=on_error)
