"""Retry helper for transient storage failures."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING

from tenacity import AsyncRetrying, retry_if_exception

from entitybatch.config.retry import RetryPolicy

from .errors import ErrorKind, classify_error

if TYPE_CHECKING:
    from tenacity import RetryCallState

    from .errors import ErrorClassifier
    from .types import WorkItem

log = getLogger(__name__)


async def with_retry[T](
    operation: WorkItem[T],
    *,
    policy: RetryPolicy | None = None,
    classify: ErrorClassifier = classify_error,
) -> T:
    """Await ``operation``, retrying with exponential backoff while it fails transiently.

    Non-transient errors and the error of the final attempt propagate unchanged.
    """

    policy = policy or RetryPolicy()

    def transient(exc: BaseException) -> bool:
        return isinstance(exc, Exception) and classify(exc) is ErrorKind.TRANSIENT

    def log_retry(state: RetryCallState) -> None:
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        error = state.outcome.exception() if state.outcome is not None else None
        log.warning(
            "Transient storage error (attempt %s/%s), retrying in %.2fs: %s",
            state.attempt_number,
            policy.max_retries,
            delay,
            error,
        )

    retrying = AsyncRetrying(
        stop=policy.stop(),
        wait=policy.wait(),
        retry=retry_if_exception(transient),
        before_sleep=log_retry,
        reraise=True,
    )
    return await retrying(operation)
