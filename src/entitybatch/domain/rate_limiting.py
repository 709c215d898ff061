"""Token-bucket throttle shared by all workers of one executor run."""

from __future__ import annotations

from typing import TYPE_CHECKING

from aiolimiter import AsyncLimiter

from .errors import InvalidArgumentError

if TYPE_CHECKING:
    from types import TracebackType


class RateLimiter:
    """Bound the long-run rate of ``acquire()`` calls to ``max_per_second``.

    The bucket holds ``burst`` tokens and starts full, so up to ``burst`` calls
    pass immediately; afterwards callers are released at the configured rate in
    the order they started waiting. A limiter created with ``max_per_second=None``
    never waits.
    """

    def __init__(self, max_per_second: float | None, *, burst: int = 1) -> None:
        if max_per_second is not None and max_per_second <= 0:
            raise InvalidArgumentError("max_per_second must be a positive number")
        if burst <= 0:
            raise InvalidArgumentError("burst must be a positive integer")
        self.max_per_second = max_per_second
        self.burst = burst
        self._limiter: AsyncLimiter | None = None
        if max_per_second is not None:
            self._limiter = AsyncLimiter(burst, burst / max_per_second)

    @classmethod
    def disabled(cls) -> RateLimiter:
        return cls(None)

    @property
    def enabled(self) -> bool:
        return self._limiter is not None

    def has_capacity(self) -> bool:
        return self._limiter is None or self._limiter.has_capacity()

    async def acquire(self) -> None:
        if self._limiter is None:
            return
        await self._limiter.acquire()

    async def __aenter__(self) -> None:
        await self.acquire()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        return None

    def __repr__(self) -> str:
        return f"RateLimiter(max_per_second={self.max_per_second!r}, burst={self.burst})"


def limiter_for(max_per_second: float | None) -> RateLimiter | None:
    """Return a fresh limiter for ``max_per_second`` or ``None`` when unthrottled."""

    if max_per_second is None:
        return None
    return RateLimiter(max_per_second)
