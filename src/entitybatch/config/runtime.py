"""Runtime configuration for batch execution and its process-wide default.

Orchestrators receive a :class:`RuntimeConfig` explicitly. The module-level
state below only backs the convenience wiring in :mod:`entitybatch.app`; it
must be set with :func:`configure` before use and is never initialised
implicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING

from entitybatch.domain.errors import BatchError, InvalidArgumentError
from entitybatch.domain.rate_limiting import RateLimiter

from .database import connection_pool_size

if TYPE_CHECKING:
    from entitybatch.domain.ports import StorageClient

log = getLogger(__name__)


class ConfigurationError(BatchError):
    """Raised when the process-wide runtime is set up twice without ``force``."""


class NotConfiguredError(ConfigurationError):
    def __init__(self) -> None:
        super().__init__(
            "Batch runtime not configured. Call entitybatch.config.configure() first."
        )


@dataclass(slots=True, frozen=True)
class RuntimeConfig:
    pool_size: int = 1
    max_concurrency: int | None = None
    enable_parallel: bool = True
    max_queries_per_second: float | None = None

    def __post_init__(self) -> None:
        _validate_concurrency(self.max_concurrency)
        _validate_rate(self.max_queries_per_second)
        if self.pool_size <= 0:
            raise InvalidArgumentError("pool_size must be a positive integer")

    @property
    def effective_concurrency(self) -> int:
        return self.max_concurrency if self.max_concurrency is not None else self.pool_size

    @property
    def parallel_enabled(self) -> bool:
        return self.enable_parallel and self.pool_size > 1

    def rate_limiter(self) -> RateLimiter | None:
        if self.max_queries_per_second is None:
            return None
        return RateLimiter(self.max_queries_per_second)


def _validate_concurrency(value: int | None) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidArgumentError("max_concurrency must be a positive integer")


def _validate_rate(value: float | None) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise InvalidArgumentError("max_queries_per_second must be a positive number")


@dataclass(slots=True)
class _RuntimeState:
    storage: StorageClient | None = None
    config: RuntimeConfig | None = None
    rate_limiter: RateLimiter | None = None


_STATE = _RuntimeState()


def configure(
    storage: StorageClient | None,
    *,
    max_concurrency: int | None = None,
    enable_parallel: bool = True,
    max_queries_per_second: float | None = None,
    database_uri: str | None = None,
    force: bool = False,
) -> RuntimeConfig:
    """Set the process-wide storage client and execution defaults."""

    if storage is None:
        raise InvalidArgumentError("A storage client instance is required")
    if _STATE.config is not None and not force:
        raise ConfigurationError(
            "Batch runtime already configured. Pass force=True to reconfigure."
        )

    config = RuntimeConfig(
        pool_size=connection_pool_size(database_uri),
        max_concurrency=max_concurrency,
        enable_parallel=enable_parallel,
        max_queries_per_second=max_queries_per_second,
    )
    _STATE.storage = storage
    _STATE.config = config
    _STATE.rate_limiter = config.rate_limiter()
    log.info(
        "Configured batch runtime: pool_size=%s concurrency=%s parallel=%s rate=%s",
        config.pool_size,
        config.effective_concurrency,
        config.parallel_enabled,
        config.max_queries_per_second,
    )
    return config


def reset_configuration() -> None:
    """Forget the process-wide defaults (primarily for tests)."""

    _STATE.storage = None
    _STATE.config = None
    _STATE.rate_limiter = None


def is_configured() -> bool:
    return _STATE.config is not None


def get_runtime_config() -> RuntimeConfig:
    if _STATE.config is None:
        raise NotConfiguredError
    return _STATE.config


def configured_storage() -> StorageClient:
    if _STATE.storage is None:
        raise NotConfiguredError
    return _STATE.storage


def get_rate_limiter() -> RateLimiter | None:
    """Return the shared limiter for the configured rate, if any."""

    get_runtime_config()
    return _STATE.rate_limiter
