"""Application configuration helpers."""

from __future__ import annotations

from .database import DATABASE_URI_ENV, connection_pool_size, get_database_uri
from .retry import RetryPolicy
from .runtime import (
    ConfigurationError,
    NotConfiguredError,
    RuntimeConfig,
    configure,
    configured_storage,
    get_rate_limiter,
    get_runtime_config,
    is_configured,
    reset_configuration,
)

__all__ = [
    "DATABASE_URI_ENV",
    "ConfigurationError",
    "NotConfiguredError",
    "RetryPolicy",
    "RuntimeConfig",
    "configure",
    "configured_storage",
    "connection_pool_size",
    "get_database_uri",
    "get_rate_limiter",
    "get_runtime_config",
    "is_configured",
    "reset_configuration",
]
