"""Built-in capability snapshots for the supported storage providers."""

from __future__ import annotations

import math
from typing import Final

from .types import Capabilities, IdKind, Provider

PLACEHOLDER_SAFETY_MARGIN: Final[float] = 0.8
MAX_SAFE_PLACEHOLDERS: Final[int] = 10_000

# Driver-level bound parameter limits.
_NATIVE_PLACEHOLDER_LIMITS: Final[dict[Provider, float]] = {
    Provider.POSTGRESQL: 32_767,
    Provider.MYSQL: 65_535,
    Provider.SQLITE: 999,
    Provider.SQLSERVER: 2_100,
    Provider.MONGODB: math.inf,
}
_DEFAULT_NATIVE_LIMIT: Final[int] = 999


def safe_placeholder_ceiling(native_limit: float) -> float:
    """Discount a driver's hard parameter limit to the ceiling batches aim for."""

    if math.isinf(native_limit):
        return math.inf
    return max(1, min(math.floor(native_limit * PLACEHOLDER_SAFETY_MARGIN), MAX_SAFE_PLACEHOLDERS))


def capabilities_for(provider: Provider | str) -> Capabilities:
    """Return the capability snapshot for ``provider``.

    Unknown provider names get a conservative profile: no skip-duplicates
    support, a small placeholder ceiling and sequential execution.
    """

    try:
        resolved = Provider(provider)
    except ValueError:
        return Capabilities(
            provider=provider,
            supports_skip_duplicates=False,
            max_placeholders=safe_placeholder_ceiling(_DEFAULT_NATIVE_LIMIT),
            recommended_concurrency=1,
        )

    ceiling = safe_placeholder_ceiling(_NATIVE_PLACEHOLDER_LIMITS[resolved])
    match resolved:
        case Provider.SQLITE:
            return Capabilities(
                provider=resolved,
                supports_skip_duplicates=True,
                max_placeholders=ceiling,
                recommended_concurrency=1,
            )
        case Provider.POSTGRESQL:
            return Capabilities(
                provider=resolved,
                supports_skip_duplicates=True,
                max_placeholders=ceiling,
                recommended_concurrency=8,
            )
        case Provider.MYSQL:
            return Capabilities(
                provider=resolved,
                supports_skip_duplicates=True,
                max_placeholders=ceiling,
                recommended_concurrency=8,
            )
        case Provider.SQLSERVER:
            return Capabilities(
                provider=resolved,
                supports_skip_duplicates=False,
                max_placeholders=ceiling,
                recommended_concurrency=8,
            )
        case Provider.MONGODB:
            return Capabilities(
                provider=resolved,
                supports_skip_duplicates=False,
                max_placeholders=ceiling,
                id_kind=IdKind.OPAQUE,
                recommended_concurrency=8,
                transactional_updates=True,
            )
