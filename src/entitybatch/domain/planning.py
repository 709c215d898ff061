"""Batch planning: chunking, provider batch sizes and OR-query sharding.

Everything here is pure; the orchestrator feeds the resulting chunks and
shards to the concurrency executor.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Final

from .errors import InvalidArgumentError
from .types import OperationKind, Provider

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .types import Capabilities, RecordLike


# (create_many, update_many, transaction, delete) per provider.
BATCH_SIZES: Final[dict[Provider, dict[OperationKind, int]]] = {
    Provider.SQLITE: {
        OperationKind.CREATE_MANY: 500,
        OperationKind.UPDATE_MANY: 500,
        OperationKind.TRANSACTION: 100,
        OperationKind.DELETE: 500,
    },
    Provider.POSTGRESQL: {
        OperationKind.CREATE_MANY: 1500,
        OperationKind.UPDATE_MANY: 1500,
        OperationKind.TRANSACTION: 1000,
        OperationKind.DELETE: 1500,
    },
    Provider.MYSQL: {
        OperationKind.CREATE_MANY: 1500,
        OperationKind.UPDATE_MANY: 1500,
        OperationKind.TRANSACTION: 1000,
        OperationKind.DELETE: 1500,
    },
    Provider.SQLSERVER: {
        OperationKind.CREATE_MANY: 1000,
        OperationKind.UPDATE_MANY: 1000,
        OperationKind.TRANSACTION: 1000,
        OperationKind.DELETE: 1000,
    },
    Provider.MONGODB: {
        OperationKind.CREATE_MANY: 1000,
        OperationKind.UPDATE_MANY: 100,
        OperationKind.TRANSACTION: 100,
        OperationKind.DELETE: 1000,
    },
}

DEFAULT_BATCH_SIZE: Final[int] = 500
DEFAULT_TRANSACTION_BATCH_SIZE: Final[int] = 100

PARALLEL_THRESHOLD: Final[int] = 100
DEFAULT_MAX_BATCH_BYTES: Final[int] = 100 * 1024 * 1024


def chunk[T](items: Sequence[T], size: int) -> list[list[T]]:
    """Split ``items`` into contiguous, order-preserving chunks of at most ``size``."""

    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise InvalidArgumentError(f"Batch size must be a positive integer, got {size!r}")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def optimal_batch_size(kind: OperationKind, capabilities: Capabilities) -> int:
    try:
        return BATCH_SIZES[Provider(capabilities.provider)][kind]
    except (KeyError, ValueError):
        if kind is OperationKind.TRANSACTION:
            return DEFAULT_TRANSACTION_BATCH_SIZE
        return DEFAULT_BATCH_SIZE


def _placeholder_count(conditions: Sequence[RecordLike], fields_per_condition: int | None) -> int:
    if fields_per_condition is not None:
        return len(conditions) * fields_per_condition
    return sum(len(condition) for condition in conditions)


def is_or_query_safe(
    conditions: Sequence[RecordLike],
    capabilities: Capabilities,
    fields_per_condition: int | None = None,
) -> bool:
    """Return whether all ``conditions`` fit into a single OR query.

    Without ``fields_per_condition`` each condition contributes one placeholder
    per populated key.
    """

    if capabilities.unbounded_placeholders:
        return True
    return _placeholder_count(conditions, fields_per_condition) <= capabilities.max_placeholders


def or_shard_size(fields_per_condition: int, capabilities: Capabilities) -> int:
    if fields_per_condition <= 0:
        raise InvalidArgumentError("fields_per_condition must be a positive integer")
    return max(1, int(capabilities.max_placeholders // fields_per_condition))


def shard_or_conditions[T: RecordLike](
    conditions: Sequence[T],
    fields_per_condition: int,
    capabilities: Capabilities,
) -> list[list[T]]:
    if not conditions:
        return []
    if capabilities.unbounded_placeholders:
        return [list(conditions)]
    return chunk(conditions, or_shard_size(fields_per_condition, capabilities))


def optimal_concurrency(kind: OperationKind, item_count: int, max_concurrency: int) -> int:
    """Scale concurrency with the workload, never above ``max_concurrency``."""

    del kind  # all write kinds currently share one curve
    if item_count < 100:
        return 1
    if item_count < 1_000:
        return min(2, max_concurrency)
    if item_count < 10_000:
        return min(4, max_concurrency)
    return min(8, max_concurrency)


def should_use_parallel(item_count: int, pool_size: int) -> bool:
    return item_count >= PARALLEL_THRESHOLD and pool_size > 1


def estimate_batch_memory(records: Sequence[RecordLike]) -> int:
    """Rough serialized size of ``records`` in bytes, extrapolated from a sample."""

    if not records:
        return 0
    sample = records[: min(10, len(records))]
    sample_bytes = sum(
        len(json.dumps(dict(record), default=str).encode()) for record in sample
    )
    return (sample_bytes * len(records)) // len(sample)


def is_batch_safe(
    records: Sequence[RecordLike], max_bytes: int = DEFAULT_MAX_BATCH_BYTES
) -> bool:
    return estimate_batch_memory(records) <= max_bytes
