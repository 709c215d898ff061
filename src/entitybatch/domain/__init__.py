"""Batch planning, execution and reconciliation."""

from __future__ import annotations

from .capabilities import capabilities_for
from .conflicts import ConflictResolver, changed_fields, has_changes, normalize_value
from .deduplication import DeduplicationResult, deduplicate_by_unique_constraints
from .errors import (
    BatchError,
    ErrorKind,
    InvalidArgumentError,
    RecordNotFoundError,
    TransientStorageError,
    UniqueConstraintViolation,
    classify_error,
)
from .execution import ConcurrencyExecutor, execute_in_parallel
from .planning import chunk, is_or_query_safe, optimal_batch_size, shard_or_conditions
from .rate_limiting import RateLimiter
from .relations import apply_many_to_many, extract_many_to_many, normalize_to_foreign_key
from .types import (
    BatchOptions,
    Capabilities,
    ChangeSet,
    ExecutionReport,
    FieldInfo,
    FieldKind,
    IdKind,
    ModelInfo,
    OperationKind,
    Provider,
    RelationDescriptor,
    RelationKind,
    UpsertResult,
)

__all__ = [
    "BatchError",
    "BatchOptions",
    "Capabilities",
    "ChangeSet",
    "ConcurrencyExecutor",
    "ConflictResolver",
    "DeduplicationResult",
    "ErrorKind",
    "ExecutionReport",
    "FieldInfo",
    "FieldKind",
    "IdKind",
    "InvalidArgumentError",
    "ModelInfo",
    "OperationKind",
    "Provider",
    "RateLimiter",
    "RecordNotFoundError",
    "RelationDescriptor",
    "RelationKind",
    "TransientStorageError",
    "UniqueConstraintViolation",
    "UpsertResult",
    "apply_many_to_many",
    "capabilities_for",
    "changed_fields",
    "chunk",
    "classify_error",
    "deduplicate_by_unique_constraints",
    "execute_in_parallel",
    "extract_many_to_many",
    "has_changes",
    "is_or_query_safe",
    "normalize_to_foreign_key",
    "normalize_value",
    "optimal_batch_size",
    "shard_or_conditions",
]
