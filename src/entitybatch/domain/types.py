"""Value types shared by the batch planning, execution and reconciliation modules."""

from __future__ import annotations

import math
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Iterator


type Record = dict[str, object]
type RecordLike = Mapping[str, object]
type UniqueConstraint = tuple[str, ...]
type WorkItem[T] = Callable[[], Awaitable[T]]
type KeyTemplate = Callable[[str], str]

ALWAYS_IGNORED_FIELDS: Final[frozenset[str]] = frozenset({"id", "createdAt", "updatedAt"})


class Provider(StrEnum):
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLSERVER = "sqlserver"
    MONGODB = "mongodb"


class OperationKind(StrEnum):
    CREATE_MANY = "create_many"
    UPDATE_MANY = "update_many"
    TRANSACTION = "transaction"
    DELETE = "delete"


class IdKind(StrEnum):
    NUMERIC = "numeric"
    OPAQUE = "opaque"


class RelationKind(StrEnum):
    SCALAR_ARRAY = "scalar_array"
    SINGLE_RELATION = "single_relation"
    MANY_RELATION = "many_relation"


class FieldKind(StrEnum):
    SCALAR = "scalar"
    JSON = "json"
    RELATION = "relation"


@dataclass(slots=True, frozen=True)
class Capabilities:
    """Read-only description of the target store.

    ``max_placeholders`` is the safe ceiling for bound parameters or OR terms in a
    single query (already discounted from the driver's hard limit); ``math.inf``
    means the store has no such ceiling.
    """

    provider: Provider | str
    supports_skip_duplicates: bool
    max_placeholders: float
    id_kind: IdKind = IdKind.NUMERIC
    recommended_concurrency: int = 1
    transactional_updates: bool = False

    @property
    def unbounded_placeholders(self) -> bool:
        return math.isinf(self.max_placeholders)


@dataclass(slots=True, frozen=True)
class RelationDescriptor:
    field_name: str
    kind: RelationKind
    related_type_name: str | None = None


@dataclass(slots=True, frozen=True)
class FieldInfo:
    name: str
    kind: FieldKind = FieldKind.SCALAR
    is_list: bool = False
    type_name: str = "String"
    db_name: str | None = None

    @property
    def column(self) -> str:
        return self.db_name or self.name


@dataclass(slots=True, frozen=True)
class ModelInfo:
    """Schema facts about one model, as reported by a schema introspector."""

    name: str
    fields: tuple[FieldInfo, ...] = ()
    unique_constraints: tuple[UniqueConstraint, ...] = ()
    db_table_name: str | None = None
    relations: tuple[RelationDescriptor, ...] = ()
    partition_keys: frozenset[str] = frozenset()

    @property
    def table(self) -> str:
        return self.db_table_name or self.name

    def field_info(self, name: str) -> FieldInfo | None:
        for info in self.fields:
            if info.name == name:
                return info
        return None

    def is_json_field(self, name: str) -> bool:
        info = self.field_info(name)
        return info is not None and info.kind is FieldKind.JSON

    def relations_of(self, kind: RelationKind) -> tuple[RelationDescriptor, ...]:
        return tuple(rel for rel in self.relations if rel.kind is kind)


@dataclass(slots=True, frozen=True)
class ChangeSet:
    """Minimal patch for one existing row; ``id`` addresses the row."""

    id: object
    changed_fields: Record


@dataclass(slots=True, frozen=True)
class OperationError:
    index: int
    error: Exception


@dataclass(slots=True, frozen=True)
class ExecutionMetrics:
    total_time: float
    success_count: int
    failure_count: int
    sequential_estimate: float = 0.0
    speedup_factor: float = 1.0
    items_per_second: float = 0.0
    parallel_efficiency: float = 1.0
    connection_utilization: float = 0.0


@dataclass(slots=True)
class ExecutionReport[T]:
    """Outcome of one executor run.

    ``results`` is index-aligned with the submitted operations; a failed slot
    holds ``None`` and has a matching entry in ``errors``.
    """

    results: list[T | None]
    errors: list[OperationError]
    metrics: ExecutionMetrics

    @property
    def failed_indexes(self) -> frozenset[int]:
        return frozenset(error.index for error in self.errors)

    def succeeded(self) -> Iterator[T]:
        failed = self.failed_indexes
        for index, result in enumerate(self.results):
            if index not in failed:
                yield result  # type: ignore[misc]


@dataclass(slots=True, frozen=True, kw_only=True)
class BatchOptions:
    """Per-call knobs for the public batch operations.

    ``parallel`` and ``concurrency`` left as ``None`` defer to the runtime
    configuration; ``rate_limit`` overrides the configured queries-per-second.
    """

    parallel: bool | None = None
    concurrency: int | None = None
    rate_limit: float | None = None
    skip_duplicates: bool = False
    key_template: KeyTemplate | None = None
    handle_relations: bool = True


@dataclass(slots=True, frozen=True)
class UpsertResult:
    created: int
    updated: int
    unchanged: int
    total: int


@dataclass(slots=True, frozen=True)
class RelationApplyResult:
    success: int
    failed: int
    links: int = 0


@dataclass(slots=True)
class Classification:
    to_create: list[Record] = field(default_factory=list[Record])
    to_update: list[ChangeSet] = field(default_factory=list[ChangeSet])
    unchanged_count: int = 0
