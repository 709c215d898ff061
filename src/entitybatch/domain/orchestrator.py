"""Public batch operations: create, update, upsert and delete many records.

Every operation walks the same phases::

    VALIDATING -> NORMALIZING -> DEDUPLICATING -> PLANNING -> EXECUTING
               -> RECONCILING -> DONE

and only validation failures end in ``ABORTED``. Per-chunk failures are
recorded on the optional :class:`BatchRun` and logged; an operation raises
only when no chunk at all succeeded (deletes re-raise the first chunk error
once every chunk was attempted).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from logging import getLogger
from typing import TYPE_CHECKING, Final, Self, cast

from .conflicts import ConflictResolver, constraint_key, index_existing
from .deduplication import deduplicate_by_unique_constraints
from .errors import InvalidArgumentError, classify_error, is_unique_constraint_error
from .execution import ConcurrencyExecutor
from .planning import chunk, is_or_query_safe, optimal_batch_size, shard_or_conditions
from .rate_limiting import RateLimiter
from .relations import (
    apply_many_to_many,
    extract_many_to_many,
    merge_attach_payload,
    normalize_to_foreign_key,
    sanitize_keys,
)
from .statements import build_case_update, prepare_update_list
from .types import (
    BatchOptions,
    OperationError,
    OperationKind,
    RelationKind,
    UpsertResult,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from entitybatch.config.runtime import RuntimeConfig

    from .errors import ErrorClassifier
    from .ports import SchemaIntrospector, SqlDialect, StorageClient
    from .relations import RelationRefs
    from .types import (
        Capabilities,
        ExecutionReport,
        ModelInfo,
        Record,
        RecordLike,
        WorkItem,
    )

log = getLogger(__name__)

TRANSACTION_MAX_WAIT: Final[float] = 5.0
TRANSACTION_TIMEOUT: Final[float] = 10.0


class OperationPhase(StrEnum):
    VALIDATING = "validating"
    NORMALIZING = "normalizing"
    DEDUPLICATING = "deduplicating"
    PLANNING = "planning"
    EXECUTING = "executing"
    RECONCILING = "reconciling"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(slots=True)
class BatchRun:
    """Observable trace of one public operation call."""

    operation: str = ""
    phases: list[OperationPhase] = field(default_factory=list[OperationPhase])
    dropped_duplicates: int = 0
    errors: list[OperationError] = field(default_factory=list[OperationError])
    total: int = 0
    abort_reason: str | None = None

    @property
    def phase(self) -> OperationPhase | None:
        return self.phases[-1] if self.phases else None

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    def enter(self, phase: OperationPhase) -> None:
        self.phases.append(phase)
        log.debug("%s: %s", self.operation, phase)


@dataclass(slots=True)
class _Prepared:
    records: list[Record]
    relations: dict[int, RelationRefs]


class BatchOperationOrchestrator:
    """Batch create/update/upsert/delete for one model on one storage client."""

    def __init__(
        self,
        storage: StorageClient | None,
        *,
        model: ModelInfo,
        capabilities: Capabilities,
        runtime: RuntimeConfig | None = None,
        dialect: SqlDialect | None = None,
        rate_limiter: RateLimiter | None = None,
        classify: ErrorClassifier = classify_error,
    ) -> None:
        self.storage = storage
        self.model = model
        self.capabilities = capabilities
        self.runtime = runtime
        self.dialect = dialect
        self.rate_limiter = rate_limiter
        self.classify = classify

    @classmethod
    def for_model(
        cls,
        storage: StorageClient | None,
        introspector: SchemaIntrospector,
        model_name: str,
        *,
        capabilities: Capabilities,
        runtime: RuntimeConfig | None = None,
        dialect: SqlDialect | None = None,
        rate_limiter: RateLimiter | None = None,
        classify: ErrorClassifier = classify_error,
    ) -> Self:
        return cls(
            storage,
            model=introspector.get_model_info(model_name),
            capabilities=capabilities,
            runtime=runtime,
            dialect=dialect,
            rate_limiter=rate_limiter,
            classify=classify,
        )

    # -- public operations -------------------------------------------------

    async def create_many(
        self,
        items: Sequence[RecordLike],
        options: BatchOptions | None = None,
        *,
        run: BatchRun | None = None,
    ) -> int:
        options = options or BatchOptions()
        run = self._begin("create_many", items, run, options)
        if not items:
            return self._finish(run, 0)

        run.enter(OperationPhase.NORMALIZING)
        prepared = self._normalize(items, options)

        run.enter(OperationPhase.DEDUPLICATING)
        prepared = self._deduplicate(prepared, run)

        run.enter(OperationPhase.PLANNING)
        chunks = chunk(
            prepared.records, optimal_batch_size(OperationKind.CREATE_MANY, self.capabilities)
        )

        run.enter(OperationPhase.EXECUTING)
        skip = options.skip_duplicates
        report = await self._executor(options).execute(
            [self._insert_chunk(batch, skip_duplicates=skip) for batch in chunks]
        )
        self._collect(run, report, "create")
        total = sum(report.succeeded())

        run.enter(OperationPhase.RECONCILING)
        if prepared.relations:
            ids = await self._lookup_ids(prepared.records, options)
            await self._attach(ids, prepared.relations, options)

        log.info("Created %s %s record(s) in %s chunk(s)", total, self.model.name, len(chunks))
        return self._finish(run, total)

    async def update_many_by_key(
        self,
        updates: Sequence[RecordLike],
        options: BatchOptions | None = None,
        *,
        key_field: str = "id",
        run: BatchRun | None = None,
    ) -> int:
        options = options or BatchOptions()
        run = self._begin("update_many_by_key", updates, run, options)
        if not updates:
            return self._finish(run, 0)

        run.enter(OperationPhase.NORMALIZING)
        prepared = self._normalize(updates, options)

        run.enter(OperationPhase.DEDUPLICATING)
        rows = prepare_update_list(prepared.records, self.model, key_field=key_field)
        if len(rows) < len(prepared.records):
            log.warning(
                "Skipping %s update(s) without %r", len(prepared.records) - len(rows), key_field
            )

        run.enter(OperationPhase.PLANNING)
        kind = (
            OperationKind.TRANSACTION
            if self.capabilities.transactional_updates
            else OperationKind.UPDATE_MANY
        )
        chunks = chunk(rows, optimal_batch_size(kind, self.capabilities))

        run.enter(OperationPhase.EXECUTING)
        report = await self._executor(options).execute(
            [self._update_chunk(batch, key_field) for batch in chunks]
        )
        self._collect(run, report, "update")
        total = sum(report.succeeded())

        run.enter(OperationPhase.RECONCILING)
        if prepared.relations:
            ids = [record.get(key_field) for record in prepared.records]
            await self._attach(ids, prepared.relations, options)

        log.info("Updated %s %s record(s) in %s chunk(s)", total, self.model.name, len(chunks))
        return self._finish(run, total)

    update_many_by_id = update_many_by_key

    async def upsert_many(
        self,
        items: Sequence[RecordLike],
        options: BatchOptions | None = None,
        *,
        key_field: str = "id",
        run: BatchRun | None = None,
    ) -> UpsertResult:
        options = options or BatchOptions()
        run = self._begin("upsert_many", items, run, options)
        if not items:
            self._finish(run, 0)
            return UpsertResult(created=0, updated=0, unchanged=0, total=0)
        if not self.model.unique_constraints:
            reason = (
                f"No unique constraints found for model {self.model.name}. Cannot perform upsert"
            )
            run.abort_reason = reason
            run.enter(OperationPhase.ABORTED)
            raise InvalidArgumentError(reason)

        run.enter(OperationPhase.NORMALIZING)
        prepared = self._normalize(items, options)

        run.enter(OperationPhase.DEDUPLICATING)
        prepared = self._deduplicate(prepared, run)

        run.enter(OperationPhase.PLANNING)
        existing = await self._find_existing(prepared.records, options)
        resolver = ConflictResolver(
            self.model.unique_constraints,
            ignore_fields=self.model.partition_keys,
            key_field=key_field,
        )
        classification = resolver.classify(
            prepared.records, index_existing(existing, self.model.unique_constraints)
        )
        update_rows = prepare_update_list(
            (
                {key_field: change.id, **change.changed_fields}
                for change in classification.to_update
            ),
            self.model,
            key_field=key_field,
        )
        create_chunks = chunk(
            classification.to_create,
            optimal_batch_size(OperationKind.CREATE_MANY, self.capabilities),
        )
        update_chunks = chunk(
            update_rows, optimal_batch_size(OperationKind.UPDATE_MANY, self.capabilities)
        )

        run.enter(OperationPhase.EXECUTING)
        operations: list[WorkItem[int]] = [
            self._salvaging(self._insert_chunk(batch), batch, self._create_one)
            for batch in create_chunks
        ]
        operations += [
            self._salvaging(
                self._update_chunk(batch, key_field),
                batch,
                lambda row: self._update_one(row, key_field),
            )
            for batch in update_chunks
        ]
        report = await self._executor(options).execute(operations)
        self._collect(run, report, "upsert")
        results = [result or 0 for result in report.results]
        created = sum(results[: len(create_chunks)])
        updated = sum(results[len(create_chunks) :])

        run.enter(OperationPhase.RECONCILING)
        if prepared.relations:
            ids = await self._lookup_ids(prepared.records, options, key_field=key_field)
            await self._attach(ids, prepared.relations, options)

        result = UpsertResult(
            created=created,
            updated=updated,
            unchanged=classification.unchanged_count,
            total=len(prepared.records),
        )
        log.info(
            "Upserted %s %s record(s): %s created, %s updated, %s unchanged",
            result.total,
            self.model.name,
            result.created,
            result.updated,
            result.unchanged,
        )
        self._finish(run, created + updated)
        return result

    async def delete_by_keys(
        self,
        keys: Sequence[object],
        options: BatchOptions | None = None,
        *,
        key_field: str = "id",
        run: BatchRun | None = None,
    ) -> int:
        options = options or BatchOptions()
        run = self._begin("delete_by_keys", keys, run, options, records=False)
        if not keys:
            return self._finish(run, 0)
        storage = self._storage

        run.enter(OperationPhase.PLANNING)
        chunks = chunk(list(keys), optimal_batch_size(OperationKind.DELETE, self.capabilities))

        def delete_chunk(batch: list[object]) -> WorkItem[int]:
            return lambda: storage.delete_many({key_field: {"in": batch}})

        run.enter(OperationPhase.EXECUTING)
        report = await self._executor(options).execute([delete_chunk(batch) for batch in chunks])
        total = sum(report.succeeded())
        run.enter(OperationPhase.RECONCILING)
        run.errors.extend(report.errors)
        run.total = total
        for error in report.errors:
            log.error(
                "Delete chunk %s of %s failed: %s", error.index, self.model.name, error.error
            )
        if report.errors:
            raise report.errors[0].error

        log.info("Deleted %s %s record(s) in %s chunk(s)", total, self.model.name, len(chunks))
        return self._finish(run, total)

    # -- phases ------------------------------------------------------------

    @property
    def _storage(self) -> StorageClient:
        assert self.storage is not None  # checked while validating
        return self.storage

    def _begin(
        self,
        operation: str,
        items: Sequence[object],
        run: BatchRun | None,
        options: BatchOptions,
        *,
        records: bool = True,
    ) -> BatchRun:
        run = run if run is not None else BatchRun()
        run.operation = operation
        run.enter(OperationPhase.VALIDATING)
        reason: str | None = None
        if self.storage is None:
            reason = "A storage client instance is required"
        elif records and any(not isinstance(item, Mapping) for item in items):
            reason = f"{operation} expects mapping records"
        elif (concurrency := options.concurrency) is not None and (
            isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency <= 0
        ):
            reason = f"concurrency must be a positive integer, got {concurrency!r}"
        elif options.rate_limit is not None and options.rate_limit <= 0:
            reason = f"rate_limit must be a positive number, got {options.rate_limit!r}"
        if reason is not None:
            run.abort_reason = reason
            run.enter(OperationPhase.ABORTED)
            raise InvalidArgumentError(reason)
        return run

    def _finish(self, run: BatchRun, total: int) -> int:
        run.total = total
        run.enter(OperationPhase.DONE)
        return total

    def _normalize(self, items: Sequence[RecordLike], options: BatchOptions) -> _Prepared:
        records = [cast("Record", sanitize_keys(item)) for item in items]
        relations: dict[int, RelationRefs] = {}
        if options.handle_relations and self.model.relations_of(RelationKind.MANY_RELATION):
            extraction = extract_many_to_many(records, self.model.relations)
            records = extraction.cleaned_items
            relations = extraction.relations_by_index
        singles = self.model.relations_of(RelationKind.SINGLE_RELATION)
        if singles:
            records = [
                normalize_to_foreign_key(record, singles, options.key_template)
                for record in records
            ]
        return _Prepared(records=records, relations=relations)

    def _deduplicate(self, prepared: _Prepared, run: BatchRun) -> _Prepared:
        result = deduplicate_by_unique_constraints(
            prepared.records, self.model.unique_constraints
        )
        run.dropped_duplicates = result.dropped
        if result.dropped:
            log.warning(
                "Dropped %s duplicate %s record(s) sharing a unique key",
                result.dropped,
                self.model.name,
            )
        relations = {
            position: prepared.relations[original]
            for position, original in enumerate(result.kept_indexes)
            if original in prepared.relations
        }
        return _Prepared(records=result.records, relations=relations)

    def _parallel(self, options: BatchOptions) -> bool:
        if options.parallel is False:
            return False
        if self.capabilities.recommended_concurrency <= 1:
            return False
        return self.runtime is not None and self.runtime.parallel_enabled

    def _executor(self, options: BatchOptions) -> ConcurrencyExecutor:
        concurrency = options.concurrency
        if concurrency is None:
            concurrency = (
                self.runtime.effective_concurrency
                if self.runtime is not None
                else self.capabilities.recommended_concurrency
            )
        limiter = self.rate_limiter
        if options.rate_limit is not None:
            limiter = RateLimiter(options.rate_limit)
        elif limiter is None and self.runtime is not None:
            limiter = self.runtime.rate_limiter()
        return ConcurrencyExecutor(
            concurrency, rate_limiter=limiter, parallel=self._parallel(options)
        )

    def _collect(self, run: BatchRun, report: ExecutionReport[int], label: str) -> None:
        run.errors.extend(report.errors)
        for error in report.errors:
            log.error(
                "%s chunk %s of %s failed: %s", label, error.index, self.model.name, error.error
            )
        if report.errors and len(report.errors) == len(report.results):
            raise report.errors[0].error

    # -- storage work items ------------------------------------------------

    def _insert_chunk(
        self, batch: list[Record], *, skip_duplicates: bool = False
    ) -> WorkItem[int]:
        storage = self._storage
        supported = self.capabilities.supports_skip_duplicates

        async def insert() -> int:
            skip = skip_duplicates and supported
            try:
                return await storage.create_many(batch, skip_duplicates=skip)
            except Exception as exc:
                if skip or not is_unique_constraint_error(exc, classify=self.classify):
                    raise
                if supported:
                    log.warning(
                        "Unique constraint violation in a batch of %s %s record(s); "
                        "retrying with skip_duplicates",
                        len(batch),
                        self.model.name,
                    )
                    return await storage.create_many(batch, skip_duplicates=True)
                if not skip_duplicates:
                    raise
                return await self._create_individually(batch)

        return insert

    async def _create_individually(self, batch: list[Record]) -> int:
        created = 0
        for record in batch:
            try:
                await self._storage.create(record)
            except Exception as exc:
                if not is_unique_constraint_error(exc, classify=self.classify):
                    raise
                continue
            created += 1
        return created

    def _update_chunk(self, batch: list[Record], key_field: str) -> WorkItem[int]:
        storage = self._storage

        async def transactional() -> int:
            updates = [(row[key_field], _without(row, key_field)) for row in batch]
            try:
                results = await storage.run_transaction(
                    updates, max_wait=TRANSACTION_MAX_WAIT, timeout=TRANSACTION_TIMEOUT
                )
            except Exception as exc:  # noqa: BLE001
                log.warning(
                    "Transactional update of %s %s record(s) failed, updating one by one: %s",
                    len(batch),
                    self.model.name,
                    exc,
                )
                return await self._salvage(batch, lambda row: self._update_one(row, key_field))
            return len(results)

        async def case_statement() -> int:
            assert self.dialect is not None
            statement = build_case_update(batch, self.model, self.dialect, key_field=key_field)
            if statement is None:
                return 0
            return await storage.execute_raw(statement)

        async def one_by_one() -> int:
            return await self._salvage(batch, lambda row: self._update_one(row, key_field))

        if self.capabilities.transactional_updates:
            return transactional
        if self.dialect is None:
            return one_by_one
        return case_statement

    async def _create_one(self, record: Record) -> object:
        return await self._storage.create(record)

    async def _update_one(self, row: Record, key_field: str) -> object:
        return await self._storage.update(row[key_field], _without(row, key_field))

    def _salvaging(
        self,
        bulk: WorkItem[int],
        batch: list[Record],
        single: Callable[[Record], Awaitable[object]],
    ) -> WorkItem[int]:
        async def run() -> int:
            try:
                return await bulk()
            except Exception as exc:  # noqa: BLE001
                log.warning(
                    "Bulk write of %s %s record(s) failed, falling back to single writes: %s",
                    len(batch),
                    self.model.name,
                    exc,
                )
                return await self._salvage(batch, single)

        return run

    async def _salvage(
        self, batch: list[Record], single: Callable[[Record], Awaitable[object]]
    ) -> int:
        """Write ``batch`` record by record; raise only if nothing succeeded."""

        succeeded = 0
        first_error: Exception | None = None
        for record in batch:
            try:
                await single(record)
            except Exception as exc:  # noqa: BLE001
                log.debug("Single write failed for %s: %s", self.model.name, exc)
                first_error = first_error or exc
                continue
            succeeded += 1
        if succeeded == 0 and first_error is not None:
            raise first_error
        return succeeded

    # -- lookups and relations ---------------------------------------------

    def _lookup_condition(self, record: RecordLike) -> dict[str, object] | None:
        for constraint in self.model.unique_constraints:
            if constraint_key(record, constraint) is not None:
                return {name: record[name] for name in constraint}
        return None

    async def _find_existing(
        self, records: Iterable[RecordLike], options: BatchOptions
    ) -> list[Record]:
        """Fetch rows matching any record's unique key, sharding large lookups."""

        storage = self._storage
        conditions = [
            condition
            for record in records
            if (condition := self._lookup_condition(record)) is not None
        ]
        if not conditions:
            return []
        fields_per_condition = max(map(len, self.model.unique_constraints))
        if is_or_query_safe(conditions, self.capabilities, fields_per_condition):
            return await storage.find_many({"OR": conditions})

        shards = shard_or_conditions(conditions, fields_per_condition, self.capabilities)
        log.debug("Splitting lookup of %s conditions into %s shards", len(conditions), len(shards))

        def find(shard: list[dict[str, object]]) -> WorkItem[list[Record]]:
            return lambda: storage.find_many({"OR": shard})

        report = await self._executor(options).execute([find(shard) for shard in shards])
        if report.errors:
            for error in report.errors:
                log.error(
                    "Lookup shard %s of %s failed: %s", error.index, self.model.name, error.error
                )
            raise report.errors[0].error
        return _unique_rows(row for rows in report.succeeded() for row in rows)

    async def _lookup_ids(
        self, records: Sequence[RecordLike], options: BatchOptions, *, key_field: str = "id"
    ) -> list[object | None]:
        if not self.model.unique_constraints:
            log.warning(
                "Cannot resolve ids of %s records without unique constraints", self.model.name
            )
            return [None] * len(records)
        existing = index_existing(
            await self._find_existing(records, options), self.model.unique_constraints
        )
        resolver = ConflictResolver(self.model.unique_constraints, key_field=key_field)
        ids: list[object | None] = []
        for record in records:
            match = resolver.match(record, existing)
            ids.append(match.get(key_field) if match is not None else None)
        return ids

    async def _attach(
        self,
        entity_ids: Sequence[object | None],
        relations: Mapping[int, RelationRefs],
        options: BatchOptions,
    ) -> None:
        storage = self._storage

        async def attach(entity_id: object, refs: RelationRefs) -> object:
            return await storage.update(entity_id, merge_attach_payload(refs))

        result = await apply_many_to_many(
            entity_ids, relations, attach, executor=self._executor(options)
        )
        log.info(
            "Attached %s relation(s) on %s %s record(s), %s failed",
            result.links,
            result.success,
            self.model.name,
            result.failed,
        )


def _without(row: RecordLike, key_field: str) -> Record:
    return {name: value for name, value in row.items() if name != key_field}


def _unique_rows(rows: Iterable[Record]) -> list[Record]:
    seen: set[object] = set()
    unique: list[Record] = []
    for row in rows:
        row_id = row.get("id")
        if row_id is not None:
            if row_id in seen:
                continue
            seen.add(row_id)
        unique.append(row)
    return unique
