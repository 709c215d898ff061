from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

import pytest

from entitybatch.adapters.dialects import dialect_for
from entitybatch.config import RuntimeConfig
from entitybatch.domain.capabilities import capabilities_for
from entitybatch.domain.errors import InvalidArgumentError
from entitybatch.domain.orchestrator import BatchOperationOrchestrator, BatchRun, OperationPhase
from entitybatch.domain.types import (
    BatchOptions,
    Capabilities,
    ModelInfo,
    Provider,
    UpsertResult,
)
from tests.support.fake_storage import InMemoryStorage

if TYPE_CHECKING:
    from collections.abc import Callable

    type Factory = Callable[..., BatchOperationOrchestrator]

SQLITE = dialect_for(Provider.SQLITE)


@pytest.fixture
def make_orchestrator(
    storage: InMemoryStorage, user_model: ModelInfo, sqlite_capabilities: Capabilities
) -> Factory:
    def factory(**overrides: Any) -> BatchOperationOrchestrator:
        target = overrides.pop("storage", storage)
        kwargs: dict[str, Any] = {"model": user_model, "capabilities": sqlite_capabilities}
        kwargs.update(overrides)
        return BatchOperationOrchestrator(target, **kwargs)

    return factory


def _users(count: int, start: int = 0) -> list[dict[str, object]]:
    return [{"email": f"user{i}@example.com", "age": 20} for i in range(start, start + count)]


# -- create_many ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_many_retries_with_skip_duplicates_on_collision(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed({"id": 1, "email": "a@x"})
    orchestrator = make_orchestrator(model=ModelInfo(name="User", db_table_name="users"))

    created = await orchestrator.create_many([{"email": "a@x"}, {"email": "b@x"}])

    assert created == 1
    assert storage.called("create_many") == [(2, False), (2, True)]
    assert sorted(row["email"] for row in storage.rows.values()) == ["a@x", "b@x"]


@pytest.mark.asyncio
async def test_create_many_collapses_duplicates_within_the_batch(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    run = BatchRun()
    items = [{"email": "a@x", "age": 1}, {"email": "b@x"}, {"email": "a@x", "age": 2}]

    created = await make_orchestrator().create_many(items, run=run)

    assert created == 2
    assert run.dropped_duplicates == 1
    assert run.phases == [
        OperationPhase.VALIDATING,
        OperationPhase.NORMALIZING,
        OperationPhase.DEDUPLICATING,
        OperationPhase.PLANNING,
        OperationPhase.EXECUTING,
        OperationPhase.RECONCILING,
        OperationPhase.DONE,
    ]
    assert [row["age"] for row in storage.rows.values() if row["email"] == "a@x"] == [1]


@pytest.mark.asyncio
async def test_create_many_splits_into_provider_sized_chunks(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    run = BatchRun()

    created = await make_orchestrator().create_many(_users(1_200), run=run)

    assert created == 1_200
    assert run.total == 1_200
    assert storage.called("create_many") == [(500, False), (500, False), (200, False)]


@pytest.mark.asyncio
async def test_create_many_reports_partial_failure(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.fail_next("create_many", RuntimeError("disk I/O error"))
    run = BatchRun()

    created = await make_orchestrator().create_many(_users(600), run=run)

    assert created == 100
    assert run.partial
    assert [error.index for error in run.errors] == [0]
    assert run.phase is OperationPhase.DONE


@pytest.mark.asyncio
async def test_create_many_raises_when_every_chunk_fails(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.fail_next("create_many", RuntimeError("disk I/O error"))

    with pytest.raises(RuntimeError, match="disk I/O error"):
        await make_orchestrator().create_many(_users(3))


@pytest.mark.asyncio
async def test_create_many_inserts_one_by_one_without_native_skip(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed({"id": 1, "email": "a@x"})
    orchestrator = make_orchestrator(capabilities=capabilities_for(Provider.SQLSERVER))

    created = await orchestrator.create_many(
        [{"email": "a@x"}, {"email": "b@x"}], BatchOptions(skip_duplicates=True)
    )

    assert created == 1
    assert storage.called("create_many") == [(2, False)]
    assert len(storage.called("create")) == 2


@pytest.mark.asyncio
async def test_create_many_attaches_many_relations_after_insert(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    items = [
        {"email": "a@x", "aliases": ["ada"], "tags": [{"id": 1}, {"id": 2}]},
        {"email": "b@x", "tags": {"connect": [{"id": 3}]}},
        {"email": "c@x", "tags": []},
    ]

    created = await make_orchestrator().create_many(items)

    assert created == 3
    assert storage.links == {1: {"tags": [1, 2]}, 2: {"tags": [3]}}
    assert storage.rows[1] == {"id": 1, "email": "a@x", "aliases": ["ada"]}
    assert len(storage.called("update")) == 2


@pytest.mark.asyncio
async def test_create_many_keeps_relation_fields_when_asked(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    await make_orchestrator().create_many(
        [{"email": "a@x", "tags": [1]}], BatchOptions(handle_relations=False)
    )

    assert storage.rows[1]["tags"] == [1]
    assert storage.links == {}


@pytest.mark.asyncio
async def test_create_many_rewrites_single_relations_to_foreign_keys(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    await make_orchestrator().create_many(
        [{"email": "a@x", "author": {"id": 7}}, {"_email": "b@x", "author": {"id": 8}}]
    )
    await make_orchestrator().create_many(
        [{"email": "c@x", "author": {"id": 9}}],
        BatchOptions(key_template=lambda name: f"{name}_id"),
    )

    rows = sorted(storage.rows.values(), key=lambda row: str(row["email"]))
    assert rows == [
        {"id": 1, "email": "a@x", "authorId": 7},
        {"id": 2, "email": "b@x", "authorId": 8},
        {"id": 3, "email": "c@x", "author_id": 9},
    ]


# -- upsert_many ---------------------------------------------------------------


@pytest.mark.asyncio
async def test_upsert_creates_new_and_skips_unchanged(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed({"id": 1, "email": "a@x", "age": 25})
    run = BatchRun()
    items = [
        {"email": "a@x", "age": 25},
        {"email": "b@x", "age": 30},
        {"email": "b@x", "age": 31},
    ]

    result = await make_orchestrator().upsert_many(items, run=run)

    assert result == UpsertResult(created=1, updated=0, unchanged=1, total=2)
    assert run.dropped_duplicates == 1
    assert [row["age"] for row in storage.rows.values() if row["email"] == "b@x"] == [30]


@pytest.mark.asyncio
async def test_upsert_updates_changed_rows_with_one_statement(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed({"id": 1, "email": "a@x", "age": 25}, {"id": 2, "email": "b@x", "age": 40})

    result = await make_orchestrator(dialect=SQLITE).upsert_many(
        [{"email": "a@x", "age": 30}, {"email": "b@x", "age": 40}]
    )

    assert result == UpsertResult(created=0, updated=1, unchanged=1, total=2)
    assert storage.raw_statements == [
        'UPDATE "users" SET "age" = CASE "id" WHEN 1 THEN 30 ELSE "age" END WHERE "id" IN (1)'
    ]


@pytest.mark.asyncio
async def test_upsert_updates_one_by_one_without_dialect(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed({"id": 1, "email": "a@x", "age": 25})

    result = await make_orchestrator().upsert_many([{"email": "a@x", "age": 30}])

    assert result.updated == 1
    assert storage.rows[1]["age"] == 30
    assert storage.called("update") == [(1, {"age": 30})]


@pytest.mark.asyncio
async def test_upsert_falls_back_to_single_creates(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.fail_next("create_many", RuntimeError("disk I/O error"))

    result = await make_orchestrator().upsert_many(_users(2))

    assert result.created == 2
    assert len(storage.called("create")) == 2


@pytest.mark.asyncio
async def test_upsert_requires_unique_constraints(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    run = BatchRun()
    orchestrator = make_orchestrator(model=ModelInfo(name="Tag"))

    with pytest.raises(InvalidArgumentError, match="No unique constraints found for model Tag"):
        await orchestrator.upsert_many([{"name": "x"}], run=run)

    assert run.phase is OperationPhase.ABORTED
    assert storage.calls == []


@pytest.mark.asyncio
async def test_upsert_of_nothing_skips_the_constraint_check(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    run = BatchRun()
    orchestrator = make_orchestrator(model=ModelInfo(name="Tag"))

    assert await orchestrator.upsert_many([], run=run) == UpsertResult(0, 0, 0, 0)
    assert run.phase is OperationPhase.DONE
    assert storage.calls == []


@pytest.mark.asyncio
async def test_upsert_shards_large_lookups(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    items = _users(5)
    storage.seed(*items)
    capabilities = Capabilities(
        provider=Provider.SQLITE, supports_skip_duplicates=True, max_placeholders=2
    )

    result = await make_orchestrator(capabilities=capabilities).upsert_many(items)

    assert result == UpsertResult(created=0, updated=0, unchanged=5, total=5)
    assert [len(where["OR"]) for where in storage.called("find_many")] == [2, 2, 1]


@pytest.mark.asyncio
async def test_upsert_propagates_failed_lookup(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.fail_next("find_many", RuntimeError("no such table: users"))

    with pytest.raises(RuntimeError, match="no such table"):
        await make_orchestrator().upsert_many(_users(2))

    assert storage.called("create_many") == []


# -- update_many_by_key --------------------------------------------------------


@pytest.mark.asyncio
async def test_update_many_uses_case_statement_and_skips_keyless_rows(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    updates = [{"id": 1, "age": 30}, {"age": 99}, {"id": 2, "name": "Bo"}]

    updated = await make_orchestrator(dialect=SQLITE).update_many_by_key(updates)

    assert updated == 2
    assert storage.raw_statements == [
        'UPDATE "users" SET '
        '"age" = CASE "id" WHEN 1 THEN 30 ELSE "age" END, '
        '"name" = CASE "id" WHEN 2 THEN \'Bo\' ELSE "name" END '
        'WHERE "id" IN (1, 2)'
    ]


@pytest.mark.asyncio
async def test_update_many_in_a_transaction_on_transactional_stores(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed({"id": 1, "email": "a@x", "age": 1}, {"id": 2, "email": "b@x", "age": 2})
    orchestrator = make_orchestrator(capabilities=capabilities_for(Provider.MONGODB))

    updated = await orchestrator.update_many_by_key([{"id": 1, "age": 10}, {"id": 2, "age": 20}])

    assert updated == 2
    assert storage.called("run_transaction") == [(2, 5.0, 10.0)]
    assert [row["age"] for row in storage.rows.values()] == [10, 20]


@pytest.mark.asyncio
async def test_failed_transaction_falls_back_to_single_updates(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed({"id": 1, "email": "a@x", "age": 1}, {"id": 2, "email": "b@x", "age": 2})
    storage.fail_next("run_transaction", RuntimeError("Transaction API error"))
    orchestrator = make_orchestrator(capabilities=capabilities_for(Provider.MONGODB))

    updated = await orchestrator.update_many_by_id([{"id": 1, "age": 10}, {"id": 2, "age": 20}])

    assert updated == 2
    assert len(storage.called("update")) == 2
    assert [row["age"] for row in storage.rows.values()] == [10, 20]


@pytest.mark.asyncio
async def test_single_updates_tolerate_missing_rows(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed({"id": 1, "email": "a@x", "age": 1})

    updated = await make_orchestrator().update_many_by_key(
        [{"id": 1, "age": 10}, {"id": 3, "age": 30}]
    )

    assert updated == 1
    assert storage.rows[1]["age"] == 10


@pytest.mark.asyncio
async def test_update_many_attaches_relations_by_key(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed({"id": 1, "email": "a@x", "age": 1})

    await make_orchestrator().update_many_by_key([{"id": 1, "age": 2, "tags": [{"id": 5}]}])

    assert storage.rows[1]["age"] == 2
    assert storage.links == {1: {"tags": [5]}}


# -- delete_by_keys ------------------------------------------------------------


@pytest.mark.asyncio
async def test_delete_by_keys_in_chunks(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed(*_users(1_200))

    deleted = await make_orchestrator().delete_by_keys(list(range(1, 1_201)))

    assert deleted == 1_200
    assert len(storage.called("delete_many")) == 3
    assert storage.rows == {}


@pytest.mark.asyncio
async def test_delete_attempts_every_chunk_before_raising(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    storage.seed(*_users(1_200))
    storage.fail_next("delete_many", RuntimeError("database is locked"))
    run = BatchRun()

    with pytest.raises(RuntimeError, match="database is locked"):
        await make_orchestrator().delete_by_keys(list(range(1, 1_201)), run=run)

    assert len(storage.called("delete_many")) == 3
    assert run.total == 700
    assert len(storage.rows) == 500


@pytest.mark.asyncio
async def test_rate_limit_option_throttles_chunks(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    started = time.perf_counter()

    await make_orchestrator().delete_by_keys(list(range(1_500)), BatchOptions(rate_limit=20))

    # Three chunks, two of them wait 1/20s.
    assert time.perf_counter() - started >= 0.08


# -- validation and wiring -----------------------------------------------------


@pytest.mark.asyncio
async def test_missing_storage_aborts(make_orchestrator: Factory) -> None:
    run = BatchRun()

    with pytest.raises(InvalidArgumentError, match="storage client"):
        await make_orchestrator(storage=None).create_many([{"email": "a@x"}], run=run)

    assert run.phase is OperationPhase.ABORTED
    assert run.abort_reason == "A storage client instance is required"


@pytest.mark.asyncio
async def test_non_mapping_records_abort(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    with pytest.raises(InvalidArgumentError, match="expects mapping records"):
        await make_orchestrator().create_many(["a@x"])  # type: ignore[list-item]

    assert storage.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("options", "message"),
    [
        (BatchOptions(concurrency=0), "concurrency must be a positive integer"),
        (BatchOptions(concurrency=True), "concurrency must be a positive integer"),
        (BatchOptions(rate_limit=0), "rate_limit must be a positive number"),
    ],
)
async def test_bad_options_abort_before_any_lookup(
    make_orchestrator: Factory, storage: InMemoryStorage, options: BatchOptions, message: str
) -> None:
    run = BatchRun()

    with pytest.raises(InvalidArgumentError, match=message):
        await make_orchestrator().upsert_many([{"email": "a@x"}], options, run=run)

    assert run.phase is OperationPhase.ABORTED
    assert OperationPhase.EXECUTING not in run.phases
    assert storage.calls == []


@pytest.mark.asyncio
async def test_empty_input_touches_nothing(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    orchestrator = make_orchestrator()

    assert await orchestrator.create_many([]) == 0
    assert await orchestrator.update_many_by_key([]) == 0
    assert await orchestrator.delete_by_keys([]) == 0
    assert await orchestrator.upsert_many([]) == UpsertResult(0, 0, 0, 0)
    assert storage.calls == []


@pytest.mark.asyncio
async def test_parallel_runtime_processes_every_chunk(
    make_orchestrator: Factory, storage: InMemoryStorage
) -> None:
    orchestrator = make_orchestrator(
        capabilities=capabilities_for(Provider.POSTGRESQL),
        runtime=RuntimeConfig(pool_size=4),
    )

    created = await orchestrator.create_many(_users(3_100))

    assert created == 3_100
    assert sorted(args[0] for args in storage.called("create_many")) == [100, 1_500, 1_500]


def test_for_model_resolves_model_through_introspector(
    storage: InMemoryStorage, user_model: ModelInfo, sqlite_capabilities: Capabilities
) -> None:
    class Introspector:
        def get_model_info(self, model_name: str) -> ModelInfo:
            assert model_name == "User"
            return user_model

    orchestrator = BatchOperationOrchestrator.for_model(
        storage, Introspector(), "User", capabilities=sqlite_capabilities
    )

    assert orchestrator.model is user_model
    assert orchestrator.storage is storage
