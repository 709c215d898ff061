"""Async SQLAlchemy implementation of the storage port for a single table."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from itertools import groupby
from logging import getLogger
from typing import TYPE_CHECKING

from sqlalchemy import and_, delete, insert, or_, select, text, true, update
from sqlalchemy.dialects import postgresql

from entitybatch.domain.errors import InvalidArgumentError, RecordNotFoundError

from .introspection import capabilities_for_engine

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import ColumnElement, Insert, Table
    from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

    from entitybatch.domain.types import Capabilities, Record, RecordLike

log = getLogger(__name__)


@dataclass(slots=True, frozen=True)
class AssociationTable:
    """Join table backing a many relation: ``source_column`` points at the owner."""

    table: Table
    source_column: str
    target_column: str


class SqlAlchemyStorageClient:
    """Storage client for one table on an :class:`AsyncEngine`.

    Many-relation ``{"connect": [...]}`` payloads passed to :meth:`update` are
    written to the configured association tables; existing links are kept.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        table: Table,
        *,
        key_field: str = "id",
        associations: Mapping[str, AssociationTable] | None = None,
    ) -> None:
        self.engine = engine
        self.table = table
        self.key_field = key_field
        self.associations = dict(associations or {})

    def capabilities(self) -> Capabilities:
        return capabilities_for_engine(self.engine)

    async def create(self, data: RecordLike) -> Record:
        async with self.engine.begin() as conn:
            result = await conn.execute(insert(self.table).values(**dict(data)))
            primary_key = result.inserted_primary_key
        created = dict(data)
        if primary_key and created.get(self.key_field) is None:
            created[self.key_field] = primary_key[0]
        return created

    async def create_many(
        self, records: Sequence[RecordLike], *, skip_duplicates: bool = False
    ) -> int:
        if not records:
            return 0
        groups = _group_by_columns(records)
        async with self.engine.begin() as conn:
            if not skip_duplicates:
                for rows in groups:
                    await conn.execute(insert(self.table), rows)
                return len(records)
            return sum([await self._insert_ignoring(conn, rows) for rows in groups])

    async def _insert_ignoring(self, conn: AsyncConnection, rows: list[Record]) -> int:
        stmt = self._insert(self.table, skip_duplicates=True)
        match self.engine.dialect.name:
            case "sqlite":
                before = await conn.scalar(text("SELECT total_changes()"))
                await conn.execute(stmt, rows)
                after = await conn.scalar(text("SELECT total_changes()"))
                return int(after or 0) - int(before or 0)
            case "postgresql":
                key_column = self.table.c[self.key_field]
                result = await conn.execute(stmt.returning(key_column), rows)
                return len(result.all())
            case _:
                result = await conn.execute(stmt, rows)
                return result.rowcount

    async def update(self, key: object, patch: RecordLike) -> Record:
        async with self.engine.begin() as conn:
            return await self._update(conn, key, patch)

    async def delete_many(self, where: Mapping[str, object]) -> int:
        async with self.engine.begin() as conn:
            result = await conn.execute(delete(self.table).where(self._clause(where)))
            return result.rowcount

    async def find_many(self, where: Mapping[str, object]) -> list[Record]:
        async with self.engine.connect() as conn:
            result = await conn.execute(select(self.table).where(self._clause(where)))
            return [dict(row._mapping) for row in result]  # noqa: SLF001

    async def execute_raw(self, statement: str) -> int:
        async with self.engine.begin() as conn:
            result = await conn.exec_driver_sql(statement)
            return result.rowcount

    async def run_transaction(
        self,
        updates: Sequence[tuple[object, RecordLike]],
        *,
        max_wait: float,
        timeout: float,
    ) -> list[Record]:
        """Apply ``updates`` atomically.

        ``max_wait`` bounds the wait for a connection, ``timeout`` the
        transaction itself.
        """

        async with asyncio.timeout(max_wait):
            conn = await self.engine.connect()
        try:
            async with asyncio.timeout(timeout), conn.begin():
                return [await self._update(conn, key, patch) for key, patch in updates]
        finally:
            await conn.close()

    async def _update(self, conn: AsyncConnection, key: object, patch: RecordLike) -> Record:
        values: dict[str, object] = {}
        links: dict[str, list[object]] = {}
        for name, value in patch.items():
            if name in self.associations:
                links[name] = _connect_ids(name, value)
            else:
                values[name] = value

        key_column = self.table.c[self.key_field]
        if values:
            await conn.execute(update(self.table).where(key_column == key).values(**values))
        row = (await conn.execute(select(self.table).where(key_column == key))).first()
        if row is None:
            raise RecordNotFoundError(f"Record to update not found: {key!r}")
        for name, ids in links.items():
            await self._link(conn, self.associations[name], key, ids)
        return dict(row._mapping)  # noqa: SLF001

    async def _link(
        self, conn: AsyncConnection, association: AssociationTable, key: object, ids: list[object]
    ) -> None:
        if not ids:
            return
        stmt = self._insert(association.table, skip_duplicates=True)
        await conn.execute(
            stmt,
            [{association.source_column: key, association.target_column: ref} for ref in ids],
        )
        log.debug("Linked %s %s row(s) to %s", len(ids), association.table.name, key)

    def _insert(self, table: Table, *, skip_duplicates: bool) -> Insert:
        if not skip_duplicates:
            return insert(table)
        match self.engine.dialect.name:
            case "sqlite":
                return insert(table).prefix_with("OR IGNORE")
            case "postgresql":
                return postgresql.insert(table).on_conflict_do_nothing()
            case "mysql" | "mariadb":
                return insert(table).prefix_with("IGNORE")
            case name:
                raise InvalidArgumentError(f"skip_duplicates is not supported on {name}")

    def _clause(self, where: Mapping[str, object]) -> ColumnElement[bool]:
        clauses: list[ColumnElement[bool]] = []
        for name, value in where.items():
            if name == "OR":
                clauses.append(or_(*(self._clause(sub) for sub in _filters(value))))
            elif name == "AND":
                clauses.append(and_(*(self._clause(sub) for sub in _filters(value))))
            elif isinstance(value, Mapping) and "in" in value:
                clauses.append(self.table.c[name].in_(list(value["in"])))
            elif value is None:
                clauses.append(self.table.c[name].is_(None))
            else:
                clauses.append(self.table.c[name] == value)
        if not clauses:
            return true()
        return and_(*clauses)


def _filters(value: object) -> list[Mapping[str, object]]:
    if not isinstance(value, list | tuple):
        raise InvalidArgumentError("OR/AND filters take a list of conditions")
    return list(value)


def _connect_ids(name: str, value: object) -> list[object]:
    if not isinstance(value, Mapping) or "connect" not in value:
        raise InvalidArgumentError(f"Relation {name!r} expects a connect payload")
    refs = value["connect"]
    if isinstance(refs, Mapping):
        refs = [refs]
    ids: list[object] = []
    for ref in refs:
        ref_id = ref.get("id") if isinstance(ref, Mapping) else ref
        if ref_id is not None:
            ids.append(ref_id)
    return ids


def _group_by_columns(records: Sequence[RecordLike]) -> list[list[Record]]:
    """Split ``records`` into consecutive runs sharing one column set.

    An executemany compiles against the columns of its first row.
    """

    return [
        [dict(record) for record in run] for _, run in groupby(records, key=frozenset)
    ]
