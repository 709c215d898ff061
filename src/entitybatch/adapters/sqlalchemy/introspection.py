"""Schema and capability introspection for SQLAlchemy tables and engines."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import ARRAY, JSON, UniqueConstraint

from entitybatch.domain.capabilities import capabilities_for
from entitybatch.domain.errors import InvalidArgumentError
from entitybatch.domain.types import FieldInfo, FieldKind, ModelInfo, Provider

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from sqlalchemy import Column, MetaData, Table
    from sqlalchemy.engine import Engine
    from sqlalchemy.ext.asyncio import AsyncEngine

    from entitybatch.domain.types import Capabilities, RelationDescriptor


_PROVIDER_BY_DIALECT: dict[str, Provider] = {
    "sqlite": Provider.SQLITE,
    "postgresql": Provider.POSTGRESQL,
    "mysql": Provider.MYSQL,
    "mariadb": Provider.MYSQL,
    "mssql": Provider.SQLSERVER,
}


def capabilities_for_engine(engine: Engine | AsyncEngine) -> Capabilities:
    name = engine.dialect.name
    return capabilities_for(_PROVIDER_BY_DIALECT.get(name, name))


def _field_info(column: Column[object]) -> FieldInfo:
    kind = FieldKind.JSON if isinstance(column.type, JSON) else FieldKind.SCALAR
    return FieldInfo(
        name=column.key,
        kind=kind,
        is_list=isinstance(column.type, ARRAY),
        type_name=type(column.type).__name__,
        db_name=column.name,
    )


def unique_constraints_of(table: Table) -> tuple[tuple[str, ...], ...]:
    """Unique column sets of ``table``, primary key excluded.

    SQLAlchemy keeps constraints in a set, so they are ordered by the position
    of their first column in the table.
    """

    positions = {column.key: index for index, column in enumerate(table.columns)}
    found: list[tuple[str, ...]] = []
    for constraint in table.constraints:
        if isinstance(constraint, UniqueConstraint):
            found.append(tuple(column.key for column in constraint.columns))
    for column in table.columns:
        if column.unique and (column.key,) not in found:
            found.append((column.key,))
    unique = dict.fromkeys(sorted(found, key=lambda names: [positions[n] for n in names]))
    return tuple(unique)


class SqlAlchemySchemaIntrospector:
    """Describe tables of a :class:`MetaData` as :class:`ModelInfo`.

    Relations cannot be inferred from a single table, so they are declared per
    table name.
    """

    def __init__(
        self,
        metadata: MetaData,
        *,
        relations: Mapping[str, Sequence[RelationDescriptor]] | None = None,
        partition_keys: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        self.metadata = metadata
        self.relations = {name: tuple(rels) for name, rels in (relations or {}).items()}
        self.partition_keys = {
            name: frozenset(keys) for name, keys in (partition_keys or {}).items()
        }

    def get_model_info(self, model_name: str) -> ModelInfo:
        table = self.metadata.tables.get(model_name)
        if table is None:
            raise InvalidArgumentError(f"Unknown model {model_name!r}")
        return ModelInfo(
            name=model_name,
            fields=tuple(_field_info(column) for column in table.columns),
            unique_constraints=unique_constraints_of(table),
            db_table_name=table.name,
            relations=self.relations.get(model_name, ()),
            partition_keys=self.partition_keys.get(model_name, frozenset()),
        )


if TYPE_CHECKING:
    from entitybatch.domain.ports import SchemaIntrospector

    _introspector_check: SchemaIntrospector = SqlAlchemySchemaIntrospector(MetaData())
