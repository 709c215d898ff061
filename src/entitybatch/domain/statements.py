"""Update payload preparation and multi-row ``CASE`` update statements."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING

from .errors import InvalidArgumentError

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from .ports import SqlDialect
    from .types import ModelInfo, Record, RecordLike

_NESTED_WRITE_KEYS = frozenset(
    {"connect", "create", "connectOrCreate", "disconnect", "set", "update", "upsert", "delete"}
)


def _is_nested_write(value: object) -> bool:
    return isinstance(value, Mapping) and bool(_NESTED_WRITE_KEYS & set(value))


def prune_update_payload(payload: RecordLike, model: ModelInfo | None = None) -> Record:
    """Drop fields that must not be written by a bulk update.

    ``createdAt`` is never rewritten; ``updatedAt`` survives only as a scalar;
    empty mappings and nested-write blocks are removed. Mapping values on JSON
    fields are kept.
    """

    pruned: Record = {}
    for name, value in payload.items():
        if name == "createdAt":
            continue
        if name == "updatedAt" and (value is None or isinstance(value, Mapping)):
            continue
        is_json = model is not None and model.is_json_field(name)
        if isinstance(value, Mapping) and not is_json and (not value or _is_nested_write(value)):
            continue
        pruned[name] = value
    return pruned


def prepare_update_list(
    updates: Iterable[RecordLike],
    model: ModelInfo | None = None,
    *,
    key_field: str = "id",
) -> list[Record]:
    """Keep updates that carry a key, stripped of nested relation objects."""

    prepared: list[Record] = []
    for update in updates:
        if update.get(key_field) is None:
            continue
        row: Record = {}
        for name, value in prune_update_payload(update, model).items():
            if isinstance(value, Mapping) and not (model and model.is_json_field(name)):
                continue
            row[name] = value
        prepared.append(row)
    return prepared


def _render_key(value: object, dialect: SqlDialect) -> str:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return dialect.escape_value(value)


def build_case_update(
    rows: Sequence[RecordLike],
    model: ModelInfo,
    dialect: SqlDialect,
    *,
    key_field: str = "id",
) -> str | None:
    """Render one statement updating every row in ``rows`` by its key.

    Each column becomes ``col = CASE key WHEN k1 THEN v1 ... ELSE col END`` so
    rows keep their own values; rows that do not mention a column keep the
    stored value. Returns ``None`` when nothing would be updated.
    """

    if not rows:
        return None
    columns: list[str] = []
    for row in rows:
        if row.get(key_field) is None:
            raise InvalidArgumentError(f"Every row of a bulk update needs {key_field!r}")
        for name in row:
            if name != key_field and name not in columns:
                columns.append(name)
    if not columns:
        return None

    key_info = model.field_info(key_field)
    key_column = dialect.quote_identifier(key_info.column if key_info else key_field)

    assignments: list[str] = []
    for name in columns:
        info = model.field_info(name)
        column = dialect.quote_identifier(info.column if info else name)
        whens = " ".join(
            f"WHEN {_render_key(row[key_field], dialect)} "
            f"THEN {_render_value(row[name], name, model, dialect)}"
            for row in rows
            if name in row
        )
        assignments.append(f"{column} = CASE {key_column} {whens} ELSE {column} END")

    keys = ", ".join(_render_key(row[key_field], dialect) for row in rows)
    table = dialect.quote_identifier(model.table)
    return f"UPDATE {table} SET {', '.join(assignments)} WHERE {key_column} IN ({keys})"


def _render_value(value: object, name: str, model: ModelInfo, dialect: SqlDialect) -> str:
    if value is not None and model.is_json_field(name):
        return dialect.escape_json(value)
    return dialect.escape_value(value)
