"""Change detection and create/update/unchanged classification for upserts."""

from __future__ import annotations

import json
from collections.abc import Hashable, Mapping
from typing import TYPE_CHECKING, Final, cast

from .types import ALWAYS_IGNORED_FIELDS, ChangeSet, Classification

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from .types import Record, RecordLike, UniqueConstraint


type ConstraintKey = tuple[Hashable, ...]


class _Absent:
    __slots__ = ()

    def __repr__(self) -> str:
        return "ABSENT"


ABSENT: Final = _Absent()


def normalize_value(value: object) -> object:
    """Collapse null-like values to :data:`ABSENT` and trim strings."""

    if value is None:
        return ABSENT
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed if trimmed else ABSENT
    return value


def canonical(value: object) -> str:
    return json.dumps(value, sort_keys=True, default=str, separators=(",", ":"))


def values_equal(left: object, right: object) -> bool:
    left = normalize_value(left)
    right = normalize_value(right)
    if left is ABSENT or right is ABSENT:
        return left is right
    if isinstance(left, Mapping | list | tuple) or isinstance(right, Mapping | list | tuple):
        return canonical(left) == canonical(right)
    return left == right


def changed_fields(
    new: RecordLike,
    existing: RecordLike,
    ignore_fields: Iterable[str] = (),
) -> dict[str, object]:
    """Return the fields of ``new`` whose values differ from ``existing``."""

    ignored = ALWAYS_IGNORED_FIELDS | frozenset(ignore_fields)
    return {
        name: value
        for name, value in new.items()
        if name not in ignored and not values_equal(value, existing.get(name))
    }


def has_changes(
    new: RecordLike, existing: RecordLike, ignore_fields: Iterable[str] = ()
) -> bool:
    return bool(changed_fields(new, existing, ignore_fields))


def _hashable(value: object) -> Hashable:
    try:
        hash(value)
    except TypeError:
        return canonical(value)
    return cast("Hashable", value)


def constraint_key(record: RecordLike, constraint: UniqueConstraint) -> ConstraintKey | None:
    """Key of ``record`` under ``constraint``, or ``None`` if any field is unset."""

    values: list[Hashable] = []
    for name in constraint:
        value = record.get(name)
        if value is None:
            return None
        values.append(_hashable(value))
    return (constraint, *values)


def index_existing(
    records: Iterable[RecordLike], constraints: Sequence[UniqueConstraint]
) -> dict[ConstraintKey, RecordLike]:
    """Index existing rows under every constraint they populate.

    When two rows share a key the first one fetched stays indexed.
    """

    index: dict[ConstraintKey, RecordLike] = {}
    for record in records:
        for constraint in constraints:
            key = constraint_key(record, constraint)
            if key is not None:
                index.setdefault(key, record)
    return index


class ConflictResolver:
    """Split incoming records into creates, minimal updates and unchanged rows.

    A record is matched against existing rows by trying each unique constraint in
    declared order; the first constraint whose fields the record populates decides
    the match, even when a later constraint would point at a different row.
    """

    def __init__(
        self,
        constraints: Sequence[UniqueConstraint],
        *,
        ignore_fields: Iterable[str] = (),
        key_field: str = "id",
    ) -> None:
        self.constraints = tuple(constraints)
        self.ignore_fields = frozenset(ignore_fields)
        self.key_field = key_field

    def match(
        self, record: RecordLike, existing_by_key: Mapping[ConstraintKey, RecordLike]
    ) -> RecordLike | None:
        for constraint in self.constraints:
            key = constraint_key(record, constraint)
            if key is None:
                continue
            return existing_by_key.get(key)
        return None

    def classify(
        self,
        new_records: Iterable[RecordLike],
        existing_by_key: Mapping[ConstraintKey, RecordLike],
    ) -> Classification:
        result = Classification()
        for record in new_records:
            existing = self.match(record, existing_by_key)
            if existing is None:
                result.to_create.append(dict(record))
                continue
            patch = changed_fields(record, existing, self.ignore_fields | {self.key_field})
            if patch:
                result.to_update.append(
                    ChangeSet(id=existing.get(self.key_field), changed_fields=patch)
                )
            else:
                result.unchanged_count += 1
        return result


def apply_patch(existing: RecordLike, change: ChangeSet) -> Record:
    """Return ``existing`` with ``change`` applied (used to verify classifications)."""

    return {**existing, **change.changed_fields}
