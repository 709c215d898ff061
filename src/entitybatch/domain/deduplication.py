"""Intra-batch deduplication by unique constraints."""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from .conflicts import constraint_key

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from .conflicts import ConstraintKey
    from .types import Record, RecordLike, UniqueConstraint

log = getLogger(__name__)


@dataclass(slots=True)
class DeduplicationResult:
    records: list[Record] = field(default_factory=list["Record"])
    kept_indexes: list[int] = field(default_factory=list[int])
    dropped: int = 0


def deduplicate_by_unique_constraints(
    records: Iterable[RecordLike],
    constraints: Sequence[UniqueConstraint],
) -> DeduplicationResult:
    """Keep the first record for every unique-constraint key.

    A record is dropped when it shares the key of *any* constraint with an
    earlier record. Constraints whose fields a record leaves unset are not
    considered for that record.
    """

    result = DeduplicationResult()
    if not constraints:
        result.records = [dict(record) for record in records]
        result.kept_indexes = list(range(len(result.records)))
        return result

    seen: set[ConstraintKey] = set()
    for index, record in enumerate(records):
        keys = [
            key
            for constraint in constraints
            if (key := constraint_key(record, constraint)) is not None
        ]
        if any(key in seen for key in keys):
            result.dropped += 1
            continue
        seen.update(keys)
        result.records.append(dict(record))
        result.kept_indexes.append(index)

    if result.dropped:
        log.debug("Collapsed %s duplicate record(s) by unique constraints", result.dropped)
    return result
