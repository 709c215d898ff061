"""Relation-shaped input handling.

Incoming records may reference related entities in several shapes::

    {"author": {"id": 3}}                       # single relation
    {"author": {"connect": {"id": 3}}}          # single relation, connect block
    {"tags": [{"id": 1}, {"id": 2}]}            # many relation
    {"tags": {"connect": [{"id": 1}]}}          # many relation, connect block
    {"aliases": ["a", "b"]}                     # scalar array column

Single relations become foreign-key scalars, many relations are lifted out
into a side channel and attached after the owning rows exist, and scalar
arrays are never touched.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING

from .execution import ConcurrencyExecutor
from .types import RelationApplyResult, RelationKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Sequence

    from .types import KeyTemplate, Record, RecordLike, RelationDescriptor

log = getLogger(__name__)

type RelationRefs = dict[str, list[object]]
type AttachFn = Callable[[object, RelationRefs], Awaitable[object]]


def default_key_template(field_name: str) -> str:
    return f"{field_name}Id"


@dataclass(slots=True)
class ManyToManyExtraction:
    cleaned_items: list[Record] = field(default_factory=list["Record"])
    relations_by_index: dict[int, RelationRefs] = field(default_factory=dict[int, "RelationRefs"])


def sanitize_keys(value: object) -> object:
    """Recursively strip leading underscores from mapping keys."""

    if isinstance(value, Mapping):
        return {str(key).lstrip("_"): sanitize_keys(item) for key, item in value.items()}
    if isinstance(value, list):
        return [sanitize_keys(item) for item in value]
    return value


def _reference_id(reference: object) -> object:
    if isinstance(reference, Mapping):
        return reference.get("id")
    return reference


def _many_references(value: object) -> list[object] | None:
    if isinstance(value, Mapping) and "connect" in value:
        value = value["connect"]
        if isinstance(value, Mapping):
            value = [value]
    if isinstance(value, list | tuple) and value:
        return [ref for ref in (_reference_id(item) for item in value) if ref is not None]
    return None


def extract_many_to_many(
    items: Sequence[RecordLike],
    descriptors: Iterable[RelationDescriptor],
) -> ManyToManyExtraction:
    """Lift many-relation fields out of ``items`` into ``relations_by_index``.

    Empty many-relation values are dropped from the item without creating an
    entry. Input mappings are never mutated.
    """

    many_fields = [d.field_name for d in descriptors if d.kind is RelationKind.MANY_RELATION]
    extraction = ManyToManyExtraction()
    for index, item in enumerate(items):
        cleaned = dict(item)
        refs: RelationRefs = {}
        for name in many_fields:
            if name not in cleaned:
                continue
            references = _many_references(cleaned.pop(name))
            if references:
                refs[name] = references
        if refs:
            extraction.relations_by_index[index] = refs
        extraction.cleaned_items.append(cleaned)
    return extraction


def _single_reference(value: object) -> object | None:
    if not isinstance(value, Mapping):
        return None
    if "connect" in value and isinstance(value["connect"], Mapping):
        value = value["connect"]
    return value.get("id")


def normalize_to_foreign_key(
    item: RecordLike,
    descriptors: Iterable[RelationDescriptor],
    key_template: KeyTemplate | None = None,
) -> Record:
    """Rewrite single-relation references on ``item`` into foreign-key fields.

    An already populated foreign-key field takes precedence over the relation
    object, which is dropped either way once it resolved to an id.
    """

    template = key_template or default_key_template
    normalized = dict(item)
    for descriptor in descriptors:
        if descriptor.kind is not RelationKind.SINGLE_RELATION:
            continue
        name = descriptor.field_name
        if name not in normalized:
            continue
        related_id = _single_reference(normalized[name])
        if related_id is None:
            continue
        fk_name = template(name)
        del normalized[name]
        if normalized.get(fk_name) is None:
            normalized[fk_name] = related_id
    return normalized


def merge_attach_payload(refs: RelationRefs) -> dict[str, object]:
    """Combined ``connect`` payload for all relation fields of one entity."""

    return {name: {"connect": [{"id": ref} for ref in ids]} for name, ids in refs.items()}


async def apply_many_to_many(
    entity_ids: Sequence[object | None],
    relations_by_index: Mapping[int, RelationRefs],
    attach: AttachFn,
    *,
    executor: ConcurrencyExecutor | None = None,
) -> RelationApplyResult:
    """Attach lifted many-relations, one ``attach`` call per entity.

    ``entity_ids`` is index-aligned with the items the relations were extracted
    from; entries without an id (e.g. rows that were never created) are skipped
    and counted as failed.
    """

    pending: list[tuple[object, RelationRefs]] = []
    failed = 0
    for index, refs in sorted(relations_by_index.items()):
        filtered = {name: [ref for ref in ids if ref is not None] for name, ids in refs.items()}
        filtered = {name: ids for name, ids in filtered.items() if ids}
        if not filtered:
            continue
        entity_id = entity_ids[index] if index < len(entity_ids) else None
        if entity_id is None:
            log.warning("Cannot attach relations for item %s: entity id unknown", index)
            failed += 1
            continue
        pending.append((entity_id, filtered))

    if not pending:
        return RelationApplyResult(success=0, failed=failed)

    def attach_one(entity_id: object, refs: RelationRefs) -> Callable[[], Awaitable[object]]:
        return lambda: attach(entity_id, refs)

    runner = executor or ConcurrencyExecutor(1)
    report = await runner.execute([attach_one(entity_id, refs) for entity_id, refs in pending])
    failed_indexes = report.failed_indexes
    for error in report.errors:
        log.error(
            "Failed to attach relations for entity %s: %s", pending[error.index][0], error.error
        )

    attached = [
        refs for position, (_, refs) in enumerate(pending) if position not in failed_indexes
    ]
    return RelationApplyResult(
        success=len(attached),
        failed=failed + len(failed_indexes),
        links=sum(len(ids) for refs in attached for ids in refs.values()),
    )
