from __future__ import annotations

import pytest

from entitybatch.domain.conflicts import (
    ABSENT,
    ConflictResolver,
    apply_patch,
    changed_fields,
    constraint_key,
    has_changes,
    index_existing,
    normalize_value,
    values_equal,
)
from entitybatch.domain.types import ChangeSet


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, ABSENT), ("", ABSENT), ("   ", ABSENT), ("  Ada ", "Ada"), (0, 0), (False, False)],
)
def test_normalize_value(value: object, expected: object) -> None:
    assert normalize_value(value) == expected


@pytest.mark.parametrize(
    ("left", "right", "equal"),
    [
        (None, "", True),
        ("Ada", " Ada ", True),
        ({"b": 1, "a": [1, 2]}, {"a": [1, 2], "b": 1}, True),
        ([1, 2], [2, 1], False),
        (0, None, False),
        (1, 1.0, True),
        ("1", 1, False),
    ],
)
def test_values_equal(left: object, right: object, equal: bool) -> None:
    assert values_equal(left, right) is equal


def test_changed_fields_ignores_bookkeeping_columns() -> None:
    existing = {"id": 1, "email": "a@x", "age": 25, "updatedAt": "2024-01-01"}
    new = {"id": 99, "email": "a@x", "age": 30, "updatedAt": "2025-01-01", "createdAt": "now"}

    assert changed_fields(new, existing) == {"age": 30}
    assert changed_fields(new, existing, ignore_fields={"age"}) == {}
    assert has_changes(new, existing)


def test_constraint_key_requires_every_field() -> None:
    assert constraint_key({"a": 1, "b": "x"}, ("a", "b")) == (("a", "b"), 1, "x")
    assert constraint_key({"a": 1}, ("a", "b")) is None
    assert constraint_key({"a": 1, "b": None}, ("a", "b")) is None


def test_unhashable_values_are_keyed_by_content() -> None:
    rows = [{"id": 1, "tags": ("x", ["y"])}, {"id": 2, "tags": ("x", ["z"])}]

    index = index_existing(rows, [("tags",)])

    assert index[constraint_key({"tags": ("x", ["z"])}, ("tags",))]["id"] == 2
    assert constraint_key({"tags": ["y"]}, ("tags",)) == (("tags",), '["y"]')


def test_index_existing_keeps_first_row_per_key() -> None:
    rows = [{"id": 1, "email": "a"}, {"id": 2, "email": "a"}]

    index = index_existing(rows, [("email",)])

    assert index[(("email",), "a")]["id"] == 1


def test_classify_splits_creates_updates_and_unchanged() -> None:
    existing = [
        {"id": 1, "email": "a@x", "age": 25},
        {"id": 2, "email": "b@x", "age": 40},
    ]
    resolver = ConflictResolver([("email",)])
    incoming = [
        {"email": "a@x", "age": 25},
        {"email": "b@x", "age": 41},
        {"email": "c@x", "age": 18},
    ]

    result = resolver.classify(incoming, index_existing(existing, [("email",)]))

    assert result.to_create == [{"email": "c@x", "age": 18}]
    assert result.to_update == [ChangeSet(id=2, changed_fields={"age": 41})]
    assert result.unchanged_count == 1


def test_classification_is_idempotent() -> None:
    existing = [{"id": 1, "email": "a@x", "age": 25}]
    resolver = ConflictResolver([("email",)])
    incoming = [{"email": "a@x", "age": 30}]

    first = resolver.classify(incoming, index_existing(existing, [("email",)]))
    patched = [apply_patch(existing[0], change) for change in first.to_update]
    second = resolver.classify(incoming, index_existing(patched, [("email",)]))

    assert second.to_create == []
    assert second.to_update == []
    assert second.unchanged_count == 1


def test_first_populated_constraint_decides_the_match() -> None:
    existing = [
        {"id": 1, "email": "a@x", "handle": "ada"},
        {"id": 2, "email": "b@x", "handle": "bob"},
    ]
    constraints = [("email",), ("handle",)]
    resolver = ConflictResolver(constraints)
    index = index_existing(existing, constraints)

    matched = resolver.match({"email": "a@x", "handle": "bob"}, index)
    by_handle = resolver.match({"handle": "bob"}, index)

    assert matched is not None
    assert matched["id"] == 1
    assert by_handle is not None
    assert by_handle["id"] == 2


def test_partition_keys_are_not_patched() -> None:
    existing = [{"id": 1, "email": "a@x", "tenant": "t1"}]
    resolver = ConflictResolver([("email",)], ignore_fields={"tenant"})

    result = resolver.classify(
        [{"email": "a@x", "tenant": "t2"}], index_existing(existing, [("email",)])
    )

    assert result.unchanged_count == 1
