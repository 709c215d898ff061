from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from entitybatch.config import reset_configuration
from entitybatch.domain.capabilities import capabilities_for
from entitybatch.domain.types import (
    FieldInfo,
    FieldKind,
    ModelInfo,
    Provider,
    RelationDescriptor,
    RelationKind,
)
from tests.support.fake_storage import InMemoryStorage

if TYPE_CHECKING:
    from collections.abc import Iterator

    from entitybatch.domain.types import Capabilities


@pytest.fixture(autouse=True)
def reset_runtime_configuration() -> Iterator[None]:
    reset_configuration()
    yield
    reset_configuration()


def _field(name: str, kind: FieldKind = FieldKind.SCALAR, *, is_list: bool = False) -> FieldInfo:
    return FieldInfo(name=name, kind=kind, is_list=is_list, type_name="String", db_name=None)


@pytest.fixture
def user_model() -> ModelInfo:
    return ModelInfo(
        name="User",
        fields=(
            _field("id"),
            _field("email"),
            _field("name"),
            _field("age"),
            _field("profile", FieldKind.JSON),
            _field("aliases", is_list=True),
            _field("authorId"),
            _field("tags", FieldKind.RELATION, is_list=True),
            _field("author", FieldKind.RELATION),
        ),
        unique_constraints=(("email",),),
        db_table_name="users",
        relations=(
            RelationDescriptor("aliases", RelationKind.SCALAR_ARRAY),
            RelationDescriptor("tags", RelationKind.MANY_RELATION, "Tag"),
            RelationDescriptor("author", RelationKind.SINGLE_RELATION, "Author"),
        ),
    )


@pytest.fixture
def sqlite_capabilities() -> Capabilities:
    return capabilities_for(Provider.SQLITE)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage(unique=(("email",),))
