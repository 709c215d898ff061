from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from entitybatch.adapters.sqlalchemy import (
    AssociationTable,
    SqlAlchemySchemaIntrospector,
    SqlAlchemyStorageClient,
)
from entitybatch.domain.types import RelationDescriptor, RelationKind
from tests.support.tables import metadata, tags, user_tags, users

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'batch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
        await conn.execute(tags.insert(), [{"id": i, "label": f"tag{i}"} for i in (1, 2, 3)])
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def user_storage(sqlite_engine: AsyncEngine) -> SqlAlchemyStorageClient:
    return SqlAlchemyStorageClient(
        sqlite_engine,
        users,
        associations={"tags": AssociationTable(user_tags, "user_id", "tag_id")},
    )


@pytest.fixture
def introspector() -> SqlAlchemySchemaIntrospector:
    return SqlAlchemySchemaIntrospector(
        metadata,
        relations={"users": [RelationDescriptor("tags", RelationKind.MANY_RELATION, "tags")]},
        partition_keys={"memberships": ["tenant"]},
    )
