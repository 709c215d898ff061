"""Ports the batch layer needs from its storage, schema and dialect collaborators.

Filters passed to storage clients are plain mappings:

- equality: ``{"email": "a@x.com", "tenant": 3}``
- membership: ``{"id": {"in": [1, 2, 3]}}``
- disjunction: ``{"OR": [{"email": "a@x.com"}, {"email": "b@x.com"}]}``
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from .types import Capabilities, ModelInfo, Provider, Record, RecordLike


@runtime_checkable
class StorageClient(Protocol):
    """Storage primitives for a single model."""

    async def create(self, data: RecordLike) -> Record: ...

    async def create_many(
        self, records: Sequence[RecordLike], *, skip_duplicates: bool = False
    ) -> int: ...

    async def update(self, key: object, patch: RecordLike) -> Record:
        """Apply ``patch`` to the row with ``key``; raise ``RecordNotFoundError`` if none."""
        ...

    async def delete_many(self, where: Mapping[str, object]) -> int: ...

    async def find_many(self, where: Mapping[str, object]) -> list[Record]: ...

    async def execute_raw(self, statement: str) -> int: ...

    async def run_transaction(
        self,
        updates: Sequence[tuple[object, RecordLike]],
        *,
        max_wait: float,
        timeout: float,
    ) -> list[Record]: ...


@runtime_checkable
class SchemaIntrospector(Protocol):
    def get_model_info(self, model_name: str) -> ModelInfo: ...


@runtime_checkable
class CapabilitiesProvider(Protocol):
    def capabilities(self) -> Capabilities: ...


@runtime_checkable
class SqlDialect(Protocol):
    """Quoting and literal rendering for generated statements."""

    provider: Provider

    def quote_identifier(self, name: str) -> str: ...

    def escape_value(self, value: object) -> str: ...

    def escape_json(self, value: object) -> str: ...
