"""Async SQLAlchemy adapter package for entitybatch."""

from __future__ import annotations

from .errors import classify_sqlalchemy_error
from .introspection import (
    SqlAlchemySchemaIntrospector,
    capabilities_for_engine,
    unique_constraints_of,
)
from .storage import AssociationTable, SqlAlchemyStorageClient

__all__ = [
    "AssociationTable",
    "SqlAlchemySchemaIntrospector",
    "SqlAlchemyStorageClient",
    "capabilities_for_engine",
    "classify_sqlalchemy_error",
    "unique_constraints_of",
]
