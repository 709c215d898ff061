"""Classify SQLAlchemy driver errors using native codes where available."""

from __future__ import annotations

from typing import Final

from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from entitybatch.domain.errors import ErrorKind, classify_error

UNIQUE_SQLSTATES: Final[frozenset[str]] = frozenset({"23505"})
MYSQL_DUPLICATE_ENTRY: Final[int] = 1062
MSSQL_DUPLICATE_KEYS: Final[frozenset[int]] = frozenset({2601, 2627})
SQLITE_UNIQUE_ERRORS: Final[frozenset[str]] = frozenset(
    {"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"}
)


def _is_unique_violation(error: IntegrityError) -> bool:
    orig = error.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in UNIQUE_SQLSTATES:
        return True
    if getattr(orig, "sqlite_errorname", None) in SQLITE_UNIQUE_ERRORS:
        return True
    args = getattr(orig, "args", ())
    return bool(args) and (args[0] == MYSQL_DUPLICATE_ENTRY or args[0] in MSSQL_DUPLICATE_KEYS)


def classify_sqlalchemy_error(error: BaseException) -> ErrorKind:
    """Classify ``error``, falling back to message matching for unknown drivers."""

    if isinstance(error, IntegrityError) and _is_unique_violation(error):
        return ErrorKind.UNIQUE_VIOLATION
    if isinstance(error, DisconnectionError | PoolTimeoutError):
        return ErrorKind.TRANSIENT
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return ErrorKind.TRANSIENT
    return classify_error(error)
