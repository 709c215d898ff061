"""Connection-pool sizing derived from the database URI."""

from __future__ import annotations

import os
from logging import getLogger
from typing import Final
from urllib.parse import parse_qs, urlsplit

log = getLogger(__name__)

DATABASE_URI_ENV: Final[str] = "DATABASE_URI"

SQLITE_POOL_SIZE: Final[int] = 1
SERVER_POOL_SIZE: Final[int] = 8
DEFAULT_POOL_SIZE: Final[int] = 2

_POOL_SIZE_PARAMS: Final[tuple[str, ...]] = ("connection_limit", "pool_size")
_SERVER_SCHEMES: Final[tuple[str, ...]] = ("postgres", "mysql", "mariadb", "mssql", "sqlserver")


def get_database_uri() -> str | None:
    uri = os.getenv(DATABASE_URI_ENV)
    return uri if uri and uri.strip() else None


def connection_pool_size(database_uri: str | None = None) -> int:
    """Return the connection pool size the batch layer may saturate.

    An explicit ``connection_limit`` or ``pool_size`` query parameter wins when it
    is a positive integer; otherwise the size follows the backend: one connection
    for SQLite, a server default for networked databases and a small safe
    default when nothing is known.
    """

    uri = database_uri or get_database_uri()
    if not uri:
        return DEFAULT_POOL_SIZE

    parts = urlsplit(uri)
    params = parse_qs(parts.query)
    for name in _POOL_SIZE_PARAMS:
        for raw in params.get(name, ()):
            try:
                size = int(raw)
            except ValueError:
                log.warning("Ignoring invalid %s=%r in database URI", name, raw)
                continue
            if size > 0:
                return size
            log.warning("Ignoring non-positive %s=%r in database URI", name, raw)

    scheme = parts.scheme.lower()
    if scheme.startswith("sqlite") or scheme == "file":
        return SQLITE_POOL_SIZE
    if scheme.startswith(_SERVER_SCHEMES):
        return SERVER_POOL_SIZE
    return DEFAULT_POOL_SIZE
