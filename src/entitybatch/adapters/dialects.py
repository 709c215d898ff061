"""Identifier quoting and literal rendering for the supported SQL dialects."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from entitybatch.domain.types import Provider


@dataclass(slots=True, frozen=True)
class Dialect:
    provider: Provider
    identifier_quote: str = '"'
    true_literal: str = "1"
    false_literal: str = "0"
    backslash_escapes: bool = False
    native_arrays: bool = False
    json_cast: str = ""

    def quote_identifier(self, name: str) -> str:
        if not self.identifier_quote:
            return name
        quote = self.identifier_quote
        return f"{quote}{name.replace(quote, quote * 2)}{quote}"

    def quote_string(self, value: str) -> str:
        if self.backslash_escapes:
            value = value.replace("\\", "\\\\")
        return "'" + value.replace("'", "''") + "'"

    def escape_value(self, value: object) -> str:
        match value:
            case None:
                return "NULL"
            case bool():
                return self.true_literal if value else self.false_literal
            case float() if math.isnan(value) or math.isinf(value):
                return "NULL"
            case int() | float() | Decimal():
                return str(value)
            case Enum():
                return self.escape_value(value.value)
            case datetime():
                return self.quote_string(value.strftime("%Y-%m-%d %H:%M:%S"))
            case date():
                return self.quote_string(value.isoformat())
            case UUID():
                return self.quote_string(str(value))
            case str():
                return self.quote_string(value)
            case list() | tuple():
                return self._escape_array(list(value))
            case Mapping():
                return self.quote_string(_dump_json(value))
            case _:
                return self.quote_string(str(value))

    def escape_json(self, value: object) -> str:
        return self.quote_string(_dump_json(value)) + self.json_cast

    def _escape_array(self, values: list[object]) -> str:
        if not self.native_arrays:
            return self.quote_string(_dump_json(values))
        if not values:
            return "ARRAY[]::text[]"
        return "ARRAY[" + ", ".join(self.escape_value(item) for item in values) + "]"


def _dump_json(value: object) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


_DIALECTS: dict[Provider, Dialect] = {
    Provider.POSTGRESQL: Dialect(
        provider=Provider.POSTGRESQL,
        true_literal="TRUE",
        false_literal="FALSE",
        native_arrays=True,
        json_cast="::jsonb",
    ),
    Provider.MYSQL: Dialect(
        provider=Provider.MYSQL,
        identifier_quote="`",
        backslash_escapes=True,
    ),
    Provider.SQLITE: Dialect(provider=Provider.SQLITE),
    Provider.SQLSERVER: Dialect(provider=Provider.SQLSERVER),
    Provider.MONGODB: Dialect(provider=Provider.MONGODB, identifier_quote=""),
}


def dialect_for(provider: Provider | str) -> Dialect:
    """Return the dialect for ``provider``; unknown providers render ANSI SQL."""

    try:
        return _DIALECTS[Provider(provider)]
    except ValueError:
        return _DIALECTS[Provider.SQLITE]


if TYPE_CHECKING:
    from entitybatch.domain.ports import SqlDialect

    _dialect_check: SqlDialect = Dialect(provider=Provider.SQLITE)
