from __future__ import annotations

import math

import pytest

from entitybatch.domain.capabilities import capabilities_for, safe_placeholder_ceiling
from entitybatch.domain.types import IdKind, Provider


@pytest.mark.parametrize(
    ("provider", "skip", "ceiling", "concurrency"),
    [
        (Provider.SQLITE, True, 799, 1),
        (Provider.POSTGRESQL, True, 10_000, 8),
        (Provider.MYSQL, True, 10_000, 8),
        (Provider.SQLSERVER, False, 1_680, 8),
    ],
)
def test_sql_provider_profiles(
    provider: Provider, skip: bool, ceiling: int, concurrency: int
) -> None:
    capabilities = capabilities_for(provider)

    assert capabilities.provider is provider
    assert capabilities.supports_skip_duplicates is skip
    assert capabilities.max_placeholders == ceiling
    assert capabilities.recommended_concurrency == concurrency
    assert capabilities.id_kind is IdKind.NUMERIC
    assert not capabilities.transactional_updates


def test_document_store_profile() -> None:
    capabilities = capabilities_for("mongodb")

    assert capabilities.provider is Provider.MONGODB
    assert capabilities.unbounded_placeholders
    assert capabilities.id_kind is IdKind.OPAQUE
    assert capabilities.transactional_updates
    assert not capabilities.supports_skip_duplicates


def test_unknown_provider_is_conservative() -> None:
    capabilities = capabilities_for("cockroach")

    assert capabilities.provider == "cockroach"
    assert not capabilities.supports_skip_duplicates
    assert capabilities.recommended_concurrency == 1
    assert capabilities.max_placeholders == 799


def test_safe_placeholder_ceiling() -> None:
    assert safe_placeholder_ceiling(999) == 799
    assert safe_placeholder_ceiling(65_535) == 10_000
    assert safe_placeholder_ceiling(1) == 1
    assert math.isinf(safe_placeholder_ceiling(math.inf))
