"""Application wiring on top of the process-wide runtime configuration."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING

from entitybatch.adapters.dialects import dialect_for
from entitybatch.config import configured_storage, get_rate_limiter, get_runtime_config
from entitybatch.domain.errors import classify_error
from entitybatch.domain.orchestrator import BatchOperationOrchestrator

if TYPE_CHECKING:
    from entitybatch.domain.errors import ErrorClassifier
    from entitybatch.domain.ports import SqlDialect
    from entitybatch.domain.types import Capabilities, ModelInfo

log = getLogger(__name__)


def default_orchestrator(
    model: ModelInfo,
    capabilities: Capabilities,
    *,
    dialect: SqlDialect | None = None,
    classify: ErrorClassifier | None = None,
) -> BatchOperationOrchestrator:
    """Build an orchestrator from the storage and settings passed to ``configure()``.

    Raises :class:`~entitybatch.config.NotConfiguredError` when called before
    configuration.
    """

    runtime = get_runtime_config()
    resolved_dialect = dialect or dialect_for(capabilities.provider)
    log.debug("Wiring orchestrator for %s on %s", model.name, capabilities.provider)
    return BatchOperationOrchestrator(
        configured_storage(),
        model=model,
        capabilities=capabilities,
        runtime=runtime,
        dialect=resolved_dialect,
        rate_limiter=get_rate_limiter(),
        classify=classify or classify_error,
    )
