"""Error taxonomy and classification for batch operations.

Storage providers raise whatever their driver raises. The batch layer only
needs to know whether a failure is a unique-constraint collision (recoverable
by retrying with skip-duplicates), a transient storage problem, or anything
else. Providers with structured error codes plug in their own classifier;
everything else goes through the substring table below.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Sequence


class BatchError(RuntimeError):
    """Base class for errors raised by the batch layer."""


class InvalidArgumentError(BatchError, ValueError):
    """Raised for malformed input such as a non-positive batch size."""


class UniqueConstraintViolation(BatchError):
    """Raised by storage clients that report unique collisions structurally."""

    def __init__(self, message: str, *, fields: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.fields = tuple(fields)


class RecordNotFoundError(BatchError, LookupError):
    """Raised by storage clients when the row to update does not exist."""


class TransientStorageError(BatchError):
    """Timeouts, dropped connections, deadlocks and similar retryable failures."""


class ErrorKind(StrEnum):
    UNIQUE_VIOLATION = "unique_violation"
    TRANSIENT = "transient"
    OTHER = "other"


type ErrorClassifier = Callable[[BaseException], ErrorKind]


UNIQUE_VIOLATION_MARKERS: Final[tuple[str, ...]] = (
    "P2002",
    "Unique constraint",
    "duplicate key",
    "UNIQUE constraint",
    "unique violation",
    "Duplicate entry",
)

TRANSIENT_MARKERS: Final[tuple[str, ...]] = (
    "timeout",
    "connection",
    "deadlock",
    "lock",
)


def classify_error(error: BaseException) -> ErrorKind:
    """Classify ``error`` using its type first and its message second."""

    if isinstance(error, UniqueConstraintViolation):
        return ErrorKind.UNIQUE_VIOLATION
    if isinstance(error, TransientStorageError | TimeoutError | ConnectionError):
        return ErrorKind.TRANSIENT

    message = str(error)
    if any(marker in message for marker in UNIQUE_VIOLATION_MARKERS):
        return ErrorKind.UNIQUE_VIOLATION
    lowered = message.lower()
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.OTHER


def is_unique_constraint_error(
    error: BaseException, *, classify: ErrorClassifier = classify_error
) -> bool:
    return classify(error) is ErrorKind.UNIQUE_VIOLATION


def is_transient_error(error: BaseException, *, classify: ErrorClassifier = classify_error) -> bool:
    return classify(error) is ErrorKind.TRANSIENT
