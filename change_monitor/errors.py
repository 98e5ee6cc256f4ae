# change_monitor/errors.py
# Failure taxonomy shared by the engine and the caller-facing run functions.

import enum
from dataclasses import dataclass


class FailureKind(enum.Enum):
    EMPTY_INPUT = "empty_input"
    DEGENERATE_STATISTICS = "degenerate_statistics"
    INVALID_GEOMETRY = "invalid_geometry"
    BACKEND_LIMIT_EXCEEDED = "backend_limit_exceeded"


class ChangeDetectionError(Exception):
    """Recoverable failure of a single analysis run."""
    kind = None

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class EmptyInputError(ChangeDetectionError):
    """No rasters or features matched the query."""
    kind = FailureKind.EMPTY_INPUT


class DegenerateStatisticsError(ChangeDetectionError):
    """Too few samples for a variance, or nothing left inside the AOI."""
    kind = FailureKind.DEGENERATE_STATISTICS


class InvalidGeometryError(ChangeDetectionError):
    """AOI missing, empty, non-polygonal or self-intersecting."""
    kind = FailureKind.INVALID_GEOMETRY


class BackendLimitExceededError(ChangeDetectionError):
    """A reduction would exceed the configured pixel/feature budget."""
    kind = FailureKind.BACKEND_LIMIT_EXCEEDED


@dataclass(frozen=True)
class Failure:
    """Tagged failure returned by the run functions instead of raising."""
    kind: FailureKind
    message: str
    ok: bool = False

    @classmethod
    def from_error(cls, error: ChangeDetectionError) -> "Failure":
        return cls(kind=error.kind, message=error.message)
