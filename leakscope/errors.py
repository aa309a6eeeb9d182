# leakscope/errors.py - Error taxonomy
"""
Exceptions raised by the ingestion, storage and query layers.

Ingestion errors are local to a batch or sample and are counted, never
allowed to abort the ingestion stream. Read-path errors caused by caller
input are turned into explicit error results by the query API.
InvariantViolation marks a bug and must propagate.
"""

from typing import List, Optional, Tuple


class LeakscopeError(Exception):
    """Base class for all leakscope errors."""


class ConfigError(LeakscopeError):
    """Configuration is missing or inconsistent."""


class MalformedBatchError(LeakscopeError):
    """A whole ingestion batch is unusable and was rejected."""


class TagCardinalityExceeded(MalformedBatchError):
    """A batch introduced a tag set beyond the per-target cap."""

    def __init__(self, target_id: str, limit: int):
        super().__init__(
            f"target {target_id!r} already has {limit} distinct tag sets"
        )
        self.target_id = target_id
        self.limit = limit


class MalformedSampleError(LeakscopeError):
    """A single sample is unusable; the rest of its batch is kept."""


class UnknownProfileTypeError(LeakscopeError, ValueError):
    """Profile type string is not one of the recognized types."""


class InvalidRangeError(LeakscopeError, ValueError):
    """Time range with start >= end."""


class CoverageGapError(LeakscopeError):
    """
    Advisory: part of a queried range has no retained bucket.

    Normally carried as a flag on read results; raised only by callers that
    ask for strict coverage.
    """

    def __init__(self, gaps: List[Tuple[float, float]]):
        spans = ", ".join(f"[{start}, {end})" for start, end in gaps)
        super().__init__(f"coverage gaps: {spans}")
        self.gaps = gaps


class DeadlineExceeded(LeakscopeError):
    """Query deadline expired before every bucket was merged."""


class StoreCapacityExceeded(LeakscopeError):
    """Store is full and no bucket is eligible for eviction."""

    def __init__(self, limit: int, message: Optional[str] = None):
        super().__init__(message or f"store holds the maximum of {limit} buckets")
        self.limit = limit


class InvariantViolation(LeakscopeError):
    """Internal consistency check failed; this is a bug."""
