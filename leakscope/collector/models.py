# leakscope/collector/models.py - Core profiling data types
"""
Data types shared by the ingestion, storage and query layers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
import hashlib

from leakscope.errors import InvalidRangeError, UnknownProfileTypeError


class ProfileType(Enum):
    """
    Kind of profile a sample belongs to.

    Determines the unit of a sample's value.
    """
    CPU_TIME = 'cpu-time'
    ALLOC_OBJECTS = 'alloc-objects'
    ALLOC_SPACE = 'alloc-space'
    INUSE_OBJECTS = 'inuse-objects'
    INUSE_SPACE = 'inuse-space'
    CONCURRENT_TASK_COUNT = 'concurrent-task-count'
    LOCK_CONTENTION_COUNT = 'lock-contention-count'
    LOCK_CONTENTION_DURATION = 'lock-contention-duration'
    BLOCK_COUNT = 'block-count'
    BLOCK_DURATION = 'block-duration'

    @classmethod
    def parse(cls, value) -> 'ProfileType':
        """
        Resolve a member from itself or its string value.

        Raises:
            UnknownProfileTypeError: if the value is not recognized
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownProfileTypeError(f"unknown profile type: {value!r}") from None

    @property
    def is_integral(self) -> bool:
        """True when values are counts or byte sizes and sum exactly."""
        return self not in _FLOATING_TYPES

    @property
    def unit(self) -> str:
        if self in (ProfileType.ALLOC_SPACE, ProfileType.INUSE_SPACE):
            return 'bytes'
        if self in _FLOATING_TYPES:
            return 'nanoseconds'
        return 'count'


_FLOATING_TYPES = frozenset({
    ProfileType.CPU_TIME,
    ProfileType.LOCK_CONTENTION_DURATION,
    ProfileType.BLOCK_DURATION,
})


@dataclass(frozen=True, order=True)
class Frame:
    """
    Canonical identity of one stack position.

    Ordered by (name, location); that order breaks ties in presentation.
    """
    name: str
    location: str = ''

    def label(self) -> str:
        """Display label, e.g. 'handleRequest (server.go:42)'"""
        if self.location:
            return f"{self.name} ({self.location})"
        return self.name


ROOT_FRAME = Frame('root', '')

Tags = Tuple[Tuple[str, str], ...]


def make_tags(tags: Optional[Mapping[str, str]]) -> Tags:
    """Canonical, hashable form of a tag mapping."""
    if not tags:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items()))


@dataclass(frozen=True)
class SeriesKey:
    """(target, profile type, tag set) - the unit of write ownership."""
    target_id: str
    profile_type: ProfileType
    tags: Tags = ()

    @classmethod
    def of(cls, target_id: str, profile_type, tags=None) -> 'SeriesKey':
        if isinstance(tags, tuple):
            canonical = tags
        else:
            canonical = make_tags(tags)
        return cls(target_id, ProfileType.parse(profile_type), canonical)

    @property
    def tags_hash(self) -> str:
        """Stable short hash of the tag set"""
        canonical = ','.join(f"{k}={v}" for k, v in self.tags)
        return hashlib.sha1(canonical.encode('utf-8')).hexdigest()[:16]

    @property
    def tags_dict(self) -> Dict[str, str]:
        return dict(self.tags)

    def __str__(self) -> str:
        return f"{self.target_id}/{self.profile_type.value}/{self.tags_hash}"


@dataclass(frozen=True)
class TimeRange:
    """Half-open interval [start, end) in POSIX seconds."""
    start: float
    end: float

    def __post_init__(self):
        if self.start >= self.end:
            raise InvalidRangeError(
                f"time range start {self.start} must be before end {self.end}"
            )

    @property
    def duration(self) -> float:
        return self.end - self.start

    def overlaps(self, start: float, end: float) -> bool:
        return start < self.end and end > self.start


@dataclass(frozen=True)
class Sample:
    """
    One profiling event as produced by a sampler adapter.

    The stack is root-to-leaf and holds raw, un-normalized frame
    descriptors.
    """
    stack: Tuple[Any, ...]
    value: Any
    timestamp: Optional[float] = None


@dataclass
class ProfileBatch:
    """
    One ingestion call from a sampler adapter.

    Accepts both camelCase wire keys and snake_case keys in from_dict.
    """
    target_id: str
    profile_type: Any
    window_start: float
    window_end: float
    samples: List[Sample] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'ProfileBatch':
        """
        Build a batch from a decoded JSON record.

        Args:
            data: Mapping with targetId, profileType, tags, windowStart,
                windowEnd and samples ({stack, value[, timestamp]})

        Returns:
            ProfileBatch
        """
        def pick(camel: str, snake: str, default=None):
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        samples = []
        for raw in pick('samples', 'samples', []) or []:
            if isinstance(raw, Sample):
                samples.append(raw)
                continue
            if not isinstance(raw, Mapping):
                # Left for the normalizer to reject as a single bad sample
                samples.append(Sample(stack=(), value=raw))
                continue
            stack = raw.get('stack')
            samples.append(Sample(
                # Anything but a list is passed through for the normalizer to reject
                stack=tuple(stack) if isinstance(stack, (list, tuple)) else stack,
                value=raw.get('value'),
                timestamp=raw.get('timestamp'),
            ))

        return cls(
            target_id=pick('targetId', 'target_id'),
            profile_type=pick('profileType', 'profile_type'),
            window_start=pick('windowStart', 'window_start'),
            window_end=pick('windowEnd', 'window_end'),
            samples=samples,
            tags=dict(pick('tags', 'tags', {}) or {}),
        )


@dataclass(frozen=True)
class Alert:
    """
    A flagged leak candidate.

    slope is in value units per bucket of bucket_width seconds, confidence
    is the R^2 of the fit.
    """
    target_id: str
    profile_type: ProfileType
    tags: Tags
    start: float
    end: float
    slope: float
    confidence: float
    created_at: float
    bucket_width: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'targetId': self.target_id,
            'profileType': self.profile_type.value,
            'tags': dict(self.tags),
            'timeRange': {'start': self.start, 'end': self.end},
            'slope': self.slope,
            'confidence': self.confidence,
            'createdAt': self.created_at,
            'bucketWidth': self.bucket_width,
        }
