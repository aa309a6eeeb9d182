# leakscope/storage/store.py - Time-indexed call-tree store
"""
Time-indexed store of call-tree snapshots.

Each (target, profile type, tag set) series owns a sorted, contiguous
run of non-overlapping buckets. Recent buckets are live and accept merges;
buckets that fall out of the live window are sealed, later consolidated
into coarser buckets, and finally evicted past the retention horizon.

Writes to one series are serialized by that series' lock. The bucket index
of a series is an immutable tuple swapped on change, so readers walk it
without locking; only still-live trees are copied under the series lock.
"""

from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Tuple
import logging
import math
import threading
import time

from leakscope.collector.call_tree import CallTree, merge_trees
from leakscope.collector.models import SeriesKey, TimeRange
from leakscope.errors import (
    ConfigError,
    CoverageGapError,
    DeadlineExceeded,
    InvariantViolation,
    StoreCapacityExceeded,
    TagCardinalityExceeded,
)


DEFAULT_STORE_CONFIG = {
    'live_window': 60,
    'bucket_width_schedule': [
        {'age': 0, 'width': 10},
        {'age': 600, 'width': 60},
        {'age': 21600, 'width': 600},
    ],
    'retention_horizon': 7 * 24 * 3600,
    'max_buckets': 100000,
    'max_tag_sets_per_target': 64,
    'shards': 16,
    'float_epsilon': 1e-9,
}


@dataclass
class Bucket:
    """
    Snapshot of one series over [start, end).

    Once sealed, the tree is never mutated again.
    """
    start: float
    end: float
    tree: CallTree
    sealed: bool = False

    @property
    def width(self) -> float:
        return self.end - self.start


@dataclass
class WriteResult:
    """Where a write landed."""
    key: SeriesKey
    bucket_start: float
    late: bool = False
    created: bool = False


@dataclass
class ReadResult:
    """
    Merged tree for a range plus read-quality flags.

    coverage_gaps lists sub-ranges with no retained bucket; partial is set
    when a deadline cut the merge short.
    """
    tree: CallTree
    bucket_count: int = 0
    coverage_gaps: List[Tuple[float, float]] = field(default_factory=list)
    partial: bool = False
    found: bool = False

    @property
    def has_gaps(self) -> bool:
        return bool(self.coverage_gaps)

    def raise_for_gaps(self):
        """Raise CoverageGapError when any part of the range is uncovered."""
        if self.coverage_gaps:
            raise CoverageGapError(self.coverage_gaps)


@dataclass
class BucketPoint:
    """Root cumulative value of one bucket."""
    start: float
    end: float
    value: float
    sealed: bool


@dataclass
class CompactionReport:
    """Outcome of one compaction pass."""
    sealed: int = 0
    consolidated: int = 0
    evicted: int = 0
    removed_series: int = 0


class _Series:
    """Mutable state of one series. Guarded by its own lock."""

    def __init__(self, key: SeriesKey):
        self.key = key
        self.lock = threading.Lock()
        self.buckets: Tuple[Bucket, ...] = ()
        # Sorted, disjoint [start, end) spans declared by ingested batches
        self.covered: Tuple[Tuple[float, float], ...] = ()
        self.first_start: Optional[float] = None
        self.late_sample_count = 0
        self.removed = False


class TimeIndexedStore:
    """
    Retains call-tree buckets per series and answers range queries.

    Recognized options (see DEFAULT_STORE_CONFIG):
        live_window: seconds a bucket stays writable after it closes
        bucket_width_schedule: list of {age, width} consolidation tiers
        retention_horizon: seconds after which buckets are evicted
        max_buckets: soft cap on retained buckets across all series
        max_tag_sets_per_target: cap on distinct tag sets per target
        shards: number of index shards
        float_epsilon: tolerance when checking floating-point totals
    """

    def __init__(self, config: Optional[Dict] = None, clock=time.time, metrics=None):
        """
        Initialize the store.

        Args:
            config: Optional store options
            clock: Callable returning the current POSIX time
            metrics: Optional IngestMetrics for late samples and evictions
        """
        self.config = _validated_config(config)
        self.clock = clock
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

        self.live_window = self.config['live_window']
        self.schedule = self.config['bucket_width_schedule']
        self.base_width = self.schedule[0]['width']
        self.retention_horizon = self.config['retention_horizon']
        self.max_buckets = self.config['max_buckets']
        self.max_tag_sets = self.config['max_tag_sets_per_target']
        self.float_epsilon = self.config['float_epsilon']

        shard_count = self.config['shards']
        self._shards: List[Dict[SeriesKey, _Series]] = [{} for _ in range(shard_count)]
        self._shard_locks = [threading.Lock() for _ in range(shard_count)]

        self._targets_lock = threading.Lock()
        self._target_tags: Dict[str, set] = {}

        self._count_lock = threading.Lock()
        self._bucket_count = 0

    # -- index ------------------------------------------------------------

    def _shard(self, key: SeriesKey) -> int:
        return hash(key) % len(self._shards)

    def _get_series(self, key: SeriesKey) -> Optional[_Series]:
        return self._shards[self._shard(key)].get(key)

    def _check_tag_capacity(self, key: SeriesKey):
        """Raise TagCardinalityExceeded if key would add one tag set too many."""
        with self._targets_lock:
            tag_sets = self._target_tags.get(key.target_id, ())
            if key.tags not in tag_sets and len(tag_sets) >= self.max_tag_sets:
                raise TagCardinalityExceeded(key.target_id, self.max_tag_sets)

    def _get_or_create_series(self, key: SeriesKey) -> _Series:
        series = self._get_series(key)
        if series is not None:
            return series

        with self._targets_lock:
            tag_sets = self._target_tags.setdefault(key.target_id, set())
            if key.tags not in tag_sets:
                if len(tag_sets) >= self.max_tag_sets:
                    raise TagCardinalityExceeded(key.target_id, self.max_tag_sets)
                tag_sets.add(key.tags)

        index = self._shard(key)
        with self._shard_locks[index]:
            series = self._shards[index].get(key)
            if series is None:
                series = _Series(key)
                self._shards[index][key] = series
                self.logger.debug(f"Created series {key}")
        return series

    def _all_series(self) -> List[_Series]:
        result = []
        for shard in self._shards:
            result.extend(list(shard.values()))
        return result

    def _adjust_count(self, delta: int):
        with self._count_lock:
            self._bucket_count += delta

    # -- time helpers -----------------------------------------------------

    def bucket_start(self, timestamp: float, width: Optional[float] = None) -> float:
        """Start of the width-aligned bucket containing timestamp."""
        width = width or self.base_width
        return math.floor(timestamp / width) * width

    def live_floor(self, now: float) -> float:
        """Start of the oldest bucket that is still live at now."""
        return self.bucket_start(now - self.live_window)

    # -- write path -------------------------------------------------------

    def write(self, target_id: str, profile_type, tags, timestamp: float,
              tree: CallTree, samples: int = 1) -> WriteResult:
        """
        Merge a tree into the live bucket covering timestamp.

        Timestamps that fall into an already sealed bucket are redirected to
        the oldest live bucket and counted as late samples.

        Args:
            target_id: Target identifier
            profile_type: ProfileType or its string value
            tags: Tag mapping (or canonical tag tuple)
            timestamp: Capture time of the samples in tree
            tree: Pre-aggregated call tree; not retained by the store
            samples: Number of samples folded into tree

        Returns:
            WriteResult

        Raises:
            TagCardinalityExceeded: new tag set beyond the per-target cap
            StoreCapacityExceeded: store full and nothing can be evicted
        """
        key = SeriesKey.of(target_id, profile_type, tags)
        series = self._get_series(key)
        if series is None:
            self._check_tag_capacity(key)
        now = self.clock()

        start = self.bucket_start(timestamp)
        floor = self.live_floor(now)
        late = start < floor
        if late:
            start = floor

        if self._bucket_count >= self.max_buckets and (series is None or not self._has_bucket(series, start)):
            self._make_room(now)

        # Registered only once the write is certain to land
        if series is None:
            series = self._get_or_create_series(key)

        with series.lock:
            buckets = series.buckets
            starts = [b.start for b in buckets]
            index = bisect_right(starts, start) - 1
            while index >= 0 and buckets[index].end > start and buckets[index].sealed:
                # Sealed by a compaction pass running on a later clock reading
                late = True
                start = buckets[index].end
                index = bisect_right(starts, start) - 1

            created = False
            if index >= 0 and buckets[index].start == start:
                buckets[index].tree.merge(tree)
            else:
                index += 1
                bucket = Bucket(start, start + self.base_width, tree.copy())
                series.buckets = buckets[:index] + (bucket,) + buckets[index:]
                if series.first_start is None or start < series.first_start:
                    series.first_start = start
                created = True

            if late:
                series.late_sample_count += samples

        if created:
            self._adjust_count(1)
        if late:
            self.logger.debug(f"Redirected {samples} late samples for {key} to bucket {start}")
            if self.metrics:
                self.metrics.record_late_samples(samples)

        return WriteResult(key=key, bucket_start=start, late=late, created=created)

    def _has_bucket(self, series: _Series, start: float) -> bool:
        return any(b.start == start for b in series.buckets)

    def _make_room(self, now: float):
        """
        Evict the oldest sealed buckets until the store is below capacity.

        Live buckets are never evicted.

        Raises:
            StoreCapacityExceeded: when no sealed bucket remains
        """
        self.logger.warning(
            f"Store at capacity ({self._bucket_count}/{self.max_buckets}), evicting oldest sealed buckets"
        )
        self.seal_expired(now)

        while self._bucket_count >= self.max_buckets:
            oldest_series = None
            oldest_start = None
            for series in self._all_series():
                for bucket in series.buckets:
                    if bucket.sealed:
                        if oldest_start is None or bucket.start < oldest_start:
                            oldest_series, oldest_start = series, bucket.start
                        break

            if oldest_series is None:
                raise StoreCapacityExceeded(self.max_buckets)

            with oldest_series.lock:
                kept = tuple(b for b in oldest_series.buckets if b.start != oldest_start)
                dropped = len(oldest_series.buckets) - len(kept)
                oldest_series.buckets = kept
            self._adjust_count(-dropped)
            if self.metrics:
                self.metrics.record_evictions(dropped)

    # -- read path --------------------------------------------------------

    def read(self, target_id: str, profile_type, tags, time_range: TimeRange,
             deadline: Optional[float] = None) -> ReadResult:
        """
        Merge every bucket intersecting time_range.

        Buckets are merged most-recent-first. An unknown series yields an
        empty tree with found=False.

        Args:
            target_id: Target identifier
            profile_type: ProfileType or its string value
            tags: Tag mapping (or canonical tag tuple)
            time_range: Range to read
            deadline: Optional time.monotonic() value after which merging
                stops and the result is flagged partial

        Returns:
            ReadResult

        Raises:
            UnknownProfileTypeError: profile type not recognized
        """
        key = SeriesKey.of(target_id, profile_type, tags)
        series = self._get_series(key)
        if series is None:
            return ReadResult(tree=CallTree())

        buckets = [b for b in series.buckets if time_range.overlaps(b.start, b.end)]
        result = ReadResult(
            tree=CallTree(),
            coverage_gaps=self._coverage_gaps(series, time_range),
            found=True,
        )

        try:
            for bucket in reversed(buckets):
                _check_deadline(deadline)
                if bucket.sealed:
                    result.tree.merge(bucket.tree)
                else:
                    with series.lock:
                        result.tree.merge(bucket.tree)
                result.bucket_count += 1
        except DeadlineExceeded:
            result.partial = True
            self.logger.info(
                f"Read of {key} hit its deadline after {result.bucket_count}/{len(buckets)} buckets"
            )

        return result

    def _coverage_gaps(self, series: _Series, time_range: TimeRange) -> List[Tuple[float, float]]:
        """
        Sub-ranges of time_range with neither a bucket nor a batch window
        declaring them observed, clipped to the span the series has ever
        covered.
        """
        spans = sorted([(b.start, b.end) for b in series.buckets] + list(series.covered))
        if series.first_start is None or not spans:
            return []

        span_start = max(time_range.start, min(series.first_start, spans[0][0]))
        span_end = min(time_range.end, max(end for _, end in spans))
        if span_start >= span_end:
            return []

        gaps = []
        cursor = span_start
        for start, end in spans:
            if end <= cursor:
                continue
            if start >= span_end:
                break
            if start > cursor:
                gaps.append((cursor, start))
            cursor = max(cursor, end)
        if cursor < span_end:
            gaps.append((cursor, span_end))
        return gaps

    def mark_covered(self, target_id: str, profile_type, tags, start: float, end: float) -> bool:
        """
        Record [start, end) as observed time of an existing series.

        A sampler running slower than the base bucket width leaves empty
        buckets inside its batch windows; those are not coverage gaps. The
        part of the window before the live floor is ignored because its
        samples were redirected.

        Returns:
            True if any time was recorded
        """
        key = SeriesKey.of(target_id, profile_type, tags)
        series = self._get_series(key)
        if series is None:
            return False

        start = max(start, self.live_floor(self.clock()))
        if start >= end:
            return False
        with series.lock:
            series.covered = _add_span(series.covered, start, end)
        return True

    def covered_spans(self, key: SeriesKey) -> Tuple[Tuple[float, float], ...]:
        series = self._get_series(key)
        return series.covered if series else ()

    def bucket_points(self, key: SeriesKey, time_range: Optional[TimeRange] = None) -> List[BucketPoint]:
        """
        Root values of a series' buckets in time order.

        Args:
            key: Series key
            time_range: Optional range restricting the buckets returned

        Returns:
            List of BucketPoint
        """
        series = self._get_series(key)
        if series is None:
            return []

        points = []
        for bucket in series.buckets:
            if time_range is not None and not time_range.overlaps(bucket.start, bucket.end):
                continue
            if bucket.sealed:
                value = bucket.tree.total
            else:
                with series.lock:
                    value = bucket.tree.total
            points.append(BucketPoint(bucket.start, bucket.end, value, bucket.sealed))
        return points

    def exists(self, target_id: str) -> bool:
        """True if anything was ever ingested for target_id and not yet evicted."""
        with self._targets_lock:
            return target_id in self._target_tags

    def keys(self, target_id: Optional[str] = None, profile_type=None) -> List[SeriesKey]:
        """Series keys, optionally filtered by target and profile type."""
        result = []
        for series in self._all_series():
            key = series.key
            if target_id is not None and key.target_id != target_id:
                continue
            if profile_type is not None and key.profile_type != profile_type:
                continue
            result.append(key)
        result.sort(key=lambda k: (k.target_id, k.profile_type.value, k.tags))
        return result

    def late_sample_count(self, key: SeriesKey) -> int:
        series = self._get_series(key)
        return series.late_sample_count if series else 0

    # -- lifecycle --------------------------------------------------------

    def remove_target(self, target_id: str) -> int:
        """
        Mark every series of a target for eviction on the next compaction.

        Returns:
            Number of series marked
        """
        marked = 0
        for series in self._all_series():
            if series.key.target_id == target_id:
                series.removed = True
                marked += 1
        self.logger.info(f"Marked {marked} series of target {target_id} for eviction")
        return marked

    def seal_expired(self, now: Optional[float] = None) -> int:
        """
        Seal every bucket that has left the live window.

        Returns:
            Number of buckets sealed
        """
        now = self.clock() if now is None else now
        floor = self.live_floor(now)
        sealed = 0
        for series in self._all_series():
            with series.lock:
                for bucket in series.buckets:
                    if not bucket.sealed and bucket.start < floor:
                        bucket.sealed = True
                        sealed += 1
        return sealed

    def compact(self, now: Optional[float] = None, should_stop=None) -> CompactionReport:
        """
        Run one compaction pass: seal, consolidate, evict.

        Each series is handled in its own short critical section so
        ingestion and queries on other series are never blocked.

        Args:
            now: Time to compact at (defaults to the clock)
            should_stop: Optional callable; when it returns True the pass
                stops between series

        Returns:
            CompactionReport
        """
        now = self.clock() if now is None else now
        report = CompactionReport(sealed=self.seal_expired(now))
        horizon = now - self.retention_horizon

        for series in self._all_series():
            if should_stop is not None and should_stop():
                self.logger.info("Compaction cancelled")
                break

            if series.removed:
                self._drop_series(series)
                report.removed_series += 1
                continue

            report.consolidated += self._consolidate(series, now)
            report.evicted += self._evict_expired(series, horizon)

        if report.evicted and self.metrics:
            self.metrics.record_evictions(report.evicted)
        if self.metrics:
            self.metrics.set_bucket_gauge(self.get_stats())

        self.logger.debug(
            f"Compaction: sealed={report.sealed} consolidated={report.consolidated} "
            f"evicted={report.evicted} removed_series={report.removed_series}"
        )
        return report

    def _consolidate(self, series: _Series, now: float) -> int:
        """
        Merge sealed buckets into the coarser tiers of the schedule.

        Returns:
            Number of fine buckets folded into coarse ones
        """
        floor = self.live_floor(now)
        folded = 0

        for tier in self.schedule[1:]:
            width = tier['width']
            cutoff = now - tier['age']

            with series.lock:
                buckets = series.buckets
                groups: Dict[float, List[Bucket]] = {}
                for bucket in buckets:
                    coarse_start = self.bucket_start(bucket.start, width)
                    groups.setdefault(coarse_start, []).append(bucket)

                replacements: Dict[float, Bucket] = {}
                for coarse_start, members in groups.items():
                    coarse_end = coarse_start + width
                    if coarse_end > cutoff or coarse_end > floor:
                        continue
                    if len(members) == 1 and members[0].width >= width:
                        continue
                    if not all(b.sealed for b in members):
                        continue
                    replacements[coarse_start] = Bucket(
                        coarse_start, coarse_end, self._merge_checked(series.key, members), sealed=True
                    )

                if not replacements:
                    continue

                rebuilt = []
                for bucket in buckets:
                    coarse_start = self.bucket_start(bucket.start, width)
                    if coarse_start in replacements:
                        if replacements[coarse_start] is not None:
                            rebuilt.append(replacements[coarse_start])
                            replacements[coarse_start] = None
                        folded += 1
                    else:
                        rebuilt.append(bucket)
                removed = len(buckets) - len(rebuilt)
                series.buckets = tuple(rebuilt)

            self._adjust_count(-removed)

        return folded

    def _merge_checked(self, key: SeriesKey, members: List[Bucket]) -> CallTree:
        """Merge bucket trees and verify the root total is preserved."""
        merged = merge_trees(*(b.tree for b in reversed(members)))
        expected = sum(b.tree.total for b in members)
        if key.profile_type.is_integral:
            ok = merged.total == expected
        else:
            ok = abs(merged.total - expected) <= self.float_epsilon * max(1.0, abs(expected))
        if not ok:
            self.logger.critical(
                f"Consolidation of {len(members)} buckets of {key} changed the total "
                f"from {expected} to {merged.total}"
            )
            raise InvariantViolation(f"consolidation changed total of {key}")
        return merged

    def _evict_expired(self, series: _Series, horizon: float) -> int:
        with series.lock:
            kept = tuple(b for b in series.buckets if b.end > horizon)
            evicted = len(series.buckets) - len(kept)
            series.buckets = kept
            series.covered = tuple((max(s, horizon), e) for s, e in series.covered if e > horizon)
        if evicted:
            self._adjust_count(-evicted)
        return evicted

    def _drop_series(self, series: _Series):
        key = series.key
        index = self._shard(key)
        with self._shard_locks[index]:
            self._shards[index].pop(key, None)
        with series.lock:
            dropped = len(series.buckets)
            series.buckets = ()
            series.covered = ()
        self._adjust_count(-dropped)

        with self._targets_lock:
            remaining = [s for s in self._all_series() if s.key.target_id == key.target_id]
            if not remaining:
                self._target_tags.pop(key.target_id, None)
            else:
                self._target_tags[key.target_id] = {s.key.tags for s in remaining}
        self.logger.info(f"Evicted removed series {key} ({dropped} buckets)")

    # -- persistence support ----------------------------------------------

    def iter_buckets(self) -> Iterator[Tuple[SeriesKey, Bucket]]:
        """Yield (key, bucket copy) for every retained bucket."""
        for series in self._all_series():
            with series.lock:
                snapshot = [replace(b, tree=b.tree.copy()) for b in series.buckets]
            for bucket in snapshot:
                yield series.key, bucket

    def restore_bucket(self, key: SeriesKey, bucket: Bucket):
        """
        Insert a previously persisted bucket.

        Raises:
            InvariantViolation: if it overlaps a retained bucket of its series
        """
        series = self._get_or_create_series(key)
        with series.lock:
            buckets = series.buckets
            for existing in buckets:
                if existing.start < bucket.end and bucket.start < existing.end:
                    raise InvariantViolation(
                        f"restored bucket [{bucket.start}, {bucket.end}) overlaps "
                        f"[{existing.start}, {existing.end}) in {key}"
                    )
            index = bisect_left([b.start for b in buckets], bucket.start)
            series.buckets = buckets[:index] + (bucket,) + buckets[index:]
            if series.first_start is None or bucket.start < series.first_start:
                series.first_start = bucket.start
        self._adjust_count(1)

    def restore_coverage(self, key: SeriesKey, spans):
        """Re-add persisted observed spans to a restored series."""
        series = self._get_series(key)
        if series is None:
            return
        with series.lock:
            for start, end in spans:
                series.covered = _add_span(series.covered, start, end)

    def get_stats(self) -> Dict:
        """
        Get store statistics.

        Returns:
            Dictionary with bucket and series counts
        """
        series_list = self._all_series()
        sealed = sum(1 for s in series_list for b in s.buckets if b.sealed)
        return {
            'series': len(series_list),
            'targets': len(self._target_tags),
            'buckets': self._bucket_count,
            'sealed_buckets': sealed,
            'live_buckets': self._bucket_count - sealed,
            'late_samples': sum(s.late_sample_count for s in series_list),
        }


def _add_span(spans, start: float, end: float) -> Tuple[Tuple[float, float], ...]:
    """Union [start, end) into sorted disjoint spans, joining touching ones."""
    merged = []
    for s, e in spans:
        if e < start or s > end:
            merged.append((s, e))
        else:
            start, end = min(s, start), max(e, end)
    merged.append((start, end))
    merged.sort()
    return tuple(merged)


def _check_deadline(deadline: Optional[float]):
    if deadline is not None and time.monotonic() >= deadline:
        raise DeadlineExceeded()


def _validated_config(config: Optional[Dict]) -> Dict:
    """Merge options over the defaults and reject inconsistent schedules."""
    merged = dict(DEFAULT_STORE_CONFIG)
    for name, value in (config or {}).items():
        if name not in DEFAULT_STORE_CONFIG:
            raise ConfigError(f"unknown store option: {name}")
        merged[name] = value

    schedule = [dict(tier) for tier in merged['bucket_width_schedule']]
    if not schedule:
        raise ConfigError("bucket_width_schedule must have at least one tier")
    if schedule[0].get('age', 0) != 0:
        raise ConfigError("first bucket_width_schedule tier must have age 0")
    for previous, tier in zip(schedule, schedule[1:]):
        if tier['age'] <= previous['age']:
            raise ConfigError("bucket_width_schedule ages must be strictly increasing")
        if tier['width'] <= previous['width'] or tier['width'] % previous['width']:
            raise ConfigError(
                f"bucket width {tier['width']} must be a larger multiple of {previous['width']}"
            )
    for tier in schedule:
        if tier['width'] <= 0:
            raise ConfigError("bucket widths must be positive")
    merged['bucket_width_schedule'] = schedule

    if merged['live_window'] < 0:
        raise ConfigError("live_window must not be negative")
    if merged['retention_horizon'] <= merged['live_window']:
        raise ConfigError("retention_horizon must exceed live_window")
    if merged['max_buckets'] < 1 or merged['max_tag_sets_per_target'] < 1 or merged['shards'] < 1:
        raise ConfigError("max_buckets, max_tag_sets_per_target and shards must be positive")
    return merged
