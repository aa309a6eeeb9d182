# leakscope/collector/ingest.py - Batch ingestion pipeline
"""
Ingestion pipeline: validates sampler batches, normalizes their samples,
pre-aggregates them per bucket and writes the trees into the store.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Union
import logging
import math
import numbers

from leakscope.collector.call_tree import CallTree
from leakscope.collector.models import ProfileBatch, ProfileType
from leakscope.collector.normalizer import Normalizer
from leakscope.errors import (
    MalformedBatchError,
    MalformedSampleError,
    StoreCapacityExceeded,
    TagCardinalityExceeded,
    UnknownProfileTypeError,
)
from leakscope.storage.store import TimeIndexedStore


@dataclass
class IngestReport:
    """
    Outcome of ingesting one batch.
    """
    target_id: str
    profile_type: str
    merged: int = 0
    malformed: int = 0
    late: int = 0
    dropped: int = 0
    buckets: List[float] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class IngestionPipeline:
    """
    Feeds sampler batches through the normalizer into the store.

    Malformed samples are skipped and counted; malformed batches are
    rejected with MalformedBatchError. Neither ever stops the pipeline.
    """

    # Sample errors kept verbatim on a report; the rest are only counted
    MAX_REPORTED_ERRORS = 20

    def __init__(self, normalizer: Normalizer, store: TimeIndexedStore, metrics=None):
        """
        Initialize the pipeline.

        Args:
            normalizer: Frame normalizer
            store: Destination store
            metrics: Optional IngestMetrics
        """
        self.normalizer = normalizer
        self.store = store
        self.metrics = metrics

        self.batch_count = 0
        self.rejected_batches = 0
        self.sample_count = 0
        self.malformed_count = 0
        self.dropped_count = 0

        self.logger = logging.getLogger(__name__)

    def ingest(self, batch: Union[ProfileBatch, Mapping]) -> IngestReport:
        """
        Ingest one batch.

        Args:
            batch: ProfileBatch or its decoded wire mapping

        Returns:
            IngestReport with per-batch counters

        Raises:
            MalformedBatchError: the batch was rejected as a whole
        """
        if not isinstance(batch, ProfileBatch):
            try:
                batch = ProfileBatch.from_dict(batch)
            except (AttributeError, TypeError, ValueError) as e:
                self._reject('unreadable', f"unreadable batch: {e}")

        profile_type = self._validate(batch)
        report = IngestReport(target_id=batch.target_id, profile_type=profile_type.value)

        # bucket start -> (tree, sample count, representative timestamp)
        groups: Dict[float, list] = {}
        for sample in batch.samples:
            try:
                normalized = self.normalizer.normalize(
                    batch.target_id, sample.stack, profile_type, sample.value
                )
                timestamp = self._sample_time(sample.timestamp, batch)
            except MalformedSampleError as e:
                report.malformed += 1
                if len(report.errors) < self.MAX_REPORTED_ERRORS:
                    report.errors.append(str(e))
                continue

            start = self.store.bucket_start(timestamp)
            group = groups.get(start)
            if group is None:
                group = groups[start] = [CallTree(), 0, timestamp]
            group[0].add_stack(normalized.frames, normalized.value)
            group[1] += 1

        for start in sorted(groups):
            tree, count, timestamp = groups[start]
            try:
                result = self.store.write(
                    batch.target_id, profile_type, batch.tags, timestamp, tree, samples=count
                )
            except TagCardinalityExceeded as e:
                self._reject('tag_cardinality', str(e), cause=e)
            except StoreCapacityExceeded as e:
                report.dropped += count
                report.errors.append(str(e))
                self.logger.error(f"Dropped {count} samples of {batch.target_id}: {e}")
                continue

            report.merged += count
            if result.late:
                report.late += count
            if result.bucket_start not in report.buckets:
                report.buckets.append(result.bucket_start)

        if report.merged:
            self.store.mark_covered(
                batch.target_id, profile_type, batch.tags, batch.window_start, batch.window_end
            )

        self.batch_count += 1
        self.sample_count += report.merged
        self.malformed_count += report.malformed
        self.dropped_count += report.dropped

        if self.metrics:
            self.metrics.record_samples(profile_type.value, report.merged)
            self.metrics.record_malformed_samples(profile_type.value, report.malformed)

        if report.malformed:
            self.logger.warning(
                f"Skipped {report.malformed} malformed samples in batch for "
                f"{batch.target_id}/{profile_type.value}"
            )
        self.logger.debug(
            f"Ingested {report.merged} samples for {batch.target_id}/{profile_type.value} "
            f"into {len(report.buckets)} buckets"
        )
        return report

    def ingest_stream(self, batches: Iterable) -> List[IngestReport]:
        """
        Ingest a sequence of batches, skipping rejected ones.

        Args:
            batches: Iterable of ProfileBatch or wire mappings

        Returns:
            Reports of the accepted batches
        """
        reports = []
        for batch in batches:
            try:
                reports.append(self.ingest(batch))
            except MalformedBatchError as e:
                self.logger.warning(f"Rejected batch: {e}")
        return reports

    def _validate(self, batch: ProfileBatch) -> ProfileType:
        """Check batch-level fields and resolve the profile type."""
        if not batch.target_id or not isinstance(batch.target_id, str):
            self._reject('target', f"missing target id: {batch.target_id!r}")

        try:
            profile_type = ProfileType.parse(batch.profile_type)
        except UnknownProfileTypeError as e:
            self._reject('profile_type', str(e))

        for name in ('window_start', 'window_end'):
            value = getattr(batch, name)
            if not _is_time(value):
                self._reject('window', f"{name} is not a finite number: {value!r}")
        if batch.window_start >= batch.window_end:
            self._reject(
                'window',
                f"window start {batch.window_start} is not before end {batch.window_end}"
            )

        if not isinstance(batch.tags, Mapping):
            self._reject('tags', f"tags must be a mapping, got {type(batch.tags).__name__}")
        return profile_type

    def _sample_time(self, timestamp: Optional[float], batch: ProfileBatch) -> float:
        if timestamp is None:
            return batch.window_start
        if not _is_time(timestamp):
            raise MalformedSampleError(f"sample timestamp is not a number: {timestamp!r}")
        if not batch.window_start <= timestamp < batch.window_end:
            raise MalformedSampleError(
                f"sample timestamp {timestamp} outside batch window "
                f"[{batch.window_start}, {batch.window_end})"
            )
        return timestamp

    def _reject(self, reason: str, message: str, cause: Exception = None):
        self.rejected_batches += 1
        if self.metrics:
            self.metrics.record_malformed_batch(reason)
        self.logger.warning(f"Rejecting batch: {message}")
        if isinstance(cause, MalformedBatchError):
            raise cause
        raise MalformedBatchError(message)

    def get_stats(self) -> Dict:
        """
        Get pipeline statistics.

        Returns:
            Dictionary with ingestion counters
        """
        return {
            'batches': self.batch_count,
            'rejected_batches': self.rejected_batches,
            'samples_merged': self.sample_count,
            'malformed_samples': self.malformed_count,
            'dropped_samples': self.dropped_count,
        }


def _is_time(value) -> bool:
    return (isinstance(value, numbers.Real) and not isinstance(value, bool)
            and math.isfinite(value))
