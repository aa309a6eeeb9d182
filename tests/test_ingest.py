# tests/test_ingest.py - Tests for ingestion pipeline
"""
Unit tests for IngestionPipeline batch validation and sample handling.
"""

import pytest
from leakscope.collector.ingest import IngestionPipeline
from leakscope.collector.models import Frame, ProfileBatch, Sample, TimeRange
from leakscope.collector.normalizer import Normalizer
from leakscope.errors import MalformedBatchError, TagCardinalityExceeded
from leakscope.exporters.prometheus import IngestMetrics
from leakscope.storage.store import TimeIndexedStore


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_pipeline(now=1000, **store_config):
    metrics = IngestMetrics()
    store = TimeIndexedStore(store_config, clock=FakeClock(now), metrics=metrics)
    return IngestionPipeline(Normalizer(), store, metrics=metrics)


def batch(samples, profile_type='inuse-space', start=990, end=1000, tags=None, target='api-1'):
    return {
        'targetId': target,
        'profileType': profile_type,
        'windowStart': start,
        'windowEnd': end,
        'tags': tags or {},
        'samples': samples,
    }


class TestIngestionPipeline:
    """Test cases for IngestionPipeline"""

    def test_malformed_sample_is_skipped(self):
        """Test a batch with one negative value among good samples"""
        pipeline = make_pipeline()
        report = pipeline.ingest(batch([
            {'stack': ['main', 'handleRequest'], 'value': 10},
            {'stack': ['main', 'handleRequest'], 'value': -5},
            {'stack': ['main', 'gc'], 'value': 20},
        ]))

        assert report.merged == 2
        assert report.malformed == 1
        assert len(report.errors) == 1
        tree = pipeline.store.read('api-1', 'inuse-space', {}, TimeRange(990, 1000)).tree
        assert tree.total == 30

    def test_accepts_profile_batch(self):
        """Test ingesting a ProfileBatch instance"""
        pipeline = make_pipeline()
        report = pipeline.ingest(ProfileBatch(
            target_id='api-1', profile_type='cpu-time', window_start=990, window_end=1000,
            samples=[Sample(stack=('main',), value=1.5)],
        ))
        assert report.merged == 1
        assert report.profile_type == 'cpu-time'

    def test_sample_timestamps_pick_buckets(self):
        """Test that per-sample timestamps spread a batch over buckets"""
        pipeline = make_pipeline()
        report = pipeline.ingest(batch([
            {'stack': ['main'], 'value': 1, 'timestamp': 975},
            {'stack': ['main'], 'value': 2, 'timestamp': 985},
        ], start=970, end=1000))

        assert report.buckets == [970, 980]
        store = pipeline.store
        assert store.read('api-1', 'inuse-space', {}, TimeRange(970, 980)).tree.total == 1
        assert store.read('api-1', 'inuse-space', {}, TimeRange(980, 990)).tree.total == 2

    def test_sample_timestamp_outside_window(self):
        """Test that a sample stamped outside its window is malformed"""
        pipeline = make_pipeline()
        report = pipeline.ingest(batch([
            {'stack': ['main'], 'value': 1, 'timestamp': 1005},
            {'stack': ['main'], 'value': 1},
        ]))
        assert report.merged == 1
        assert report.malformed == 1

    def test_late_batch(self):
        """Test that a batch older than the live window is counted late"""
        pipeline = make_pipeline(now=2000)
        report = pipeline.ingest(batch([{'stack': ['main'], 'value': 1}]))

        assert report.late == 1
        assert report.buckets == [pipeline.store.live_floor(2000)]

    def test_non_mapping_sample(self):
        """Test that a garbage sample entry only loses that sample"""
        pipeline = make_pipeline()
        report = pipeline.ingest(batch([42, {'stack': ['main'], 'value': 1}]))
        assert report.merged == 1
        assert report.malformed == 1

    @pytest.mark.parametrize("stack", [5, None, {'function': 'main'}, 'main;f'])
    def test_bad_stack_only_loses_sample(self, stack):
        """Test that a stack of the wrong shape is one malformed sample"""
        pipeline = make_pipeline()
        reports = pipeline.ingest_stream([batch([
            {'stack': ['main', 'handleRequest'], 'value': 1},
            {'stack': stack, 'value': 3},
            {'stack': ['main', 'gc'], 'value': 2},
        ])])

        assert len(reports) == 1
        assert reports[0].merged == 2
        assert reports[0].malformed == 1
        assert pipeline.get_stats()['rejected_batches'] == 0

    def test_batch_window_counts_as_covered(self):
        """Test that a sampler slower than the bucket width leaves no gaps"""
        pipeline = make_pipeline()
        for start in (940, 960, 980):
            pipeline.ingest(batch([{'stack': ['main'], 'value': 1}], start=start, end=start + 20))

        read = pipeline.store.read('api-1', 'inuse-space', {}, TimeRange(940, 1000))
        assert read.bucket_count == 3
        assert read.tree.total == 3
        assert read.coverage_gaps == []

    @pytest.mark.parametrize("overrides", [
        {'windowStart': 1000, 'windowEnd': 990},
        {'windowStart': 1000, 'windowEnd': 1000},
        {'windowStart': None},
        {'windowEnd': float('nan')},
        {'profileType': 'heap-magic'},
        {'targetId': ''},
        {'tags': 'region=eu'},
    ])
    def test_rejects_malformed_batch(self, overrides):
        """Test batch-level validation"""
        pipeline = make_pipeline()
        raw = batch([{'stack': ['main'], 'value': 1}])
        raw.update(overrides)

        with pytest.raises(MalformedBatchError):
            pipeline.ingest(raw)
        assert pipeline.get_stats()['rejected_batches'] == 1
        assert pipeline.store.keys() == []

    def test_tag_cardinality_rejects_batch(self):
        """Test that a batch over the tag set cap is rejected"""
        pipeline = make_pipeline(max_tag_sets_per_target=1)
        pipeline.ingest(batch([{'stack': ['main'], 'value': 1}], tags={'pod': 'a'}))

        with pytest.raises(TagCardinalityExceeded):
            pipeline.ingest(batch([{'stack': ['main'], 'value': 1}], tags={'pod': 'b'}))

    def test_store_full_drops_samples(self):
        """Test that capacity rejection drops samples without raising"""
        pipeline = make_pipeline(max_buckets=1)
        pipeline.ingest(batch([{'stack': ['main'], 'value': 1}], start=990, end=1000))
        report = pipeline.ingest(batch([{'stack': ['main'], 'value': 1}], start=980, end=990))

        assert report.dropped == 1
        assert report.merged == 0
        assert pipeline.get_stats()['dropped_samples'] == 1

    def test_ingest_stream_continues_past_rejections(self):
        """Test that a bad batch does not stop the stream"""
        pipeline = make_pipeline()
        reports = pipeline.ingest_stream([
            batch([{'stack': ['main'], 'value': 1}]),
            batch([{'stack': ['main'], 'value': 1}], profile_type='nope'),
            batch([{'stack': ['main'], 'value': 2}]),
        ])

        assert len(reports) == 2
        stats = pipeline.get_stats()
        assert stats['batches'] == 2
        assert stats['rejected_batches'] == 1
        assert stats['samples_merged'] == 2

    def test_frames_are_normalized(self):
        """Test that frame descriptors with different addresses merge"""
        pipeline = make_pipeline()
        pipeline.ingest(batch([
            {'stack': [{'function': 'main', 'address': 1}, {'function': 'f', 'file': 'a.go', 'line': 3}],
             'value': 1},
            {'stack': [{'function': 'main', 'address': 2}, {'function': 'f', 'file': 'a.go', 'line': 3}],
             'value': 1},
        ]))

        tree = pipeline.store.read('api-1', 'inuse-space', {}, TimeRange(990, 1000)).tree
        assert tree.find((Frame('main'), Frame('f', 'a.go:3'))).self_value == 2

    def test_metrics(self):
        """Test ingestion counters"""
        pipeline = make_pipeline()
        pipeline.ingest(batch([
            {'stack': ['main'], 'value': 1},
            {'stack': [], 'value': 1},
        ]))
        with pytest.raises(MalformedBatchError):
            pipeline.ingest(batch([], profile_type='nope'))

        text = pipeline.metrics.get_metrics_text()
        assert 'leakscope_samples_ingested_total{profile_type="inuse-space"} 1.0' in text
        assert 'leakscope_malformed_samples_total{profile_type="inuse-space"} 1.0' in text
        assert 'leakscope_malformed_batches_total{reason="profile_type"} 1.0' in text
