# tests/test_trend_scorer.py - Tests for trend scorer
"""
Unit tests for linear trend fitting, leak scoring and the alert log.
"""

import pytest
from leakscope.analyzer.trend_scorer import (
    STATUS_ALERT,
    STATUS_INDETERMINATE,
    STATUS_OK,
    AlertLog,
    ScoringLoop,
    TrendScorer,
    aligned_run,
    fit_linear_trend,
)
from leakscope.collector.call_tree import build_tree
from leakscope.collector.models import Frame, SeriesKey
from leakscope.errors import ConfigError
from leakscope.storage.store import BucketPoint, TimeIndexedStore


class FakeClock:
    """Manually advanced clock"""

    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


def fill_series(values, profile_type='concurrent-task-count', skip=()):
    """Write one bucket per value, then seal them all."""
    clock = FakeClock(1000)
    store = TimeIndexedStore(clock=clock)
    for i, value in enumerate(values):
        if i in skip:
            continue
        ts = 1000 + i * 10
        clock.now = ts
        store.write('api-1', profile_type, {}, ts, build_tree([((Frame('main'), Frame('spawn')), value)]))
    clock.now = 1000 + len(values) * 10 + 100
    store.seal_expired()
    return store, clock


def key(profile_type='concurrent-task-count'):
    return SeriesKey.of('api-1', profile_type, {})


class TestFitLinearTrend:
    """Test cases for fit_linear_trend"""

    def test_perfect_line(self):
        fit = fit_linear_trend([10, 20, 30, 40])
        assert fit.slope == pytest.approx(10.0)
        assert fit.intercept == pytest.approx(10.0)
        assert fit.r_squared == pytest.approx(1.0)

    def test_constant_series(self):
        """Test that a flat series has zero slope and zero R^2"""
        fit = fit_linear_trend([5, 5, 5, 5])
        assert fit.slope == 0
        assert fit.r_squared == 0

    def test_single_point(self):
        fit = fit_linear_trend([7])
        assert fit.slope == 0
        assert fit.intercept == 7


class TestAlignedRun:
    """Test cases for aligned_run"""

    def test_stops_at_empty_window(self):
        points = [BucketPoint(0, 10, 1, True), BucketPoint(20, 30, 1, True), BucketPoint(30, 40, 1, True)]
        assert [p.start for p in aligned_run(points, 10)] == [20, 30]

    def test_stops_at_wider_bucket(self):
        points = [BucketPoint(0, 60, 1, True), BucketPoint(60, 70, 1, True), BucketPoint(70, 80, 1, True)]
        assert [p.start for p in aligned_run(points, 10)] == [60, 70]

    def test_sums_into_coarser_windows(self):
        """Test that sparse fine buckets fill consecutive coarse windows"""
        points = [BucketPoint(t, t + 10, i + 1, True) for i, t in enumerate(range(0, 120, 20))]

        assert aligned_run(points, 10) == [BucketPoint(100, 110, 6, True)]
        run = aligned_run(points, 60, frontier=120)
        assert [(p.start, p.end, p.value) for p in run] == [(0, 60, 6), (60, 120, 15)]

    def test_open_and_partial_windows_dropped(self):
        """Test that unfinished and partly filled windows are left out"""
        points = [BucketPoint(t, t + 10, 1, True) for t in range(30, 100, 10)]
        assert aligned_run(points, 60, frontier=100) == []


class TestTrendScorer:
    """Test cases for TrendScorer"""

    def test_linear_growth_alerts(self):
        """Test that steady growth is flagged with the per-bucket slope"""
        store, clock = fill_series([100 + 25 * i for i in range(8)])
        scorer = TrendScorer(store, clock=clock)

        result = scorer.evaluate(key())

        assert result.status == STATUS_ALERT
        assert result.fit.slope == pytest.approx(25.0)
        assert result.alert.confidence == pytest.approx(1.0)
        assert (result.alert.start, result.alert.end) == (1000, 1080)
        assert result.alert.created_at == clock.now

    def test_flat_noise_does_not_alert(self):
        """Test that noise around a constant is not flagged"""
        store, clock = fill_series([100, 104, 96, 104, 96, 100])
        result = TrendScorer(store, clock=clock).evaluate(key())

        assert result.status == STATUS_OK

    def test_noisy_growth_below_confidence(self):
        """Test that a weak fit is not flagged"""
        store, clock = fill_series([100, 300, 90, 310, 95, 320])
        result = TrendScorer(store, clock=clock).evaluate(key())

        assert result.fit.slope > 0
        assert result.status == STATUS_OK

    def test_slope_threshold_per_type(self):
        """Test that byte profiles need growth above their threshold"""
        store, clock = fill_series([1000 + 1024 * i for i in range(8)], profile_type='inuse-space')
        scorer = TrendScorer(store, clock=clock)

        assert scorer.slope_threshold(key('inuse-space').profile_type) == 4096
        assert scorer.evaluate(key('inuse-space')).status == STATUS_OK

    def test_too_few_buckets(self):
        store, clock = fill_series([1, 2, 3])
        result = TrendScorer(store, clock=clock).evaluate(key())

        assert result.status == STATUS_INDETERMINATE
        assert result.points == 3

    def test_gap_makes_indeterminate(self):
        """Test that only the gap-free tail is scored"""
        store, clock = fill_series([10 * i for i in range(8)], skip=(4,))
        result = TrendScorer(store, clock=clock).evaluate(key())

        assert result.status == STATUS_INDETERMINATE
        assert result.points == 3

    def test_slow_sampler_scored_at_coarser_width(self):
        """Test that a 20s sampler on 10s buckets is still flagged"""
        clock = FakeClock(0)
        store = TimeIndexedStore(clock=clock)
        for i in range(180):
            ts = 108000 + i * 20
            clock.now = ts + 20
            store.write('api-1', 'concurrent-task-count', {}, ts,
                        build_tree([((Frame('main'), Frame('spawn')), 100 + 50 * i)]))
            store.compact()

        result = TrendScorer(store, clock=clock).evaluate(key())

        assert result.status == STATUS_ALERT
        assert result.width == 60
        assert result.points == 59
        # Three samples per window, each 50 above the previous one
        assert result.fit.slope == pytest.approx(450.0)
        assert result.fit.r_squared == pytest.approx(1.0)
        assert result.alert.bucket_width == 60
        assert result.alert.to_dict()['bucketWidth'] == 60

    def test_live_buckets_ignored(self):
        """Test that unsealed buckets are not scored"""
        clock = FakeClock(1000)
        store = TimeIndexedStore(clock=clock)
        for i in range(5):
            store.write('api-1', 'concurrent-task-count', {}, 990 - i * 10,
                        build_tree([((Frame('main'),), i)]))
        result = TrendScorer(store, clock=clock).evaluate(key())

        assert result.status == STATUS_INDETERMINATE
        assert result.points == 0

    def test_run_cycle_records_alerts(self):
        """Test that a cycle appends alerts to the log"""
        store, clock = fill_series([i * 3 for i in range(10)])
        log = AlertLog()
        scorer = TrendScorer(store, {'min_buckets': 4}, alert_log=log, clock=clock)

        alerts = scorer.run_cycle()

        assert len(alerts) == 1
        assert len(log) == 1
        assert log.list('api-1')[0].slope == pytest.approx(3.0)

    def test_max_buckets_window(self):
        """Test that only the newest max_buckets buckets are fitted"""
        store, clock = fill_series([500, 400, 300, 200, 100, 10, 20, 30, 40, 50, 60])
        scorer = TrendScorer(store, {'min_buckets': 6, 'max_buckets': 6}, clock=clock)

        result = scorer.evaluate(key())

        assert result.status == STATUS_ALERT
        assert result.points == 6

    @pytest.mark.parametrize("config", [
        {'min_bucket': 6},
        {'min_buckets': 1},
        {'min_buckets': 10, 'max_buckets': 5},
        {'confidence_floor': 1.5},
        {'slope_thresholds': {'heap': 1}},
        {'interval': 0},
        {'interval': 'soon'},
    ])
    def test_config_validation(self, config):
        with pytest.raises(ConfigError):
            TrendScorer(TimeIndexedStore(), config)

    def test_scoring_loop_runs_cycle(self):
        store, clock = fill_series([i * 3 for i in range(8)])
        loop = ScoringLoop(TrendScorer(store, clock=clock), interval=1)

        assert len(loop.run_once()) == 1
        assert loop.interval == 1


class TestAlertLog:
    """Test cases for AlertLog"""

    def test_list_filters(self):
        store, clock = fill_series([i * 3 for i in range(8)])
        log = AlertLog()
        TrendScorer(store, alert_log=log, clock=clock).run_cycle()

        assert len(log.list(target_id='api-1')) == 1
        assert log.list(target_id='other') == []
        assert log.list(profile_type='cpu-time') == []
        assert log.list(since=clock.now + 1) == []

    def test_consume_hands_out_once(self):
        """Test that consume returns each alert a single time"""
        store, clock = fill_series([i * 3 for i in range(8)])
        log = AlertLog()
        scorer = TrendScorer(store, alert_log=log, clock=clock)

        scorer.run_cycle()
        assert len(log.consume()) == 1
        assert log.consume() == []

        scorer.run_cycle()
        assert len(log.consume()) == 1
        assert len(log.list()) == 2
