# leakscope/analyzer/trend_scorer.py - Leak trend detection
"""
Fits linear trends over consecutive bucket totals and flags sustained
growth as leak candidates.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
import logging
import math
import threading
import time

from leakscope.collector.models import Alert, ProfileType, SeriesKey
from leakscope.errors import ConfigError
from leakscope.storage.store import BucketPoint, TimeIndexedStore
from leakscope.utils.periodic import PeriodicWorker


STATUS_ALERT = 'alert'
STATUS_OK = 'ok'
STATUS_INDETERMINATE = 'indeterminate'

DEFAULT_SCORER_CONFIG = {
    'min_buckets': 6,
    'max_buckets': 60,
    'slope_thresholds': {
        'default': 0.0,
        'inuse-space': 4096,
        'alloc-space': 4096,
    },
    'confidence_floor': 0.8,
    'interval': 60,
}


@dataclass
class TrendFit:
    """Ordinary least squares fit of value against bucket index."""
    slope: float
    intercept: float
    r_squared: float


@dataclass
class TrendResult:
    """Outcome of scoring one series."""
    key: SeriesKey
    status: str
    fit: Optional[TrendFit] = None
    points: int = 0
    width: float = 0
    alert: Optional[Alert] = None
    reason: str = ''


def fit_linear_trend(values: Sequence[float]) -> TrendFit:
    """
    Fit y = slope * x + intercept with x = 0, 1, 2, ...

    R^2 is 0 for a constant series.

    Args:
        values: Consecutive bucket totals

    Returns:
        TrendFit
    """
    n = len(values)
    if n == 0:
        return TrendFit(0.0, 0.0, 0.0)

    x = range(n)
    sum_x = sum(x)
    sum_y = sum(values)
    sum_xy = sum(xi * yi for xi, yi in zip(x, values))
    sum_x2 = sum(xi * xi for xi in x)

    denom = n * sum_x2 - sum_x * sum_x
    if denom == 0:
        slope = 0.0
        intercept = sum_y / n
    else:
        slope = (n * sum_xy - sum_x * sum_y) / denom
        intercept = (sum_y - slope * sum_x) / n

    y_mean = sum_y / n
    ss_tot = sum((yi - y_mean) ** 2 for yi in values)
    ss_res = sum((yi - (slope * xi + intercept)) ** 2 for xi, yi in zip(x, values))
    r_squared = 1 - (ss_res / ss_tot) if ss_tot > 0 else 0.0

    return TrendFit(slope=slope, intercept=intercept, r_squared=r_squared)


def aligned_run(points: Sequence[BucketPoint], width: float,
                frontier: Optional[float] = None) -> List[BucketPoint]:
    """
    Newest run of consecutive width-aligned windows that all hold data.

    Buckets narrower than width are summed into the window containing
    them, so a sampler slower than the finest bucket still yields a run at
    a coarser width. The run ends at an empty window or at a bucket wider
    than width. Windows reaching past frontier are still filling and are
    skipped; the oldest window is dropped when its data starts after the
    window does, since it only holds part of its time.

    Args:
        points: Sealed buckets in time order
        width: Window width
        frontier: End of sealed time (defaults to the newest bucket end)

    Returns:
        One BucketPoint per window, oldest first
    """
    if not points:
        return []
    if frontier is None:
        frontier = points[-1].end

    run: List[BucketPoint] = []
    # Earliest member start of each window in run
    first_member: List[float] = []
    for point in reversed(points):
        if point.end - point.start > width:
            break
        start = math.floor(point.start / width) * width
        if start + width > frontier:
            continue
        if run and run[-1].start == start:
            run[-1].value += point.value
            first_member[-1] = point.start
            continue
        if run and start + width != run[-1].start:
            break
        run.append(BucketPoint(start, start + width, point.value, True))
        first_member.append(point.start)

    if run and first_member[-1] > run[-1].start:
        run.pop()
    run.reverse()
    return run


class AlertLog:
    """
    Append-only record of emitted alerts.

    list() is a read-only view; consume() hands every alert to a notifier
    exactly once.
    """

    def __init__(self):
        self._alerts: List[Alert] = []
        self._consumed = 0
        self._lock = threading.Lock()

    def append(self, alert: Alert):
        with self._lock:
            self._alerts.append(alert)

    def list(self, target_id: Optional[str] = None, profile_type=None,
             since: float = 0.0) -> List[Alert]:
        """Alerts created at or after since, oldest first."""
        ptype = ProfileType.parse(profile_type) if profile_type is not None else None
        with self._lock:
            alerts = list(self._alerts)
        return [
            a for a in alerts
            if a.created_at >= since
            and (target_id is None or a.target_id == target_id)
            and (ptype is None or a.profile_type == ptype)
        ]

    def consume(self) -> List[Alert]:
        """Alerts not yet handed out by a previous consume()."""
        with self._lock:
            fresh = self._alerts[self._consumed:]
            self._consumed = len(self._alerts)
        return fresh

    def __len__(self) -> int:
        return len(self._alerts)


class TrendScorer:
    """
    Flags series whose bucket totals grow steadily.

    A series is flagged when at least min_buckets consecutive, gap-free
    sealed windows are available, the fitted slope exceeds the threshold
    for its profile type and R^2 reaches confidence_floor. Windows are
    tried at each width of the store's schedule, finest first, so a
    sampler slower than the base bucket is scored at the first width its
    samples fill. Too few windows at every width makes the series
    indeterminate for this cycle. Duplicate alerts are not suppressed here.
    """

    def __init__(self, store: TimeIndexedStore, config: Optional[Dict] = None,
                 alert_log: Optional[AlertLog] = None, clock=time.time, metrics=None):
        """
        Initialize the scorer.

        Args:
            store: Store to read bucket totals from
            config: Optional scorer options (see DEFAULT_SCORER_CONFIG)
            alert_log: Log receiving emitted alerts
            clock: Callable returning the current POSIX time
            metrics: Optional IngestMetrics
        """
        self.config = _validated_config(config)
        self.store = store
        self.alert_log = alert_log if alert_log is not None else AlertLog()
        self.clock = clock
        self.metrics = metrics
        self.logger = logging.getLogger(__name__)

        self.min_buckets = self.config['min_buckets']
        self.max_buckets = self.config['max_buckets']
        self.confidence_floor = self.config['confidence_floor']
        self.slope_thresholds = {
            name: float(value) for name, value in self.config['slope_thresholds'].items()
        }

    def slope_threshold(self, profile_type: ProfileType) -> float:
        return self.slope_thresholds.get(profile_type.value, self.slope_thresholds['default'])

    def evaluate(self, key: SeriesKey) -> TrendResult:
        """
        Score one series without emitting anything.

        Args:
            key: Series key

        Returns:
            TrendResult
        """
        points = [p for p in self.store.bucket_points(key) if p.sealed]
        run, width = self._select_run(points)

        if len(run) < self.min_buckets:
            reason = f"{len(run)} consecutive sealed buckets, need {self.min_buckets}"
            return TrendResult(key=key, status=STATUS_INDETERMINATE, points=len(run),
                               width=width, reason=reason)

        fit = fit_linear_trend([p.value for p in run])
        threshold = self.slope_threshold(key.profile_type)

        if fit.slope <= threshold:
            return TrendResult(key=key, status=STATUS_OK, fit=fit, points=len(run), width=width,
                               reason=f"slope {fit.slope:.4g} <= {threshold:.4g}")
        if fit.r_squared < self.confidence_floor:
            return TrendResult(key=key, status=STATUS_OK, fit=fit, points=len(run), width=width,
                               reason=f"R^2 {fit.r_squared:.3f} < {self.confidence_floor}")

        alert = Alert(
            target_id=key.target_id,
            profile_type=key.profile_type,
            tags=key.tags,
            start=run[0].start,
            end=run[-1].end,
            slope=fit.slope,
            confidence=fit.r_squared,
            created_at=self.clock(),
            bucket_width=width,
        )
        return TrendResult(key=key, status=STATUS_ALERT, fit=fit, points=len(run), width=width,
                           alert=alert)

    def _select_run(self, points: List[BucketPoint]):
        """
        Pick the finest schedule width with enough consecutive windows.

        Returns:
            (run, width) - the longest run found when no width has
            min_buckets windows
        """
        frontier = self.store.live_floor(self.clock())
        if points:
            frontier = max(frontier, points[-1].end)

        best, best_width = [], self.store.base_width
        for tier in self.store.schedule:
            width = tier['width']
            run = aligned_run(points, width, frontier)[-self.max_buckets:]
            if len(run) >= self.min_buckets:
                return run, width
            if len(run) > len(best):
                best, best_width = run, width
        return best, best_width

    def run_cycle(self) -> List[Alert]:
        """
        Score every series in the store and record the alerts.

        Returns:
            Alerts emitted in this cycle
        """
        alerts = []
        counts = {STATUS_ALERT: 0, STATUS_OK: 0, STATUS_INDETERMINATE: 0}

        for key in self.store.keys():
            result = self.evaluate(key)
            counts[result.status] += 1
            if result.alert is None:
                continue

            self.alert_log.append(result.alert)
            alerts.append(result.alert)
            if self.metrics:
                self.metrics.record_alert(key.profile_type.value)
            self.logger.warning(
                f"Leak candidate {key}: slope {result.fit.slope:.4g}/{result.width:g}s bucket "
                f"over {result.points} buckets (R^2={result.fit.r_squared:.3f})"
            )

        self.logger.debug(
            f"Scoring cycle: {counts[STATUS_ALERT]} alerts, {counts[STATUS_OK]} ok, "
            f"{counts[STATUS_INDETERMINATE]} indeterminate"
        )
        return alerts


class ScoringLoop(PeriodicWorker):
    """
    Runs TrendScorer.run_cycle() on its own schedule.
    """

    name = 'leakscope-scorer'

    def __init__(self, scorer: TrendScorer, interval: Optional[float] = None):
        super().__init__(interval or scorer.config['interval'])
        self.scorer = scorer

    def run_once(self) -> List[Alert]:
        return self.scorer.run_cycle()


def _validated_config(config: Optional[Dict]) -> Dict:
    merged = dict(DEFAULT_SCORER_CONFIG)
    merged['slope_thresholds'] = dict(DEFAULT_SCORER_CONFIG['slope_thresholds'])
    for name, value in (config or {}).items():
        if name not in DEFAULT_SCORER_CONFIG:
            raise ConfigError(f"unknown scorer option: {name}")
        if name == 'slope_thresholds':
            merged['slope_thresholds'].update(value or {})
        else:
            merged[name] = value

    for name in merged['slope_thresholds']:
        if name != 'default':
            try:
                ProfileType.parse(name)
            except ValueError:
                raise ConfigError(f"slope threshold for unknown profile type: {name}") from None
    if merged['min_buckets'] < 2:
        raise ConfigError("min_buckets must be at least 2")
    if merged['max_buckets'] < merged['min_buckets']:
        raise ConfigError("max_buckets must not be below min_buckets")
    if not 0.0 <= merged['confidence_floor'] <= 1.0:
        raise ConfigError("confidence_floor must be within [0, 1]")
    if not _is_positive_number(merged['interval']):
        raise ConfigError(f"scorer interval must be a positive number, got {merged['interval']!r}")
    return merged


def _is_positive_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0
