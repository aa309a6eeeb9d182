# leakscope/exporters/query_api.py - Read-only query surface
"""
Query API for dashboards and CLIs.

Every call is a pure read of store and alert-log state. Bad caller input
(unknown profile type, inverted range) comes back as an error result rather
than an exception.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union
import logging
import time

from leakscope.analyzer.diff_engine import DiffEngine
from leakscope.analyzer.trend_scorer import AlertLog
from leakscope.collector.models import ProfileType, TimeRange
from leakscope.errors import InvalidRangeError, UnknownProfileTypeError
from leakscope.exporters.render import empty_tree, render_diff, render_tree
from leakscope.storage.store import TimeIndexedStore


RangeLike = Union[TimeRange, Tuple[float, float]]


@dataclass
class QueryResult:
    """
    Result envelope of a query.

    data is None exactly when error is set.
    """
    data: Any = None
    error: Optional[str] = None
    partial: bool = False
    coverage_gaps: List[Tuple[float, float]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self):
        return {
            'ok': self.ok,
            'data': self.data,
            'error': self.error,
            'partial': self.partial,
            'coverageGaps': [list(gap) for gap in self.coverage_gaps],
        }


class QueryAPI:
    """
    Read-only operations over the store and the alert log.
    """

    def __init__(self, store: TimeIndexedStore, alert_log: Optional[AlertLog] = None,
                 default_timeout: Optional[float] = None):
        """
        Initialize the query API.

        Args:
            store: Store to read from
            alert_log: Alert log for list_alerts
            default_timeout: Seconds each query may spend merging buckets
                (None or 0 disables the deadline)
        """
        self.store = store
        self.alert_log = alert_log if alert_log is not None else AlertLog()
        self.diff_engine = DiffEngine(store)
        self.default_timeout = default_timeout or None
        self.logger = logging.getLogger(__name__)

    def get_tree(self, target_id: str, profile_type, tags, time_range: RangeLike,
                 timeout: Optional[float] = None) -> QueryResult:
        """
        Merged call tree of a series over a range.

        An unknown target, type or tag combination yields an empty tree.

        Args:
            target_id: Target identifier
            profile_type: ProfileType or its string value
            tags: Tag mapping
            time_range: TimeRange or (start, end)
            timeout: Optional per-call deadline in seconds

        Returns:
            QueryResult whose data is the rendered tree
        """
        try:
            ptype = ProfileType.parse(profile_type)
            rng = _as_range(time_range)
        except (UnknownProfileTypeError, InvalidRangeError) as e:
            return QueryResult(error=str(e))

        result = self.store.read(target_id, ptype, tags, rng, self._deadline(timeout))
        if not result.found:
            return QueryResult(data=empty_tree())
        return QueryResult(
            data=render_tree(result.tree),
            partial=result.partial,
            coverage_gaps=result.coverage_gaps,
        )

    def get_diff(self, target_id: str, profile_type, tags, baseline_range: RangeLike,
                 current_range: RangeLike, timeout: Optional[float] = None) -> QueryResult:
        """
        Diff of a series between two ranges.

        Args:
            target_id: Target identifier
            profile_type: ProfileType or its string value
            tags: Tag mapping
            baseline_range: TimeRange or (start, end) of the baseline
            current_range: TimeRange or (start, end) of the current side
            timeout: Optional per-call deadline in seconds

        Returns:
            QueryResult whose data is the rendered diff
        """
        try:
            ptype = ProfileType.parse(profile_type)
            baseline = _as_range(baseline_range)
            current = _as_range(current_range)
        except (UnknownProfileTypeError, InvalidRangeError) as e:
            return QueryResult(error=str(e))

        diff = self.diff_engine.diff(
            baseline, current, target_id, ptype, tags, self._deadline(timeout)
        )
        return QueryResult(
            data=render_diff(diff.root),
            partial=diff.partial,
            coverage_gaps=diff.coverage_gaps,
        )

    def list_alerts(self, target_id: Optional[str] = None, profile_type=None,
                    since: float = 0.0) -> QueryResult:
        """
        Alerts created at or after since.

        Args:
            target_id: Optional target filter
            profile_type: Optional profile type filter
            since: POSIX time lower bound

        Returns:
            QueryResult whose data is a list of alert dictionaries
        """
        try:
            alerts = self.alert_log.list(target_id, profile_type, since)
        except UnknownProfileTypeError as e:
            return QueryResult(error=str(e))
        return QueryResult(data=[alert.to_dict() for alert in alerts])

    def target_exists(self, target_id: str) -> bool:
        """
        Whether anything was ever ingested for target_id.

        Tree emptiness cannot tell an absent target from one whose samples
        were all zero; this can.
        """
        return self.store.exists(target_id)

    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        timeout = timeout if timeout is not None else self.default_timeout
        if not timeout:
            return None
        return time.monotonic() + timeout


def _as_range(value: RangeLike) -> TimeRange:
    if isinstance(value, TimeRange):
        return value
    try:
        start, end = value
    except (TypeError, ValueError):
        raise InvalidRangeError(f"not a (start, end) range: {value!r}") from None
    return TimeRange(start, end)
