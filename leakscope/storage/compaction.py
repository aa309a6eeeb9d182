# leakscope/storage/compaction.py - Background compaction
"""
Background task that seals, consolidates and evicts store buckets.
"""

from typing import Optional

from leakscope.storage.store import CompactionReport, TimeIndexedStore
from leakscope.utils.periodic import PeriodicWorker


class BackgroundCompactor(PeriodicWorker):
    """
    Periodically runs TimeIndexedStore.compact().

    Each pass locks one series at a time, and a stop request ends the pass
    between series.
    """

    name = 'leakscope-compactor'

    def __init__(self, store: TimeIndexedStore, interval: float = 30.0):
        """
        Initialize the compactor.

        Args:
            store: Store to compact
            interval: Seconds between passes
        """
        super().__init__(interval)
        self.store = store
        self.last_report: Optional[CompactionReport] = None

    def run_once(self) -> CompactionReport:
        report = self.store.compact(should_stop=self.should_stop)
        self.last_report = report
        if report.evicted or report.removed_series:
            self.logger.info(
                f"Compaction evicted {report.evicted} buckets and {report.removed_series} series"
            )
        return report
