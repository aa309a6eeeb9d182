# leakscope/engine.py - Engine wiring
"""
Wires the normalizer, store, ingestion pipeline, scorer, query API and
background workers into one engine built from a Config.
"""

from typing import Dict, Iterable, List, Optional
import logging
import time

from leakscope.analyzer.trend_scorer import AlertLog, ScoringLoop, TrendScorer
from leakscope.collector.ingest import IngestionPipeline, IngestReport
from leakscope.collector.normalizer import Normalizer
from leakscope.exporters.prometheus import IngestMetrics
from leakscope.exporters.query_api import QueryAPI
from leakscope.storage.compaction import BackgroundCompactor
from leakscope.storage.persistence import StatePersistence
from leakscope.storage.store import TimeIndexedStore
from leakscope.utils.config import Config


class ProfilingEngine:
    """
    Continuous-profiling ingestion, aggregation and leak-detection engine.

    Example:
        engine = ProfilingEngine(Config('configs/default.yaml'))
        engine.ingest(batch)
        engine.query.get_tree('api-1', 'inuse-space', {}, (start, end))
    """

    def __init__(self, config: Optional[Config] = None, clock=time.time,
                 key_functions: Optional[Dict] = None):
        """
        Initialize the engine.

        Args:
            config: Configuration (defaults are used if omitted)
            clock: Callable returning the current POSIX time
            key_functions: Optional frame key function per profile type
        """
        self.config = config or Config()
        self.config.validate()
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.metrics = IngestMetrics()
        self.normalizer = Normalizer(key_functions)
        self.store = TimeIndexedStore(self.config.section('store'), clock=clock, metrics=self.metrics)
        self.pipeline = IngestionPipeline(self.normalizer, self.store, metrics=self.metrics)
        self.alert_log = AlertLog()
        self.scorer = TrendScorer(
            self.store, self.config.section('scorer'), self.alert_log, clock=clock, metrics=self.metrics
        )
        self.query = QueryAPI(
            self.store, self.alert_log, default_timeout=self.config.get('query.default_deadline')
        )

        self.compactor = BackgroundCompactor(self.store, self.config.get('compaction.interval', 30))
        self.scoring_loop = ScoringLoop(self.scorer)

    def ingest(self, batch) -> IngestReport:
        """Ingest one batch; see IngestionPipeline.ingest."""
        return self.pipeline.ingest(batch)

    def ingest_stream(self, batches: Iterable) -> List[IngestReport]:
        return self.pipeline.ingest_stream(batches)

    def remove_target(self, target_id: str) -> int:
        """
        Stop tracking a target.

        Its series are evicted on the next compaction pass.

        Returns:
            Number of series marked for eviction
        """
        marked = self.store.remove_target(target_id)
        self.normalizer.forget_target(target_id)
        return marked

    def start(self, serve_metrics: bool = False):
        """
        Start background compaction and scoring.

        Args:
            serve_metrics: Also serve Prometheus metrics on output.prometheus_port
        """
        if serve_metrics:
            self.metrics.start(self.config.get('output.prometheus_port'))
        self.compactor.start()
        self.scoring_loop.start()

    def stop(self, timeout: Optional[float] = 5.0):
        self.scoring_loop.stop(timeout)
        self.compactor.stop(timeout)

    def save(self, path: str) -> int:
        return StatePersistence(path).save(self.store)

    def load(self, path: str):
        StatePersistence(path).load(self.store)

    def get_stats(self) -> Dict:
        """
        Get engine statistics.

        Returns:
            Dictionary with per-component statistics
        """
        return {
            'ingestion': self.pipeline.get_stats(),
            'normalizer': self.normalizer.get_stats(),
            'store': self.store.get_stats(),
            'alerts': len(self.alert_log),
        }
