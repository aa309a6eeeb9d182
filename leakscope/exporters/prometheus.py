# leakscope/exporters/prometheus.py - Prometheus metrics exporter
"""
Exposes ingestion and storage counters in Prometheus format.
Provides an HTTP endpoint for Prometheus to scrape.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest, start_http_server
from typing import Dict
import logging


class IngestMetrics:
    """
    Counters for the ingestion pipeline, store and scorer.

    Each instance owns its own registry so several engines can live in one
    process.
    """

    def __init__(self, registry: CollectorRegistry = None):
        """
        Initialize the metrics.

        Args:
            registry: Optional registry to register the metrics in
        """
        self.registry = registry or CollectorRegistry()
        self.logger = logging.getLogger(__name__)

        self.samples_ingested = Counter(
            'leakscope_samples_ingested_total',
            'Samples folded into a call tree',
            ['profile_type'],
            registry=self.registry
        )

        self.malformed_samples = Counter(
            'leakscope_malformed_samples_total',
            'Samples skipped because they were malformed',
            ['profile_type'],
            registry=self.registry
        )

        self.malformed_batches = Counter(
            'leakscope_malformed_batches_total',
            'Batches rejected as a whole',
            ['reason'],
            registry=self.registry
        )

        self.late_samples = Counter(
            'leakscope_late_samples_total',
            'Samples redirected from a sealed bucket to a live one',
            registry=self.registry
        )

        self.buckets_evicted = Counter(
            'leakscope_buckets_evicted_total',
            'Buckets dropped by retention or capacity eviction',
            registry=self.registry
        )

        self.alerts = Counter(
            'leakscope_alerts_total',
            'Leak candidate alerts emitted',
            ['profile_type'],
            registry=self.registry
        )

        self.buckets = Gauge(
            'leakscope_buckets',
            'Retained buckets',
            ['state'],
            registry=self.registry
        )

    def start(self, port: int = 9090):
        """
        Start the Prometheus HTTP server.

        Args:
            port: Port to expose metrics on
        """
        try:
            start_http_server(port, registry=self.registry)
            self.logger.info(f"Prometheus metrics available at http://localhost:{port}/metrics")
        except Exception as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")
            raise

    def record_samples(self, profile_type: str, count: int):
        if count:
            self.samples_ingested.labels(profile_type=profile_type).inc(count)

    def record_malformed_samples(self, profile_type: str, count: int):
        if count:
            self.malformed_samples.labels(profile_type=profile_type).inc(count)

    def record_malformed_batch(self, reason: str):
        self.malformed_batches.labels(reason=reason).inc()

    def record_late_samples(self, count: int):
        self.late_samples.inc(count)

    def record_evictions(self, count: int):
        self.buckets_evicted.inc(count)

    def record_alert(self, profile_type: str):
        self.alerts.labels(profile_type=profile_type).inc()

    def set_bucket_gauge(self, stats: Dict):
        """
        Update bucket gauges from store statistics.

        Args:
            stats: TimeIndexedStore.get_stats() output
        """
        self.buckets.labels(state='live').set(stats.get('live_buckets', 0))
        self.buckets.labels(state='sealed').set(stats.get('sealed_buckets', 0))

    def get_metrics_text(self) -> str:
        """
        Get current metrics in Prometheus text format.

        Returns:
            Metrics as text
        """
        return generate_latest(self.registry).decode('utf-8')
