"""
Prometheus Metrics for the Snapshot Comparer

Counts compared file pairs, chunks and rows, times each pair and records
the outcome of every run. The comparer is a batch job, so metrics live
in a private registry that can be pushed to a Pushgateway at the end of
a run.
"""

import logging
from typing import Any, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info, push_to_gateway

logger = logging.getLogger(__name__)

DEFAULT_JOB_NAME = "snapshot_comparer"


class ComparisonMetrics:
    """Prometheus metrics for snapshot comparison runs."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize comparison metrics.

        Args:
            registry: Registry to register metrics in (a new private one by default)
        """
        self.registry = registry or CollectorRegistry()

        # Pair comparisons by outcome
        self.pairs_total = Counter(
            'snapshot_compare_pairs_total',
            'Total file pairs compared',
            ['table', 'policy', 'result'],
            registry=self.registry
        )

        self.chunks_total = Counter(
            'snapshot_compare_chunks_total',
            'Total chunk pairs compared',
            ['table'],
            registry=self.registry
        )

        self.rows_total = Counter(
            'snapshot_compare_rows_total',
            'Total rows read from reference and target files',
            ['table'],
            registry=self.registry
        )

        # Pair comparison duration
        self.pair_duration_seconds = Histogram(
            'snapshot_compare_pair_duration_seconds',
            'Duration of one file pair comparison in seconds',
            ['table', 'policy'],
            buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 300],
            registry=self.registry
        )

        self.inconsistent_tables = Gauge(
            'snapshot_compare_inconsistent_tables',
            'Number of inconsistent tables found by the last run',
            registry=self.registry
        )

        self.runs_total = Counter(
            'snapshot_compare_runs_total',
            'Total comparison runs',
            ['mode', 'status'],
            registry=self.registry
        )

        self.comparer_info = Info(
            'snapshot_compare',
            'Snapshot comparer information',
            registry=self.registry
        )
        self.comparer_info.info({'version': '1.0.0'})

        logger.debug("ComparisonMetrics initialized")

    def record_pair(
        self,
        table: str,
        policy: str,
        result: Any
    ) -> None:
        """
        Record one file pair comparison.

        Args:
            table: Table name
            policy: Order policy name
            result: ComparisonResult of the pair
        """
        if result.error:
            outcome = 'error'
        elif result.consistent:
            outcome = 'consistent'
        else:
            outcome = 'inconsistent'

        self.pairs_total.labels(table=table, policy=policy, result=outcome).inc()
        self.chunks_total.labels(table=table).inc(result.chunks_compared)
        self.rows_total.labels(table=table).inc(result.reference_rows + result.target_rows)
        self.pair_duration_seconds.labels(table=table, policy=policy).observe(result.duration_seconds)

    def record_run(
        self,
        mode: str,
        status: str,
        inconsistent_table_count: int
    ) -> None:
        """
        Record the outcome of a whole run.

        Args:
            mode: Run mode (self/peer)
            status: Overall status name
            inconsistent_table_count: Number of inconsistent tables
        """
        self.runs_total.labels(mode=mode, status=status).inc()
        self.inconsistent_tables.set(inconsistent_table_count)

        logger.debug(
            f"Recorded comparison run: mode={mode}, status={status}, "
            f"inconsistent_tables={inconsistent_table_count}"
        )

    def push(self, gateway_url: str, job_name: str = DEFAULT_JOB_NAME) -> None:
        """
        Push all metrics to a Prometheus Pushgateway.

        Args:
            gateway_url: Pushgateway address (host:port or URL)
            job_name: Job label for the pushed metrics

        Raises:
            OSError: If the gateway cannot be reached
        """
        try:
            push_to_gateway(gateway_url, job=job_name, registry=self.registry)
            logger.info(f"Pushed metrics to {gateway_url} as job {job_name}")
        except OSError as e:
            logger.error(f"Failed to push metrics to {gateway_url}: {e}")
            raise
