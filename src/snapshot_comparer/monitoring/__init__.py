"""
Monitoring Module for the Snapshot Comparer

Prometheus metrics for comparison runs, kept in a private registry and
optionally pushed to a Pushgateway when the run ends.

Usage:
    from snapshot_comparer.monitoring import ComparisonMetrics

    metrics = ComparisonMetrics()
    orchestrator = ComparisonOrchestrator(metrics=metrics)
    orchestrator.self_compare(snapshot)
    metrics.push("pushgateway:9091")
"""

from snapshot_comparer.monitoring.metrics import ComparisonMetrics

__all__ = [
    "ComparisonMetrics",
]
