"""
Reconciliation Module for the Snapshot Comparer

This module decides whether the copies of a snapshot's tables agree.

Main components:
- planner: Partition plan building and coverage validation
- comparer: Chunk-by-chunk stream comparison under an order policy
- differ: LCS diff of two mismatching chunks
- orchestrator: Runs whole comparisons and aggregates verdicts

Usage:
    from snapshot_comparer.reconciliation import ComparisonOrchestrator, OrderPolicy

    orchestrator = ComparisonOrchestrator()
    verdict = orchestrator.self_compare(snapshot, OrderPolicy.CHUNK_ORDER)
    print(verdict.status.name, verdict.inconsistent_tables)
"""

from snapshot_comparer.reconciliation.comparer import ComparisonResult, OrderPolicy, StreamComparator
from snapshot_comparer.reconciliation.differ import DiffKind, DiffLine, DiffRenderer, DiffResult
from snapshot_comparer.reconciliation.orchestrator import (
    ComparisonOrchestrator,
    OverallStatus,
    OverallVerdict,
    PairVerdict,
)
from snapshot_comparer.reconciliation.planner import PartitionPlan, PartitionPlanBuilder

__all__ = [
    "PartitionPlan",
    "PartitionPlanBuilder",
    "OrderPolicy",
    "ComparisonResult",
    "StreamComparator",
    "DiffKind",
    "DiffLine",
    "DiffResult",
    "DiffRenderer",
    "ComparisonOrchestrator",
    "OverallStatus",
    "OverallVerdict",
    "PairVerdict",
]
