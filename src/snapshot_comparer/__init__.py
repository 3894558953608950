"""
Snapshot Comparer

Validates that the copies of a partitioned, replicated database snapshot
agree: replicas inside one snapshot (self comparison) or two snapshots
with each other (peer comparison).

Usage:
    from snapshot_comparer import ComparisonOrchestrator, OrderPolicy, load_snapshot

    snapshot = load_snapshot("nightly", ["/data/host0", "/data/host1"])
    verdict = ComparisonOrchestrator().self_compare(snapshot, OrderPolicy.TOTAL_ORDER)
    sys.exit(verdict.exit_code)
"""

from snapshot_comparer.exceptions import (
    ChunkDecodeError,
    ConfigError,
    InvalidInputError,
    PlanValidationError,
    RemoteFetchError,
    SaveFileError,
    SnapshotValidationError,
)
from snapshot_comparer.reconciliation import (
    ComparisonOrchestrator,
    OrderPolicy,
    OverallStatus,
    OverallVerdict,
    PartitionPlanBuilder,
    StreamComparator,
)
from snapshot_comparer.snapshot import load_snapshot

__all__ = [
    "ComparisonOrchestrator",
    "OrderPolicy",
    "OverallStatus",
    "OverallVerdict",
    "PartitionPlanBuilder",
    "StreamComparator",
    "load_snapshot",
    "InvalidInputError",
    "ConfigError",
    "SnapshotValidationError",
    "PlanValidationError",
    "RemoteFetchError",
    "SaveFileError",
    "ChunkDecodeError",
]

__version__ = "1.0.0"
