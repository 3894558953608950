"""
Comparison Orchestrator

Drives a whole comparison run: builds the partition plan(s), feeds every
reference/target file pair through the stream comparator and folds the
pair results into one verdict.

Two modes are supported:
- self_compare: replicas inside one snapshot must agree
- compare_with: a source snapshot must agree with a target snapshot
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from snapshot_comparer.exceptions import InvalidInputError, PlanValidationError
from snapshot_comparer.monitoring.metrics import ComparisonMetrics
from snapshot_comparer.reconciliation.comparer import (
    ComparisonResult,
    OrderPolicy,
    StreamComparator,
)
from snapshot_comparer.reconciliation.planner import PartitionPlan, PartitionPlanBuilder
from snapshot_comparer.snapshot.models import FileRef, SnapshotHandle

logger = logging.getLogger(__name__)

MODE_SELF = "self"
MODE_PEER = "peer"


class OverallStatus(IntEnum):
    """Run status; the value is the process exit code."""
    OK = 0
    INVALID_INPUT = -1
    INCONSISTENCY = -2


@dataclass
class PairVerdict:
    """Result of comparing one target copy with its reference copy."""

    table: str
    partition_id: int
    replicated: bool
    reference: FileRef
    target: FileRef
    result: ComparisonResult

    @property
    def consistent(self) -> bool:
        return self.result.consistent

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "table": self.table,
            "partition": self.partition_id,
            "replicated": self.replicated,
            "reference_host": self.reference.host_id,
            "target_host": self.target.host_id,
        }
        data.update(self.result.to_dict())
        return data


@dataclass
class OverallVerdict:
    """
    Outcome of a comparison run.

    Attributes:
        mode: "self" or "peer"
        status: Overall status
        inconsistent_tables: Sorted names of tables with at least one inconsistent pair
        verdicts: Every pair compared, in comparison order
        errors: Validation messages when the run was rejected
    """

    mode: str
    status: OverallStatus = OverallStatus.OK
    inconsistent_tables: List[str] = field(default_factory=list)
    verdicts: List[PairVerdict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return int(self.status)

    @property
    def pairs_compared(self) -> int:
        return len(self.verdicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "status": self.status.name,
            "exit_code": self.exit_code,
            "inconsistent_tables": list(self.inconsistent_tables),
            "pairs_compared": self.pairs_compared,
            "pairs": [verdict.to_dict() for verdict in self.verdicts],
            "errors": list(self.errors),
        }

    @classmethod
    def invalid(cls, mode: str, errors: Iterable[str]) -> "OverallVerdict":
        return cls(mode=mode, status=OverallStatus.INVALID_INPUT, errors=list(errors))


# (table, partition id, replicated, chunk filter, reference, targets)
_WorkItem = Tuple[str, int, bool, Optional[Set[int]], FileRef, Tuple[FileRef, ...]]


class ComparisonOrchestrator:
    """
    Runs comparisons and aggregates their verdicts.

    Work is sequential: tables in name order, partitions in id order,
    targets in bucket order.
    """

    def __init__(
        self,
        comparator: Optional[StreamComparator] = None,
        planner: Optional[PartitionPlanBuilder] = None,
        metrics: Optional[ComparisonMetrics] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            comparator: Stream comparator for file pairs
            planner: Partition plan builder
            metrics: Optional metrics collector
        """
        self.comparator = comparator or StreamComparator()
        self.planner = planner or PartitionPlanBuilder()
        self.metrics = metrics
        logger.debug("Initialized ComparisonOrchestrator")

    def build_plan(self, snapshot: SnapshotHandle) -> PartitionPlan:
        """
        Build the partition plan of a snapshot.

        Raises:
            PlanValidationError: If any table is not fully covered
        """
        return self.planner.build(snapshot.tables.values(), snapshot.partition_count)

    def self_compare(
        self,
        snapshot: SnapshotHandle,
        order_policy: OrderPolicy = OrderPolicy.TOTAL_ORDER
    ) -> OverallVerdict:
        """
        Check that all copies inside one snapshot agree.

        For every table and partition, copy 0 is compared with every other
        copy of that partition.

        Args:
            snapshot: Loaded snapshot
            order_policy: Order policy

        Returns:
            OverallVerdict
        """
        logger.info(f"Comparing copies within {snapshot.describe()} using {order_policy.name}")

        try:
            plan = self.build_plan(snapshot)
        except PlanValidationError as e:
            return self._reject(MODE_SELF, e)

        return self.compare_plan(MODE_SELF, self._self_work(plan), order_policy)

    def compare_with(
        self,
        source: SnapshotHandle,
        target: SnapshotHandle,
        order_policy: OrderPolicy = OrderPolicy.TOTAL_ORDER
    ) -> OverallVerdict:
        """
        Check that a target snapshot agrees with a source snapshot.

        The reference copy of every source partition is compared with every
        copy of the same partition in the target snapshot.

        Args:
            source: Snapshot providing the reference copies
            target: Snapshot being checked
            order_policy: Order policy

        Returns:
            OverallVerdict; INVALID_INPUT if the snapshots do not have the
            same tables, replication flags and partition counts
        """
        logger.info(
            f"Comparing {source.describe()} with {target.describe()} using {order_policy.name}"
        )

        try:
            source_plan = self.build_plan(source)
            target_plan = self.build_plan(target)
            self._check_compatible(source_plan, target_plan)
        except PlanValidationError as e:
            return self._reject(MODE_PEER, e)

        return self.compare_plan(MODE_PEER, self._peer_work(source_plan, target_plan), order_policy)

    def compare_plan(
        self,
        mode: str,
        work: Iterable[_WorkItem],
        order_policy: OrderPolicy
    ) -> OverallVerdict:
        """
        Compare every reference/target pair of a work list.

        Args:
            mode: Run mode label
            work: (table, partition, replicated, chunk filter, reference, targets) items grouped by table
            order_policy: Order policy

        Returns:
            OverallVerdict with status OK or INCONSISTENCY
        """
        verdict = OverallVerdict(mode=mode)
        inconsistent: Set[str] = set()
        current_table: Optional[str] = None

        for table, partition_id, replicated, relevant, reference, targets in work:
            if current_table is not None and table != current_table:
                logger.info(f"Finished comparing table {current_table}.")
            current_table = table

            for target in targets:
                pair = self._compare_pair(
                    table, partition_id, replicated, relevant, reference, target, order_policy
                )
                verdict.verdicts.append(pair)
                if not pair.consistent:
                    inconsistent.add(table)

        if current_table is not None:
            logger.info(f"Finished comparing table {current_table}.")
        logger.info("Finished comparing all tables.")

        verdict.inconsistent_tables = sorted(inconsistent)
        if inconsistent:
            verdict.status = OverallStatus.INCONSISTENCY
            logger.info(f"The inconsistent tables are: {verdict.inconsistent_tables}")

        if self.metrics:
            self.metrics.record_run(mode, verdict.status.name, len(inconsistent))

        return verdict

    def _compare_pair(
        self,
        table: str,
        partition_id: int,
        replicated: bool,
        relevant: Optional[Set[int]],
        reference: FileRef,
        target: FileRef,
        order_policy: OrderPolicy
    ) -> PairVerdict:
        result = self.comparator.compare(reference, target, relevant, order_policy)

        kind = "Replicated" if replicated else "Partitioned"
        state = "consistent" if result.consistent else "inconsistent"
        message = (
            f"{kind} Table {table} is {state} between host{reference.host_id} "
            f"with host{target.host_id} on partition {partition_id}"
        )
        extra = {"table": table, "partition": partition_id, "policy": order_policy.name,
                 "duration": result.duration_seconds}
        if result.consistent:
            logger.info(message, extra=extra)
        else:
            logger.warning(f"{message}: {result.reason}", extra=extra)

        if self.metrics:
            self.metrics.record_pair(table, order_policy.name, result)

        return PairVerdict(table, partition_id, replicated, reference, target, result)

    def _self_work(self, plan: PartitionPlan) -> Iterable[_WorkItem]:
        for table in plan.table_names:
            replicated = plan.is_replicated(table)
            for partition_id, files in sorted(plan.partitions(table).items()):
                if len(files) < 2:
                    continue
                yield (
                    table, partition_id, replicated,
                    plan.relevant_partitions(table, partition_id), files[0], files[1:],
                )

    def _peer_work(self, source_plan: PartitionPlan, target_plan: PartitionPlan) -> Iterable[_WorkItem]:
        for table in source_plan.table_names:
            replicated = source_plan.is_replicated(table)
            target_partitions = target_plan.partitions(table)
            for partition_id, files in sorted(source_plan.partitions(table).items()):
                yield (
                    table, partition_id, replicated,
                    source_plan.relevant_partitions(table, partition_id),
                    files[0], target_partitions[partition_id],
                )

    def _check_compatible(self, source_plan: PartitionPlan, target_plan: PartitionPlan) -> None:
        problems: List[str] = []

        source_tables = set(source_plan.table_names)
        target_tables = set(target_plan.table_names)
        for table in sorted(source_tables - target_tables):
            problems.append(f"Target snapshot does not contain table {table}")
        for table in sorted(target_tables - source_tables):
            problems.append(f"Source snapshot does not contain table {table}")

        for table in sorted(source_tables & target_tables):
            if source_plan.is_replicated(table) != target_plan.is_replicated(table):
                problems.append(f"Table {table} is replicated in only one of the snapshots")
                continue
            if source_plan.is_replicated(table):
                continue
            source_count = len(source_plan.partitions(table))
            target_count = len(target_plan.partitions(table))
            if source_count != target_count:
                problems.append(
                    f"Table {table} has {source_count} partitions in the source snapshot "
                    f"but {target_count} in the target snapshot"
                )

        if problems:
            for problem in problems:
                logger.error(problem)
            raise PlanValidationError(
                "Snapshots are not comparable: " + "; ".join(problems),
                problems,
            )

    def _reject(self, mode: str, error: InvalidInputError) -> OverallVerdict:
        problems = getattr(error, "problems", None) or [str(error)]
        logger.error(f"Comparison rejected: {len(problems)} validation problem(s)")
        if self.metrics:
            self.metrics.record_run(mode, OverallStatus.INVALID_INPUT.name, 0)
        return OverallVerdict.invalid(mode, problems)
