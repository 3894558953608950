"""
Partition Plan Builder

Turns the per-table file listing of a snapshot into a comparison plan:
for every table and partition, the ordered list of save files holding a
copy of that partition. The first file of each list is the reference copy
the others are compared against.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from snapshot_comparer.exceptions import PlanValidationError
from snapshot_comparer.snapshot.models import REPLICATED_PARTITION_ID, FileRef, TableDescriptor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PartitionPlan:
    """
    Table name to partition id to candidate files.

    Replicated tables have a single bucket keyed by REPLICATED_PARTITION_ID.
    """

    buckets: Dict[str, Dict[int, Tuple[FileRef, ...]]]
    replicated: Dict[str, bool]
    total_partition_count: int

    @property
    def table_names(self) -> List[str]:
        return sorted(self.buckets)

    def is_replicated(self, table_name: str) -> bool:
        return self.replicated[table_name]

    def partitions(self, table_name: str) -> Dict[int, Tuple[FileRef, ...]]:
        """Partition id to candidate files, in partition order."""
        return self.buckets[table_name]

    def relevant_partitions(self, table_name: str, partition_id: int) -> Optional[Set[int]]:
        """Chunk filter for reading one partition: None means every chunk."""
        if self.replicated[table_name]:
            return None
        return {partition_id}

    def pair_count(self) -> int:
        """Number of reference/target comparisons a self-compare performs."""
        return sum(
            max(len(files) - 1, 0)
            for partitions in self.buckets.values()
            for files in partitions.values()
        )


class PartitionPlanBuilder:
    """
    Builds and validates partition plans.

    Validation is all-or-nothing: if any partitioned table is not fully
    covered, no plan is returned.
    """

    def __init__(self):
        """Initialize the plan builder."""
        logger.debug("Initialized PartitionPlanBuilder")

    def build(
        self,
        table_descriptors: Iterable[TableDescriptor],
        total_partition_count: int
    ) -> PartitionPlan:
        """
        Build a partition plan.

        Args:
            table_descriptors: Tables of the snapshot with their files
            total_partition_count: Partition count of the snapshot

        Returns:
            PartitionPlan

        Raises:
            PlanValidationError: If any table has no files or incomplete partition coverage
        """
        buckets: Dict[str, Dict[int, Tuple[FileRef, ...]]] = {}
        replicated: Dict[str, bool] = {}
        problems: List[str] = []

        for descriptor in table_descriptors:
            if not descriptor.files:
                problems.append(f"Table {descriptor.name} has no save files")
                continue

            if descriptor.is_replicated:
                buckets[descriptor.name] = {REPLICATED_PARTITION_ID: tuple(descriptor.files)}
                replicated[descriptor.name] = True
                continue

            partitions, problem = self._plan_partitioned(descriptor, total_partition_count)
            if problem:
                problems.append(problem)
                continue

            buckets[descriptor.name] = partitions
            replicated[descriptor.name] = False

        if problems:
            for problem in problems:
                logger.error(problem)
            raise PlanValidationError(
                f"Partition plan validation failed for {len(problems)} table(s): " + "; ".join(problems),
                problems,
            )

        plan = PartitionPlan(buckets, replicated, total_partition_count)
        logger.info(
            f"Built partition plan for {len(buckets)} tables "
            f"({plan.pair_count()} file pairs to compare)"
        )
        return plan

    def _plan_partitioned(
        self,
        descriptor: TableDescriptor,
        total_partition_count: int
    ) -> Tuple[Dict[int, Tuple[FileRef, ...]], Optional[str]]:
        expected = descriptor.total_partition_count or total_partition_count

        if total_partition_count and expected != total_partition_count:
            return {}, (
                f"Table {descriptor.name} declares {expected} partitions "
                f"but the snapshot has {total_partition_count}"
            )

        covered: Set[int] = set()
        partitions: Dict[int, List[FileRef]] = {p: [] for p in range(expected)}

        for file_ref in descriptor.files:
            covered.update(file_ref.partition_ids)
            for partition_id in sorted(file_ref.partition_ids):
                if partition_id in partitions:
                    partitions[partition_id].append(file_ref)

        if not (
            expected > 0
            and len(covered) == expected
            and min(covered) == 0
            and max(covered) == expected - 1
        ):
            missing = sorted(set(range(expected)) - covered)
            extra = sorted(p for p in covered if p < 0 or p >= expected)
            details = []
            if missing:
                details.append(f"missing {missing}")
            if extra:
                details.append(f"unexpected {extra}")
            detail = ", ".join(details) or "no partitions"
            return {}, f"Not all partitions present for table {descriptor.name}: {detail}"

        for partition_id, files in partitions.items():
            if len(files) < 2:
                logger.debug(
                    f"Partition {partition_id} of table {descriptor.name} has a single copy"
                )

        return {p: tuple(files) for p, files in partitions.items()}, None
