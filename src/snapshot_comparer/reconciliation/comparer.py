"""
Stream Comparator for Snapshot Save Files

Streams two copies of the same table data chunk by chunk and decides
whether they hold the same rows under one of three order policies.
When chunks disagree, an LCS diff of the two chunks is attached to the
result for diagnosis.
"""

import logging
import time
import zlib
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from snapshot_comparer.exceptions import ChunkDecodeError, SaveFileError
from snapshot_comparer.reconciliation.differ import DiffRenderer, DiffResult
from snapshot_comparer.snapshot.models import FileRef
from snapshot_comparer.snapshot.rows import Row, decode_chunk
from snapshot_comparer.snapshot.savefile import Chunk, TableSaveFile

logger = logging.getLogger(__name__)

_CHECKSUM_MASK = 0xFFFFFFFFFFFFFFFF


class OrderPolicy(Enum):
    """How strictly row order must match between two copies."""
    TOTAL_ORDER = 0
    CHUNK_ORDER = 1
    NO_ORDER = 2

    @classmethod
    def from_flags(cls, ignore_chunk_order: bool = False, ignore_order: bool = False) -> "OrderPolicy":
        """Map the command line flags to a policy; ignore_order wins."""
        if ignore_order:
            return cls.NO_ORDER
        if ignore_chunk_order:
            return cls.CHUNK_ORDER
        return cls.TOTAL_ORDER


@dataclass
class ComparisonResult:
    """Outcome of comparing one reference file with one target file."""

    reference: str
    target: str
    policy: OrderPolicy
    consistent: bool = True
    reason: str = ""
    diff: Optional[DiffResult] = None
    diff_text: Optional[str] = None
    chunks_compared: int = 0
    reference_rows: int = 0
    target_rows: int = 0
    reference_checksum: Optional[int] = None
    target_checksum: Optional[int] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0

    def mark_inconsistent(self, reason: str) -> None:
        self.consistent = False
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "reference": self.reference,
            "target": self.target,
            "policy": self.policy.name,
            "consistent": self.consistent,
            "reason": self.reason,
            "chunks_compared": self.chunks_compared,
            "reference_rows": self.reference_rows,
            "target_rows": self.target_rows,
            "duration_seconds": round(self.duration_seconds, 6),
        }
        if self.diff is not None:
            result["diff"] = self.diff.summary()
        if self.reference_checksum is not None:
            result["reference_checksum"] = self.reference_checksum
            result["target_checksum"] = self.target_checksum
        if self.error:
            result["error"] = self.error
        return result


def update_checksum(checksum: int, rows: Iterable[Row]) -> int:
    """
    Fold rows into an order-independent running checksum.

    Each row contributes the CRC32 of its raw bytes; contributions are
    summed modulo 2**64, so the result does not depend on row order.
    """
    for row in rows:
        checksum = (checksum + zlib.crc32(row.raw)) & _CHECKSUM_MASK
    return checksum


def _path_of(file: Union[FileRef, Path, str]) -> Path:
    if isinstance(file, FileRef):
        return file.path
    return Path(file)


class StreamComparator:
    """
    Compares two save files chunk by chunk.

    TOTAL_ORDER requires identical rows in identical order. CHUNK_ORDER
    requires each pair of chunks to hold the same rows in any order.
    NO_ORDER compares only a checksum over all rows of each file and so
    cannot point at the differing row. Under the two ordered policies a
    file with more chunks than the other is inconsistent as soon as the
    shorter one ends; under NO_ORDER chunk counts may differ.
    """

    def __init__(
        self,
        decoder: Callable[[bytes], List[Row]] = decode_chunk,
        differ: Optional[DiffRenderer] = None
    ):
        """
        Initialize the stream comparator.

        Args:
            decoder: Turns a chunk payload into rows
            differ: Diff renderer used on mismatching chunks
        """
        self.decoder = decoder
        self.differ = differ or DiffRenderer()
        logger.debug("Initialized StreamComparator")

    def rows_match(
        self,
        reference_rows: Sequence[Row],
        target_rows: Sequence[Row],
        order_policy: OrderPolicy
    ) -> bool:
        """
        Compare the rows of one chunk pair.

        Args:
            reference_rows: Rows from the reference chunk
            target_rows: Rows from the target chunk
            order_policy: TOTAL_ORDER or CHUNK_ORDER

        Returns:
            True if the chunks hold the same rows under the policy
        """
        if len(reference_rows) != len(target_rows):
            return False

        if order_policy is OrderPolicy.CHUNK_ORDER:
            return Counter(r.raw for r in reference_rows) == Counter(r.raw for r in target_rows)

        return all(r.raw_equals(c) for r, c in zip(reference_rows, target_rows))

    def compare(
        self,
        reference: Union[FileRef, Path, str],
        target: Union[FileRef, Path, str],
        relevant_partitions: Optional[Iterable[int]] = None,
        order_policy: OrderPolicy = OrderPolicy.TOTAL_ORDER
    ) -> ComparisonResult:
        """
        Compare two save files.

        Args:
            reference: Reference copy
            target: Copy to check against the reference
            relevant_partitions: Partition ids whose chunks are compared, None for all
            order_policy: Order policy

        Returns:
            ComparisonResult; read and decode failures are reported as
            inconsistent results rather than raised
        """
        reference_path = _path_of(reference)
        target_path = _path_of(target)
        partitions = set(relevant_partitions) if relevant_partitions is not None else None

        result = ComparisonResult(
            reference=str(reference_path),
            target=str(target_path),
            policy=order_policy,
        )
        if order_policy is OrderPolicy.NO_ORDER:
            result.reference_checksum = 0
            result.target_checksum = 0

        start_time = time.monotonic()

        try:
            with TableSaveFile(reference_path, partitions) as reference_file, \
                    TableSaveFile(target_path, partitions) as target_file:
                self._compare_streams(reference_file, target_file, order_policy, result)

        except (OSError, SaveFileError, ChunkDecodeError) as e:
            logger.error(
                f"Failed to compare {reference_path} with {target_path}: {e}",
                exc_info=logger.isEnabledFor(logging.DEBUG)
            )
            result.error = str(e)
            result.mark_inconsistent(f"Error reading save files: {e}")

        if (
            order_policy is OrderPolicy.NO_ORDER
            and result.consistent
            and (
                result.reference_checksum != result.target_checksum
                or result.reference_rows != result.target_rows
            )
        ):
            result.mark_inconsistent(
                f"Checksum mismatch: reference {result.reference_checksum:#x} "
                f"({result.reference_rows} rows), target {result.target_checksum:#x} "
                f"({result.target_rows} rows)"
            )

        result.duration_seconds = time.monotonic() - start_time
        return result

    def _compare_streams(
        self,
        reference_file: TableSaveFile,
        target_file: TableSaveFile,
        order_policy: OrderPolicy,
        result: ComparisonResult
    ) -> None:
        while True:
            reference_chunk: Optional[Chunk] = None
            target_chunk: Optional[Chunk] = None
            try:
                reference_chunk = reference_file.next_chunk()
                target_chunk = target_file.next_chunk()

                if reference_chunk is None and target_chunk is None:
                    return

                # Chunk boundaries do not matter without order; fold whatever is left
                if order_policy is OrderPolicy.NO_ORDER:
                    self._fold_checksums(reference_chunk, target_chunk, result)
                    continue

                if target_chunk is None:
                    result.mark_inconsistent(
                        f"Reference file still contains chunks while comparing file does not "
                        f"(after {result.chunks_compared} chunks)"
                    )
                    return

                if reference_chunk is None:
                    result.mark_inconsistent(
                        f"Comparing file still contains chunks while reference file does not "
                        f"(after {result.chunks_compared} chunks)"
                    )
                    return

                reference_rows = self.decoder(bytes(reference_chunk.payload))
                target_rows = self.decoder(bytes(target_chunk.payload))
                result.chunks_compared += 1
                result.reference_rows += len(reference_rows)
                result.target_rows += len(target_rows)

                if not self.rows_match(reference_rows, target_rows, order_policy):
                    self._record_mismatch(reference_file, target_file, reference_rows, target_rows, result)
                    return

            finally:
                if reference_chunk is not None:
                    reference_chunk.release()
                if target_chunk is not None:
                    target_chunk.release()

    def _fold_checksums(
        self,
        reference_chunk: Optional[Chunk],
        target_chunk: Optional[Chunk],
        result: ComparisonResult
    ) -> None:
        result.chunks_compared += 1
        if reference_chunk is not None:
            reference_rows = self.decoder(bytes(reference_chunk.payload))
            result.reference_rows += len(reference_rows)
            result.reference_checksum = update_checksum(result.reference_checksum, reference_rows)
        if target_chunk is not None:
            target_rows = self.decoder(bytes(target_chunk.payload))
            result.target_rows += len(target_rows)
            result.target_checksum = update_checksum(result.target_checksum, target_rows)

    def _record_mismatch(
        self,
        reference_file: TableSaveFile,
        target_file: TableSaveFile,
        reference_rows: List[Row],
        target_rows: List[Row],
        result: ComparisonResult
    ) -> None:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                f"table from file: {reference_file.path} : "
                + " | ".join(str(row) for row in reference_rows)
            )
            logger.debug(
                f"table from file: {target_file.path} : "
                + " | ".join(str(row) for row in target_rows)
            )

        result.diff = self.differ.diff(reference_rows, target_rows)
        result.diff_text = result.diff.render(
            f"Diffs between file {reference_file.path} and file {target_file.path}"
        )
        result.mark_inconsistent(
            f"Rows differ in chunk {result.chunks_compared}: "
            f"{result.diff.added_count} added, {result.diff.removed_count} removed"
        )
        logger.info(result.diff_text)
