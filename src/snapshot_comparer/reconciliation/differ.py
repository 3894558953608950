"""
Row Sequence Differ for Snapshot Comparison

Explains why two chunks disagree by aligning their rows on a longest
common subsequence and listing the rows only one side has.

Output lines:
    "  <row>"  row present on both sides
    " +<row>"  row only in the target (added)
    " -<row>"  row only in the reference (removed)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Sequence

logger = logging.getLogger(__name__)


class DiffKind(Enum):
    """Kind of a diff line."""
    UNCHANGED = "  "
    ADDED = " +"
    REMOVED = " -"


@dataclass(frozen=True)
class DiffLine:
    """One row of a diff."""

    kind: DiffKind
    row: Any

    def render(self) -> str:
        return f"{self.kind.value}{self.row}"


@dataclass
class DiffResult:
    """Aligned rows of two sequences, in original row order."""

    lines: List[DiffLine] = field(default_factory=list)

    @property
    def added_count(self) -> int:
        return sum(1 for line in self.lines if line.kind is DiffKind.ADDED)

    @property
    def removed_count(self) -> int:
        return sum(1 for line in self.lines if line.kind is DiffKind.REMOVED)

    @property
    def common_count(self) -> int:
        return sum(1 for line in self.lines if line.kind is DiffKind.UNCHANGED)

    @property
    def is_identical(self) -> bool:
        return self.added_count == 0 and self.removed_count == 0

    def render(self, header: Optional[str] = None) -> str:
        """
        Render the diff as text.

        Args:
            header: Optional first line

        Returns:
            One line per row, newline separated
        """
        out = [header] if header else []
        out.extend(line.render() for line in self.lines)
        return "\n".join(out)

    def summary(self) -> dict:
        return {
            "added": self.added_count,
            "removed": self.removed_count,
            "common": self.common_count,
        }


class DiffRenderer:
    """
    Computes LCS-based diffs between two row sequences.

    Rows are matched with ==, which for decoded snapshot rows compares
    their raw bytes. Time and memory are O(m*n), so this is meant for a
    single pair of chunks, not for whole tables.
    """

    def __init__(self):
        """Initialize the diff renderer."""
        logger.debug("Initialized DiffRenderer")

    def lcs_table(self, rows_a: Sequence[Any], rows_b: Sequence[Any]) -> List[List[int]]:
        """
        Fill the LCS length table.

        lookup[i][j] is the length of the longest common subsequence of
        rows_a[:i] and rows_b[:j].

        Args:
            rows_a: Reference rows
            rows_b: Target rows

        Returns:
            (len(rows_a) + 1) x (len(rows_b) + 1) table
        """
        m, n = len(rows_a), len(rows_b)
        lookup = [[0] * (n + 1) for _ in range(m + 1)]

        for i in range(1, m + 1):
            row_a = rows_a[i - 1]
            previous = lookup[i - 1]
            current = lookup[i]
            for j in range(1, n + 1):
                if row_a == rows_b[j - 1]:
                    current[j] = previous[j - 1] + 1
                else:
                    current[j] = max(previous[j], current[j - 1])

        return lookup

    def diff(self, rows_a: Sequence[Any], rows_b: Sequence[Any]) -> DiffResult:
        """
        Align two row sequences.

        On ties the target row is reported as added before the reference
        row is reported as removed.

        Args:
            rows_a: Reference rows
            rows_b: Target rows

        Returns:
            DiffResult in original row order
        """
        lookup = self.lcs_table(rows_a, rows_b)
        lines: List[DiffLine] = []
        i, j = len(rows_a), len(rows_b)

        while i > 0 or j > 0:
            if i > 0 and j > 0 and rows_a[i - 1] == rows_b[j - 1]:
                lines.append(DiffLine(DiffKind.UNCHANGED, rows_a[i - 1]))
                i -= 1
                j -= 1
            elif j > 0 and (i == 0 or lookup[i][j - 1] >= lookup[i - 1][j]):
                lines.append(DiffLine(DiffKind.ADDED, rows_b[j - 1]))
                j -= 1
            else:
                lines.append(DiffLine(DiffKind.REMOVED, rows_a[i - 1]))
                i -= 1

        lines.reverse()
        result = DiffResult(lines)

        logger.debug(
            f"Diff of {len(rows_a)} vs {len(rows_b)} rows: {result.added_count} added, "
            f"{result.removed_count} removed, {result.common_count} common"
        )
        return result

    def render(
        self,
        rows_a: Sequence[Any],
        rows_b: Sequence[Any],
        reference_name: Optional[str] = None,
        target_name: Optional[str] = None
    ) -> str:
        """
        Diff two row sequences and render the result as text.

        Args:
            rows_a: Reference rows
            rows_b: Target rows
            reference_name: Reference file name for the header line
            target_name: Target file name for the header line

        Returns:
            Rendered diff
        """
        header = None
        if reference_name is not None and target_name is not None:
            header = f"Diffs between file {reference_name} and file {target_name}"
        return self.diff(rows_a, rows_b).render(header)
