"""
Snapshot Data Model

Immutable descriptions of a loaded snapshot: which save files exist,
which host wrote them and which partitions each of them covers.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Tuple

# Partition id under which replicated tables are tracked ("all partitions")
REPLICATED_PARTITION_ID = 16383


@dataclass(frozen=True)
class FileRef:
    """
    One table save file.

    Attributes:
        path: Location of the save file on local disk
        host_id: Id of the host that wrote the file
        table_name: Table the file belongs to
        is_replicated: Whether the table is replicated
        partition_ids: Partitions this file validly covers
        total_partition_count: Partition count recorded in the file header
    """

    path: Path
    host_id: int
    table_name: str
    is_replicated: bool
    partition_ids: FrozenSet[int] = frozenset()
    total_partition_count: int = 0

    def __str__(self) -> str:
        return str(self.path)


@dataclass(frozen=True)
class TableDescriptor:
    """A table of the snapshot and the files contributing to it."""

    name: str
    is_replicated: bool
    files: Tuple[FileRef, ...] = ()

    @property
    def total_partition_count(self) -> int:
        """Partition count declared by the table's files (0 for replicated tables)."""
        if self.is_replicated or not self.files:
            return 0
        return self.files[0].total_partition_count


@dataclass(frozen=True)
class SnapshotHandle:
    """
    One snapshot instance, identified by its nonce.

    Attributes:
        nonce: User-assigned snapshot name
        txn_id: Transaction id recorded in the digests
        partition_count: Total partition count of the cluster
        tables: Table name to descriptor
        directories: Local directories the snapshot was loaded from
        digests: Digest files belonging to this instance
    """

    nonce: str
    txn_id: int
    partition_count: int
    tables: Dict[str, TableDescriptor] = field(default_factory=dict)
    directories: Tuple[Path, ...] = ()
    digests: Tuple[Path, ...] = ()

    @property
    def table_names(self) -> List[str]:
        """Table names in sorted order."""
        return sorted(self.tables)

    def describe(self) -> str:
        """One-line human readable description."""
        replicated = sum(1 for t in self.tables.values() if t.is_replicated)
        return (
            f"snapshot {self.nonce} (txn {self.txn_id}): {len(self.tables)} tables "
            f"({replicated} replicated), {self.partition_count} partitions, "
            f"{len(self.directories)} directories"
        )
