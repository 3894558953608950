"""
Pytest configuration and shared fixtures.

Builds real snapshot directories in tmp_path: one directory per host,
holding that host's digest, its save files and (optionally) the catalog.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from snapshot_comparer.snapshot.catalog import catalog_file_name, digest_file_name, save_file_name
from snapshot_comparer.snapshot.rows import encode_rows
from snapshot_comparer.snapshot.savefile import SaveFileHeader, write_table_save_file


class SnapshotBuilder:
    """Writes one snapshot instance spread over several host directories."""

    def __init__(self, root: Path, nonce: str = "nightly", txn_id: int = 1000, partition_count: int = 4):
        self.root = Path(root)
        self.nonce = nonce
        self.txn_id = txn_id
        self.partition_count = partition_count
        self.tables: Dict[str, bool] = {}
        self.host_ids: List[int] = []

    def host_dir(self, host_id: int) -> Path:
        path = self.root / f"host{host_id}"
        path.mkdir(parents=True, exist_ok=True)
        if host_id not in self.host_ids:
            self.host_ids.append(host_id)
        return path

    def add_replicated(self, table: str, host_id: int, chunks: Sequence[Sequence[tuple]]) -> Path:
        """Write a replicated table copy; each chunk is a list of row tuples."""
        self.tables[table] = True
        header = SaveFileHeader(
            table_name=table,
            host_id=host_id,
            is_replicated=True,
            txn_id=self.txn_id,
            hostname=f"host{host_id}",
        )
        return write_table_save_file(
            self.host_dir(host_id) / save_file_name(self.nonce, table, host_id),
            header,
            [(0, encode_rows(rows)) for rows in chunks],
        )

    def add_partitioned(
        self,
        table: str,
        host_id: int,
        partitions: Dict[int, Sequence[Sequence[tuple]]],
        total_partition_count: Optional[int] = None
    ) -> Path:
        """Write a partitioned table file; partitions maps partition id to its chunks."""
        self.tables[table] = False
        header = SaveFileHeader(
            table_name=table,
            host_id=host_id,
            is_replicated=False,
            partition_ids=tuple(sorted(partitions)),
            total_partition_count=total_partition_count or self.partition_count,
            txn_id=self.txn_id,
            hostname=f"host{host_id}",
        )
        chunks = [
            (partition_id, encode_rows(rows))
            for partition_id in sorted(partitions)
            for rows in partitions[partition_id]
        ]
        return write_table_save_file(
            self.host_dir(host_id) / save_file_name(self.nonce, table, host_id),
            header,
            chunks,
        )

    def write_digests(self, tables: Optional[Sequence[str]] = None) -> None:
        for host_id in self.host_ids:
            digest = {
                "version": 1,
                "txnId": self.txn_id,
                "timestamp": 1700000000000,
                "hostId": host_id,
                "tables": sorted(tables if tables is not None else self.tables),
                "partitionCount": self.partition_count,
            }
            path = self.host_dir(host_id) / digest_file_name(self.nonce, host_id)
            path.write_text(json.dumps(digest), encoding="utf-8")

    def write_catalog(self, tables: Optional[Dict[str, bool]] = None) -> Path:
        entries = tables if tables is not None else self.tables
        lines = ["tables:"]
        for name, replicated in sorted(entries.items()):
            lines.append(f"  - name: {name}")
            lines.append(f"    replicated: {'true' if replicated else 'false'}")
        path = self.host_dir(self.host_ids[0]) / catalog_file_name(self.nonce)
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    def build(self, catalog: bool = True) -> List[Path]:
        """Write digests (and catalog) and return the host directories."""
        self.write_digests()
        if catalog:
            self.write_catalog()
        return [self.host_dir(host_id) for host_id in self.host_ids]


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo handler and propagation changes made by setup_logging."""
    yield
    package_logger = logging.getLogger("snapshot_comparer")
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True


@pytest.fixture
def snapshot_builder(tmp_path):
    """Builder for a snapshot named 'nightly' with 4 partitions."""
    return SnapshotBuilder(tmp_path / "snapshots")


@pytest.fixture
def make_builder(tmp_path):
    """Factory for additional snapshot builders under tmp_path."""
    def _make(name: str, **kwargs) -> SnapshotBuilder:
        return SnapshotBuilder(tmp_path / name, **kwargs)
    return _make


@pytest.fixture
def customer_rows():
    """Three chunks of a small replicated table."""
    return [
        [(1, "alice", 10.5), (2, "bob", None)],
        [(3, "carol", 0.0), (4, "dave", -1.25)],
        [(5, "erin", 3.0)],
    ]
