"""
Snapshot Access for the Snapshot Comparer

Reads the on-disk pieces of a database snapshot:
- models: FileRef, TableDescriptor and SnapshotHandle
- rows: chunk payload decoding into rows
- savefile: table save file reader and writer
- catalog: locating a snapshot instance and its tables
- remote: fetching snapshot files from remote hosts

Usage:
    from snapshot_comparer.snapshot import load_snapshot

    snapshot = load_snapshot("nightly", ["/data/host0", "/data/host1"])
    for table in snapshot.tables.values():
        print(table.name, len(table.files))
"""

from snapshot_comparer.snapshot.catalog import SnapshotCatalogLoader, load_snapshot
from snapshot_comparer.snapshot.models import (
    REPLICATED_PARTITION_ID,
    FileRef,
    SnapshotHandle,
    TableDescriptor,
)
from snapshot_comparer.snapshot.rows import Row, decode_chunk, encode_rows
from snapshot_comparer.snapshot.savefile import (
    Chunk,
    SaveFileHeader,
    TableSaveFile,
    write_table_save_file,
)

__all__ = [
    "REPLICATED_PARTITION_ID",
    "FileRef",
    "TableDescriptor",
    "SnapshotHandle",
    "Row",
    "decode_chunk",
    "encode_rows",
    "Chunk",
    "SaveFileHeader",
    "TableSaveFile",
    "write_table_save_file",
    "SnapshotCatalogLoader",
    "load_snapshot",
]
