"""
Snapshot Catalog Loader

Locates one snapshot instance (by nonce) across a set of local
directories and describes it as a SnapshotHandle: the tables to check,
their replication flag and the save files contributing to each of them.

Files of a snapshot named NONCE:
    NONCE-host_<id>.digest        JSON digest written by each host
    NONCE-<TABLE>-host_<id>.vpt   table save file written by each host
    NONCE.catalog.yaml            catalog listing tables and replication flags
"""

import json
import logging
import os
import re
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

import yaml

from snapshot_comparer.exceptions import SaveFileError, SnapshotValidationError
from snapshot_comparer.snapshot.models import FileRef, SnapshotHandle, TableDescriptor
from snapshot_comparer.snapshot.savefile import SaveFileHeader, read_header

logger = logging.getLogger(__name__)

DIGEST_SUFFIX = ".digest"
SAVE_FILE_SUFFIX = ".vpt"
CATALOG_SUFFIX = ".catalog.yaml"

_TABLE_NAME = r"[A-Za-z_][A-Za-z0-9_]*"


def digest_file_name(nonce: str, host_id: int) -> str:
    return f"{nonce}-host_{host_id}{DIGEST_SUFFIX}"


def save_file_name(nonce: str, table_name: str, host_id: int) -> str:
    return f"{nonce}-{table_name}-host_{host_id}{SAVE_FILE_SUFFIX}"


def catalog_file_name(nonce: str) -> str:
    return f"{nonce}{CATALOG_SUFFIX}"


class _Instance:
    """Files sharing one transaction id: a single snapshot instance."""

    def __init__(self, txn_id: int):
        self.txn_id = txn_id
        self.timestamp = 0
        self.digests: List[Path] = []
        self.digest_tables: List[Set[str]] = []
        self.partition_count: Optional[int] = None
        self.files: Dict[str, List[Tuple[Path, SaveFileHeader]]] = defaultdict(list)

    def describe(self) -> List[str]:
        taken = datetime.fromtimestamp(self.timestamp / 1000.0, tz=timezone.utc).isoformat()
        lines = [f"Snapshot txn {self.txn_id} taken {taken}", "Files:"]
        lines.extend(f"\t{digest}" for digest in self.digests)
        for table_name in sorted(self.files):
            lines.append(f"\t{table_name}")
            lines.extend(f"\t\t{path}" for path, _ in self.files[table_name])
        return lines


class SnapshotCatalogLoader:
    """
    Loads a snapshot's table and file listing from local directories.

    All problems found while loading are collected and reported together
    in a single SnapshotValidationError.
    """

    def __init__(self):
        """Initialize the catalog loader."""
        logger.debug("Initialized SnapshotCatalogLoader")

    def load(self, nonce: str, directories: Iterable[Union[str, Path]]) -> SnapshotHandle:
        """
        Load one snapshot instance.

        Args:
            nonce: Snapshot name
            directories: Local directories holding the snapshot files

        Returns:
            SnapshotHandle describing the snapshot

        Raises:
            SnapshotValidationError: If directories are unusable, no or several
                snapshot instances match, or the snapshot is incomplete
        """
        if not nonce:
            raise SnapshotValidationError("Snapshot nonce must not be empty")

        dirs = [Path(d) for d in directories] or [Path(".")]
        self.validate_directories(dirs)

        instances = self._scan(nonce, dirs)

        if not instances:
            raise SnapshotValidationError(
                f"Did not find any snapshots with the specified name {nonce} in "
                f"{', '.join(str(d) for d in dirs)}"
            )

        if len(instances) > 1:
            lines = [f"Found {len(instances)} snapshots with specified name {nonce}"]
            for instance in sorted(instances.values(), key=lambda i: i.txn_id):
                lines.extend(instance.describe())
            raise SnapshotValidationError("\n".join(lines))

        instance = next(iter(instances.values()))
        catalog = self.load_catalog(nonce, dirs)
        handle = self._build_handle(nonce, dirs, instance, catalog)

        logger.info(f"Loaded {handle.describe()}")
        return handle

    def validate_directories(self, directories: List[Path]) -> None:
        """
        Check that every directory exists and can be listed.

        Raises:
            SnapshotValidationError: Naming every unusable directory
        """
        problems = []

        for directory in directories:
            if not directory.exists():
                problems.append(f"{directory} does not exist")
                continue
            if not directory.is_dir():
                problems.append(f"{directory} is not a directory")
                continue
            if not os.access(directory, os.R_OK):
                problems.append(f"{directory} does not have read permission set")
            if not os.access(directory, os.X_OK):
                problems.append(f"{directory} does not have execute permission set")

        if problems:
            for problem in problems:
                logger.error(problem)
            raise SnapshotValidationError("; ".join(problems))

    def load_catalog(self, nonce: str, directories: List[Path]) -> Optional[Dict[str, bool]]:
        """
        Read the catalog file from the first directory that has one.

        Returns:
            Table name to replication flag, or None if no directory holds a catalog

        Raises:
            SnapshotValidationError: If the catalog file is malformed
        """
        for directory in directories:
            path = directory / catalog_file_name(nonce)
            if path.is_file():
                return self._parse_catalog(path)

        logger.warning(f"No catalog file for snapshot {nonce}, using digest table list")
        return None

    def _parse_catalog(self, path: Path) -> Dict[str, bool]:
        try:
            with path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise SnapshotValidationError(f"Cannot read catalog {path}: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("tables"), list):
            raise SnapshotValidationError(f"Catalog {path} must contain a 'tables' list")

        tables = {}
        for entry in data["tables"]:
            if not isinstance(entry, dict) or "name" not in entry:
                raise SnapshotValidationError(f"Catalog {path} has a table entry without a name: {entry}")
            replicated = entry.get("replicated", False)
            if not isinstance(replicated, bool):
                raise SnapshotValidationError(
                    f"Catalog {path} table {entry['name']}: replicated must be true or false, "
                    f"got {replicated!r}"
                )
            tables[str(entry["name"])] = replicated

        logger.debug(f"Catalog {path} lists {len(tables)} tables")
        return tables

    def _scan(self, nonce: str, directories: List[Path]) -> Dict[int, _Instance]:
        digest_pattern = re.compile(rf"^{re.escape(nonce)}-host_(\d+){re.escape(DIGEST_SUFFIX)}$")
        file_pattern = re.compile(
            rf"^{re.escape(nonce)}-({_TABLE_NAME})-host_(\d+){re.escape(SAVE_FILE_SUFFIX)}$"
        )

        instances: Dict[int, _Instance] = {}
        save_files: List[Tuple[Path, SaveFileHeader]] = []

        for directory in directories:
            for path in sorted(directory.iterdir()):
                if not path.is_file():
                    continue

                if digest_pattern.match(path.name):
                    digest = self._read_digest(path)
                    if digest is None:
                        continue
                    instance = instances.setdefault(digest["txnId"], _Instance(digest["txnId"]))
                    instance.digests.append(path)
                    instance.digest_tables.append(set(digest["tables"]))
                    instance.timestamp = max(instance.timestamp, int(digest.get("timestamp", 0)))
                    if "partitionCount" in digest:
                        instance.partition_count = int(digest["partitionCount"])
                    continue

                match = file_pattern.match(path.name)
                if match:
                    try:
                        header = read_header(path)
                    except (SaveFileError, OSError) as e:
                        logger.warning(f"Skipping save file with invalid header {path}: {e}")
                        continue
                    if header.table_name != match.group(1):
                        logger.warning(
                            f"Skipping save file {path}: header names table {header.table_name}"
                        )
                        continue
                    save_files.append((path, header))

        for path, header in save_files:
            instance = instances.get(header.txn_id)
            if instance is None:
                logger.warning(f"Save file {path} has no matching digest (txn {header.txn_id})")
                continue
            instance.files[header.table_name].append((path, header))

        return instances

    def _read_digest(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with path.open("r", encoding="utf-8") as f:
                digest = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Skipping unreadable digest {path}: {e}")
            return None

        if not isinstance(digest, dict) or "txnId" not in digest or not isinstance(digest.get("tables"), list):
            logger.warning(f"Skipping digest {path}: missing txnId or tables")
            return None

        return digest

    def _build_handle(
        self,
        nonce: str,
        directories: List[Path],
        instance: _Instance,
        catalog: Optional[Dict[str, bool]]
    ) -> SnapshotHandle:
        problems = []

        digest_tables = set().union(*instance.digest_tables)
        if any(tables != digest_tables for tables in instance.digest_tables):
            problems.append(f"Digests of snapshot {nonce} disagree on the table list")

        descriptors: Dict[str, TableDescriptor] = {}
        partition_counts: Set[int] = set()

        for table_name in sorted(digest_tables):
            entries = instance.files.get(table_name)
            if not entries:
                problems.append(f"No save files found for table {table_name}")
                continue

            flags = {header.is_replicated for _, header in entries}
            if len(flags) > 1:
                problems.append(f"Save files of table {table_name} disagree on replication")
                continue
            is_replicated = flags.pop()

            counts = {header.total_partition_count for _, header in entries}
            if not is_replicated:
                if len(counts) > 1:
                    problems.append(
                        f"Save files of table {table_name} disagree on total partition count: {sorted(counts)}"
                    )
                    continue
                partition_counts.update(counts)

            files = tuple(
                FileRef(
                    path=path,
                    host_id=header.host_id,
                    table_name=table_name,
                    is_replicated=is_replicated,
                    partition_ids=frozenset(header.partition_ids),
                    total_partition_count=header.total_partition_count,
                )
                for path, header in sorted(entries, key=lambda e: (e[1].host_id, str(e[0])))
            )
            descriptors[table_name] = TableDescriptor(table_name, is_replicated, files)

        if len(partition_counts) > 1:
            problems.append(f"Tables disagree on total partition count: {sorted(partition_counts)}")

        if catalog is not None:
            for table_name, is_replicated in sorted(catalog.items()):
                descriptor = descriptors.get(table_name)
                if descriptor is None:
                    if table_name not in digest_tables:
                        problems.append(f"Snapshot does not contain table {table_name}")
                    continue
                if descriptor.is_replicated != is_replicated:
                    problems.append(
                        f"Catalog marks table {table_name} as "
                        f"{'replicated' if is_replicated else 'partitioned'} but its save files disagree"
                    )
            skipped = sorted(set(descriptors) - set(catalog))
            if skipped:
                logger.info(f"Tables not in catalog are not compared: {skipped}")
            descriptors = {name: d for name, d in descriptors.items() if name in catalog}

        if problems:
            for problem in problems:
                logger.error(problem)
            raise SnapshotValidationError(
                f"Snapshot {nonce} is incomplete: " + "; ".join(problems)
            )

        if partition_counts:
            partition_count = partition_counts.pop()
        else:
            partition_count = instance.partition_count or 0

        return SnapshotHandle(
            nonce=nonce,
            txn_id=instance.txn_id,
            partition_count=partition_count,
            tables=descriptors,
            directories=tuple(directories),
            digests=tuple(instance.digests),
        )


def load_snapshot(nonce: str, directories: Iterable[Union[str, Path]]) -> SnapshotHandle:
    """Load a snapshot with a default SnapshotCatalogLoader."""
    return SnapshotCatalogLoader().load(nonce, directories)
