"""
Table Save File Reader and Writer

A save file holds one table's data as written by one host. It starts with
a CRC-protected header describing the table, followed by a sequence of
length-prefixed chunks, each tagged with the partition it belongs to.

Header (big-endian):
    uint32 crc32 of body
    int32  body length
    body:  int8 completed, int32 version, int64 txn id, int64 timestamp,
           int32 host id, string hostname, string cluster, string database,
           string table, int8 is_replicated and, for partitioned tables,
           int32 n, n x int32 partition id, int32 total partition count

Chunk:
    int32  payload length
    int32  partition id
    uint32 crc32 of payload
    payload
"""

import logging
import struct
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Set, Tuple, Union

from snapshot_comparer.exceptions import SaveFileError

logger = logging.getLogger(__name__)

SAVE_FILE_VERSION = 1

_HEADER_PREFIX = struct.Struct(">Ii")
_CHUNK_PREFIX = struct.Struct(">iiI")
_INT8 = struct.Struct(">b")
_INT32 = struct.Struct(">i")
_INT64 = struct.Struct(">q")


@dataclass(frozen=True)
class SaveFileHeader:
    """Decoded save file header."""

    table_name: str
    host_id: int
    is_replicated: bool
    partition_ids: Tuple[int, ...] = ()
    total_partition_count: int = 0
    txn_id: int = 0
    timestamp: int = 0
    hostname: str = ""
    cluster_name: str = "cluster"
    database_name: str = "database"
    version: int = SAVE_FILE_VERSION
    completed: bool = True

    def to_bytes(self) -> bytes:
        """Serialize the header, including CRC and length prefix."""
        parts = [
            _INT8.pack(1 if self.completed else 0),
            _INT32.pack(self.version),
            _INT64.pack(self.txn_id),
            _INT64.pack(self.timestamp),
            _INT32.pack(self.host_id),
        ]
        for text in (self.hostname, self.cluster_name, self.database_name, self.table_name):
            data = text.encode("utf-8")
            parts.append(_INT32.pack(len(data)) + data)

        parts.append(_INT8.pack(1 if self.is_replicated else 0))
        if not self.is_replicated:
            parts.append(_INT32.pack(len(self.partition_ids)))
            parts.extend(_INT32.pack(p) for p in self.partition_ids)
            parts.append(_INT32.pack(self.total_partition_count))

        body = b"".join(parts)
        return _HEADER_PREFIX.pack(zlib.crc32(body), len(body)) + body


class _BodyReader:
    """Sequential reader over a header body."""

    def __init__(self, body: bytes, path: Path):
        self.body = body
        self.path = path
        self.pos = 0

    def unpack(self, fmt: struct.Struct):
        try:
            value = fmt.unpack_from(self.body, self.pos)[0]
        except struct.error as e:
            raise SaveFileError(f"Header of {self.path} is truncated at offset {self.pos}") from e
        self.pos += fmt.size
        return value

    def string(self) -> str:
        length = self.unpack(_INT32)
        if length < 0 or self.pos + length > len(self.body):
            raise SaveFileError(f"Header string of length {length} overruns header of {self.path}")
        data = self.body[self.pos:self.pos + length]
        self.pos += length
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SaveFileError(f"Header of {self.path} contains invalid UTF-8") from e


def _read_block(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    return data if data is not None else b""


def _parse_header(stream: BinaryIO, path: Path) -> SaveFileHeader:
    prefix = _read_block(stream, _HEADER_PREFIX.size)
    if len(prefix) < _HEADER_PREFIX.size:
        raise SaveFileError(f"Save file {path} is too short to hold a header")

    expected_crc, length = _HEADER_PREFIX.unpack(prefix)
    if length < 0:
        raise SaveFileError(f"Save file {path} has negative header length {length}")

    body = _read_block(stream, length)
    if len(body) < length:
        raise SaveFileError(f"Header of {path} is truncated: expected {length} bytes, got {len(body)}")

    if zlib.crc32(body) != expected_crc:
        raise SaveFileError(f"Header CRC mismatch in {path}")

    reader = _BodyReader(body, path)
    completed = reader.unpack(_INT8) != 0
    version = reader.unpack(_INT32)
    txn_id = reader.unpack(_INT64)
    timestamp = reader.unpack(_INT64)
    host_id = reader.unpack(_INT32)
    hostname = reader.string()
    cluster_name = reader.string()
    database_name = reader.string()
    table_name = reader.string()
    is_replicated = reader.unpack(_INT8) != 0

    partition_ids: Tuple[int, ...] = ()
    total_partition_count = 0
    if not is_replicated:
        count = reader.unpack(_INT32)
        if count < 0:
            raise SaveFileError(f"Header of {path} has negative partition id count {count}")
        partition_ids = tuple(reader.unpack(_INT32) for _ in range(count))
        total_partition_count = reader.unpack(_INT32)

    if not completed:
        raise SaveFileError(f"Save file {path} was not completed by host {host_id}")

    return SaveFileHeader(
        table_name=table_name,
        host_id=host_id,
        is_replicated=is_replicated,
        partition_ids=partition_ids,
        total_partition_count=total_partition_count,
        txn_id=txn_id,
        timestamp=timestamp,
        hostname=hostname,
        cluster_name=cluster_name,
        database_name=database_name,
        version=version,
        completed=completed,
    )


def read_header(path: Union[str, Path]) -> SaveFileHeader:
    """
    Read only the header of a save file.

    Args:
        path: Save file path

    Returns:
        Parsed header

    Raises:
        SaveFileError: If the header is corrupt, truncated or incomplete
        OSError: If the file cannot be opened
    """
    path = Path(path)
    with open(path, "rb") as stream:
        return _parse_header(stream, path)


class Chunk:
    """
    One chunk read from a save file.

    The payload buffer must be released with release() (or by using the
    chunk as a context manager) once the caller is done with it.
    """

    __slots__ = ("partition_id", "_buffer")

    def __init__(self, partition_id: int, payload: bytes):
        self.partition_id = partition_id
        self._buffer: Optional[bytearray] = bytearray(payload)

    @property
    def payload(self) -> bytearray:
        if self._buffer is None:
            raise RuntimeError(f"Chunk for partition {self.partition_id} was already released")
        return self._buffer

    @property
    def released(self) -> bool:
        return self._buffer is None

    def release(self) -> None:
        """Drop the payload buffer."""
        self._buffer = None

    def __len__(self) -> int:
        return 0 if self._buffer is None else len(self._buffer)

    def __enter__(self) -> "Chunk":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class TableSaveFile:
    """
    Sequential chunk reader for one save file.

    Only chunks of the relevant partitions are returned; all others are
    read past. Passing None as relevant_partitions returns every chunk.
    """

    def __init__(
        self,
        path: Union[str, Path],
        relevant_partitions: Optional[Iterable[int]] = None
    ):
        """
        Open a save file and read its header.

        Args:
            path: Save file path
            relevant_partitions: Partition ids to return chunks for, or None for all

        Raises:
            SaveFileError: If the header is invalid
            OSError: If the file cannot be opened
        """
        self.path = Path(path)
        self.relevant_partitions: Optional[Set[int]] = (
            set(relevant_partitions) if relevant_partitions is not None else None
        )
        self.chunks_read = 0
        self.chunks_skipped = 0
        self._stream: Optional[BinaryIO] = open(self.path, "rb")

        try:
            self.header = _parse_header(self._stream, self.path)
        except BaseException:
            self.close()
            raise

        logger.debug(
            f"Opened save file {self.path}: table={self.header.table_name}, "
            f"host={self.header.host_id}, replicated={self.header.is_replicated}"
        )

    def next_chunk(self) -> Optional[Chunk]:
        """
        Read the next relevant chunk.

        Returns:
            The next chunk, or None at end of file

        Raises:
            SaveFileError: If a chunk is truncated or fails its CRC check
        """
        if self._stream is None:
            raise SaveFileError(f"Save file {self.path} is closed")

        while True:
            prefix = _read_block(self._stream, _CHUNK_PREFIX.size)
            if not prefix:
                return None
            if len(prefix) < _CHUNK_PREFIX.size:
                raise SaveFileError(
                    f"Truncated chunk header in {self.path} after {self.chunks_read} chunks"
                )

            length, partition_id, expected_crc = _CHUNK_PREFIX.unpack(prefix)
            if length < 0:
                raise SaveFileError(f"Negative chunk length {length} in {self.path}")

            payload = _read_block(self._stream, length)
            if len(payload) < length:
                raise SaveFileError(
                    f"Truncated chunk in {self.path}: expected {length} bytes, got {len(payload)}"
                )

            if self.relevant_partitions is not None and partition_id not in self.relevant_partitions:
                self.chunks_skipped += 1
                continue

            if zlib.crc32(payload) != expected_crc:
                raise SaveFileError(
                    f"Chunk CRC mismatch in {self.path} (partition {partition_id}, "
                    f"chunk {self.chunks_read})"
                )

            self.chunks_read += 1
            return Chunk(partition_id, payload)

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    def __enter__(self) -> "TableSaveFile":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def write_table_save_file(
    path: Union[str, Path],
    header: SaveFileHeader,
    chunks: Iterable[Tuple[int, bytes]]
) -> Path:
    """
    Write a save file.

    Args:
        path: Destination path (parent directories are created)
        header: File header
        chunks: (partition id, payload) pairs in file order

    Returns:
        The written path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    count = 0
    with open(path, "wb") as stream:
        stream.write(header.to_bytes())
        for partition_id, payload in chunks:
            payload = bytes(payload)
            stream.write(_CHUNK_PREFIX.pack(len(payload), partition_id, zlib.crc32(payload)))
            stream.write(payload)
            count += 1

    logger.debug(f"Wrote save file {path} with {count} chunks")
    return path
