"""
Row Codec for Snapshot Save Files

Decodes chunk payloads into rows and encodes rows back into payloads.

Payload layout (big-endian):
    int32 row count
    per row: int32 row length, then the row bytes

Row layout: a sequence of columns, each a one-byte type tag followed by
its value:
    N  null
    i  int64
    d  float64
    s  int32 length + UTF-8 text
    b  int32 length + raw bytes
"""

import logging
import math
import struct
from typing import Any, List, Sequence, Tuple

from snapshot_comparer.exceptions import ChunkDecodeError

logger = logging.getLogger(__name__)

_INT32 = struct.Struct(">i")
_INT64 = struct.Struct(">q")
_FLOAT64 = struct.Struct(">d")

TAG_NULL = b"N"
TAG_INT = b"i"
TAG_FLOAT = b"d"
TAG_STRING = b"s"
TAG_BYTES = b"b"


class Row:
    """
    One decoded row.

    Two notions of equality are offered:
    - raw_equals: identical serialized bytes (layout and content)
    - equals: identical column values, ignoring byte-level differences
      such as 0.0 versus -0.0 or distinct NaN payloads

    The == operator and hashing use the raw bytes, so rows can be counted
    as multisets.
    """

    __slots__ = ("raw", "values")

    def __init__(self, raw: bytes, values: Tuple[Any, ...]):
        self.raw = bytes(raw)
        self.values = tuple(values)

    @classmethod
    def from_values(cls, *values: Any) -> "Row":
        """Build a row by encoding the given column values."""
        return cls(encode_row(values), values)

    def raw_equals(self, other: "Row") -> bool:
        """Compare serialized bytes."""
        return self.raw == other.raw

    def equals(self, other: "Row") -> bool:
        """Compare column values."""
        if len(self.values) != len(other.values):
            return False
        return all(_values_equal(a, b) for a, b in zip(self.values, other.values))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Row):
            return NotImplemented
        return self.raw == other.raw

    def __hash__(self) -> int:
        return hash(self.raw)

    def __str__(self) -> str:
        return ", ".join(_format_value(v) for v in self.values)

    def __repr__(self) -> str:
        return f"Row({self})"


def _values_equal(value1: Any, value2: Any) -> bool:
    if value1 is None or value2 is None:
        return value1 is None and value2 is None

    if isinstance(value1, float) and isinstance(value2, float):
        if math.isnan(value1) and math.isnan(value2):
            return True
        return value1 == value2

    if type(value1) is not type(value2):
        return False

    return value1 == value2


def _format_value(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bytes):
        return "0x" + value.hex()
    return str(value)


def encode_row(values: Sequence[Any]) -> bytes:
    """
    Serialize column values into row bytes.

    Args:
        values: Column values (None, int, float, str or bytes)

    Returns:
        Row bytes

    Raises:
        TypeError: If a value has an unsupported type
    """
    parts = []

    for value in values:
        if value is None:
            parts.append(TAG_NULL)
        elif isinstance(value, bool):
            raise TypeError("Boolean columns are not supported, use int")
        elif isinstance(value, int):
            parts.append(TAG_INT + _INT64.pack(value))
        elif isinstance(value, float):
            parts.append(TAG_FLOAT + _FLOAT64.pack(value))
        elif isinstance(value, str):
            data = value.encode("utf-8")
            parts.append(TAG_STRING + _INT32.pack(len(data)) + data)
        elif isinstance(value, (bytes, bytearray)):
            parts.append(TAG_BYTES + _INT32.pack(len(value)) + bytes(value))
        else:
            raise TypeError(f"Unsupported column type: {type(value).__name__}")

    return b"".join(parts)


def encode_rows(rows: Sequence[Any]) -> bytes:
    """
    Serialize rows into a chunk payload.

    Args:
        rows: Row objects or sequences of column values

    Returns:
        Chunk payload bytes
    """
    parts = [_INT32.pack(len(rows))]

    for row in rows:
        raw = row.raw if isinstance(row, Row) else encode_row(row)
        parts.append(_INT32.pack(len(raw)))
        parts.append(raw)

    return b"".join(parts)


def decode_row(raw: bytes) -> Row:
    """
    Decode row bytes into a Row.

    Raises:
        ChunkDecodeError: If the bytes are not a well-formed row
    """
    values = []
    view = memoryview(raw)
    pos = 0

    try:
        while pos < len(view):
            tag = bytes(view[pos:pos + 1])
            pos += 1

            if tag == TAG_NULL:
                values.append(None)
            elif tag == TAG_INT:
                values.append(_INT64.unpack_from(view, pos)[0])
                pos += _INT64.size
            elif tag == TAG_FLOAT:
                values.append(_FLOAT64.unpack_from(view, pos)[0])
                pos += _FLOAT64.size
            elif tag in (TAG_STRING, TAG_BYTES):
                (length,) = _INT32.unpack_from(view, pos)
                pos += _INT32.size
                if length < 0 or pos + length > len(view):
                    raise ChunkDecodeError(f"Column length {length} overruns row at offset {pos}")
                data = bytes(view[pos:pos + length])
                pos += length
                values.append(data.decode("utf-8") if tag == TAG_STRING else data)
            else:
                raise ChunkDecodeError(f"Unknown column tag {tag!r} at offset {pos - 1}")
    except struct.error as e:
        raise ChunkDecodeError(f"Truncated row: {e}") from e
    except UnicodeDecodeError as e:
        raise ChunkDecodeError(f"Invalid UTF-8 in string column: {e}") from e

    return Row(raw, tuple(values))


def decode_chunk(payload: bytes) -> List[Row]:
    """
    Decode a chunk payload into its rows, in stored order.

    Args:
        payload: Chunk payload bytes

    Returns:
        List of rows

    Raises:
        ChunkDecodeError: If the payload is malformed
    """
    view = memoryview(payload)

    try:
        (row_count,) = _INT32.unpack_from(view, 0)
    except struct.error as e:
        raise ChunkDecodeError(f"Chunk too short for row count: {e}") from e

    if row_count < 0:
        raise ChunkDecodeError(f"Negative row count {row_count}")

    rows = []
    pos = _INT32.size

    for index in range(row_count):
        try:
            (length,) = _INT32.unpack_from(view, pos)
        except struct.error as e:
            raise ChunkDecodeError(
                f"Chunk ended before row {index} of {row_count}"
            ) from e
        pos += _INT32.size

        if length < 0 or pos + length > len(view):
            raise ChunkDecodeError(
                f"Row {index} length {length} overruns chunk of {len(view)} bytes"
            )

        rows.append(decode_row(bytes(view[pos:pos + length])))
        pos += length

    if pos != len(view):
        raise ChunkDecodeError(f"{len(view) - pos} trailing bytes after {row_count} rows")

    logger.debug(f"Decoded chunk of {len(view)} bytes into {row_count} rows")
    return rows
