"""
Unit tests for the stream comparator.

Tests chunk-by-chunk comparison of save files under each order policy.
"""

from unittest.mock import patch

import pytest

from snapshot_comparer.exceptions import ChunkDecodeError
from snapshot_comparer.reconciliation.comparer import OrderPolicy, StreamComparator, update_checksum
from snapshot_comparer.snapshot.rows import Row, encode_rows
from snapshot_comparer.snapshot.savefile import SaveFileHeader, TableSaveFile, write_table_save_file


@pytest.fixture
def write_file(tmp_path):
    """Write a replicated save file from a list of chunks (lists of row tuples)."""
    def _write(name, chunks, partition_id=0):
        header = SaveFileHeader(table_name="CUSTOMER", host_id=0, is_replicated=True, txn_id=1)
        return write_table_save_file(
            tmp_path / name,
            header,
            [(partition_id, encode_rows(rows)) for rows in chunks],
        )
    return _write


@pytest.fixture
def comparator():
    """Create a StreamComparator instance."""
    return StreamComparator()


CHUNKS = [
    [(1, "alice"), (2, "bob"), (3, "carol")],
    [(4, "dave"), (5, "erin")],
]


@pytest.fixture
def issued_chunks():
    """Record every chunk handed out by TableSaveFile.next_chunk."""
    original = TableSaveFile.next_chunk
    issued = []

    def tracking(self):
        chunk = original(self)
        if chunk is not None:
            issued.append(chunk)
        return chunk

    with patch.object(TableSaveFile, "next_chunk", tracking):
        yield issued


class TestOrderPolicy:
    """Test mapping of command line flags to policies."""

    def test_default_is_total_order(self):
        assert OrderPolicy.from_flags() is OrderPolicy.TOTAL_ORDER

    def test_ignore_chunk_order(self):
        assert OrderPolicy.from_flags(ignore_chunk_order=True) is OrderPolicy.CHUNK_ORDER

    def test_ignore_order_wins(self):
        assert OrderPolicy.from_flags(ignore_chunk_order=True, ignore_order=True) is OrderPolicy.NO_ORDER


class TestStreamComparator:
    """Test stream comparison of save file pairs."""

    @pytest.mark.parametrize("policy", list(OrderPolicy))
    def test_file_is_consistent_with_itself(self, comparator, write_file, policy):
        """Test that identical copies are consistent under every policy."""
        reference = write_file("a.vpt", CHUNKS)
        target = write_file("b.vpt", CHUNKS)

        result = comparator.compare(reference, target, None, policy)

        assert result.consistent is True
        assert result.chunks_compared == 2
        assert result.reference_rows == 5
        assert result.target_rows == 5
        assert result.diff is None

    def test_intra_chunk_permutation(self, comparator, write_file):
        """Test that reordering inside a chunk only matters for TOTAL_ORDER."""
        reference = write_file("a.vpt", CHUNKS)
        target = write_file("b.vpt", [list(reversed(CHUNKS[0])), CHUNKS[1]])

        assert comparator.compare(reference, target, None, OrderPolicy.CHUNK_ORDER).consistent
        assert comparator.compare(reference, target, None, OrderPolicy.NO_ORDER).consistent

        result = comparator.compare(reference, target, None, OrderPolicy.TOTAL_ORDER)
        assert result.consistent is False
        assert result.diff is not None

    def test_cross_chunk_move_breaks_chunk_order(self, comparator, write_file):
        """Test that moving a row to another chunk breaks CHUNK_ORDER but not NO_ORDER."""
        reference = write_file("a.vpt", CHUNKS)
        target = write_file("b.vpt", [CHUNKS[0][:2], [CHUNKS[0][2]] + CHUNKS[1]])

        assert not comparator.compare(reference, target, None, OrderPolicy.CHUNK_ORDER).consistent
        assert comparator.compare(reference, target, None, OrderPolicy.NO_ORDER).consistent

    def test_chunk_order_counts_duplicates(self, comparator, write_file):
        """Test that CHUNK_ORDER compares multisets, not sets."""
        reference = write_file("a.vpt", [[(1,), (1,), (2,)]])
        target = write_file("b.vpt", [[(1,), (2,), (2,)]])

        assert not comparator.compare(reference, target, None, OrderPolicy.CHUNK_ORDER).consistent

    def test_no_order_detects_changed_value(self, comparator, write_file):
        """Test that NO_ORDER checksums catch a changed value."""
        reference = write_file("a.vpt", CHUNKS)
        target = write_file("b.vpt", [CHUNKS[0], [(4, "dave"), (5, "ERIN")]])

        result = comparator.compare(reference, target, None, OrderPolicy.NO_ORDER)

        assert result.consistent is False
        assert "Checksum mismatch" in result.reason
        assert result.reference_checksum != result.target_checksum
        assert result.diff is None

    def test_mismatch_produces_diff(self, comparator, write_file):
        """Test the diff attached to a mismatching chunk pair."""
        reference = write_file("a.vpt", [[(1,), (2,), (3,)]])
        target = write_file("b.vpt", [[(1,), (3,)]])

        result = comparator.compare(reference, target, None, OrderPolicy.TOTAL_ORDER)

        assert result.consistent is False
        assert [line.render() for line in result.diff.lines] == ["  1", " -2", "  3"]
        assert result.diff_text.splitlines()[0] == f"Diffs between file {reference} and file {target}"

    def test_mismatch_stops_at_first_differing_chunk(self, comparator, write_file):
        """Test that comparison stops after the first mismatch."""
        reference = write_file("a.vpt", [[(1,)], [(2,)], [(3,)]])
        target = write_file("b.vpt", [[(9,)], [(2,)], [(3,)]])

        result = comparator.compare(reference, target, None, OrderPolicy.TOTAL_ORDER)

        assert result.chunks_compared == 1

    @pytest.mark.parametrize("policy", [OrderPolicy.TOTAL_ORDER, OrderPolicy.CHUNK_ORDER])
    def test_reference_has_extra_chunk(self, comparator, write_file, policy):
        """Test N chunks against N-1 chunks."""
        reference = write_file("a.vpt", CHUNKS + [[(6, "frank")]])
        target = write_file("b.vpt", CHUNKS)

        result = comparator.compare(reference, target, None, policy)

        assert result.consistent is False
        assert result.reason.startswith("Reference file still contains chunks")

    def test_no_order_truncated_copy_fails_on_checksum(self, comparator, write_file):
        """Test that a missing last chunk is caught by the NO_ORDER checksum."""
        reference = write_file("a.vpt", CHUNKS + [[(6, "frank")]])
        target = write_file("b.vpt", CHUNKS)

        result = comparator.compare(reference, target, None, OrderPolicy.NO_ORDER)

        assert result.consistent is False
        assert result.reason.startswith("Checksum mismatch")
        assert result.reference_rows == 6
        assert result.target_rows == 5

    def test_no_order_ignores_chunk_boundaries(self, comparator, write_file, issued_chunks):
        """Test the same rows split into a different number of chunks."""
        rows = [row for chunk in CHUNKS for row in chunk]
        reference = write_file("a.vpt", [rows[:2], rows[2:4], rows[4:]])
        target = write_file("b.vpt", [list(reversed(rows[:3])), list(reversed(rows[3:]))])

        result = comparator.compare(reference, target, None, OrderPolicy.NO_ORDER)

        assert result.consistent is True
        assert result.reference_checksum == result.target_checksum
        assert result.reference_rows == result.target_rows == 5
        assert result.chunks_compared == 3
        assert len(issued_chunks) == 5
        assert all(chunk.released for chunk in issued_chunks)

    def test_target_has_extra_chunk(self, comparator, write_file):
        """Test N-1 chunks against N chunks."""
        reference = write_file("a.vpt", CHUNKS)
        target = write_file("b.vpt", CHUNKS + [[(6, "frank")]])

        result = comparator.compare(reference, target, None, OrderPolicy.TOTAL_ORDER)

        assert result.consistent is False
        assert result.reason.startswith("Comparing file still contains chunks")

    def test_relevant_partitions_filter(self, comparator, tmp_path):
        """Test that only chunks of the requested partition are compared."""
        header = SaveFileHeader(
            table_name="ORDERS", host_id=0, is_replicated=False,
            partition_ids=(0, 1), total_partition_count=2,
        )
        reference = write_table_save_file(
            tmp_path / "a.vpt", header,
            [(0, encode_rows([(1,)])), (1, encode_rows([(100,)]))],
        )
        target = write_table_save_file(
            tmp_path / "b.vpt", header,
            [(0, encode_rows([(1,)])), (1, encode_rows([(999,)]))],
        )

        assert comparator.compare(reference, target, {0}, OrderPolicy.TOTAL_ORDER).consistent
        assert not comparator.compare(reference, target, {1}, OrderPolicy.TOTAL_ORDER).consistent

    def test_corrupt_file_is_inconsistent(self, comparator, write_file):
        """Test that a chunk CRC failure becomes an inconsistent result."""
        reference = write_file("a.vpt", CHUNKS)
        target = write_file("b.vpt", CHUNKS)
        data = bytearray(target.read_bytes())
        data[-1] ^= 0xFF
        target.write_bytes(bytes(data))

        result = comparator.compare(reference, target, None, OrderPolicy.TOTAL_ORDER)

        assert result.consistent is False
        assert "CRC" in result.error

    def test_missing_file_is_inconsistent(self, comparator, write_file, tmp_path):
        """Test that an unreadable target does not raise."""
        reference = write_file("a.vpt", CHUNKS)

        result = comparator.compare(reference, tmp_path / "missing.vpt", None, OrderPolicy.TOTAL_ORDER)

        assert result.consistent is False
        assert result.error

    def test_chunks_released_after_mismatch(self, comparator, write_file, issued_chunks):
        """Test that both chunk buffers are released when a mismatch ends the loop."""
        reference = write_file("a.vpt", CHUNKS)
        target = write_file("b.vpt", [[(9, "zed")], CHUNKS[1]])

        comparator.compare(reference, target, None, OrderPolicy.TOTAL_ORDER)

        assert len(issued_chunks) == 2
        assert all(chunk.released for chunk in issued_chunks)

    def test_chunks_released_after_decode_error(self, write_file, issued_chunks):
        """Test that chunk buffers are released when decoding fails."""
        def failing_decoder(payload):
            raise ChunkDecodeError("bad chunk")

        comparator = StreamComparator(decoder=failing_decoder)
        reference = write_file("a.vpt", CHUNKS)
        target = write_file("b.vpt", CHUNKS)

        result = comparator.compare(reference, target, None, OrderPolicy.TOTAL_ORDER)

        assert result.consistent is False
        assert result.error == "bad chunk"
        assert issued_chunks
        assert all(chunk.released for chunk in issued_chunks)

    def test_chunks_released_after_success(self, comparator, write_file, issued_chunks):
        """Test that every chunk is released on a consistent run."""
        reference = write_file("a.vpt", CHUNKS)
        target = write_file("b.vpt", CHUNKS)

        comparator.compare(reference, target, None, OrderPolicy.CHUNK_ORDER)

        assert len(issued_chunks) == 4
        assert all(chunk.released for chunk in issued_chunks)

    def test_mismatch_logs_chunks_at_debug(self, comparator, write_file, caplog):
        """Test that full chunk contents are logged at debug level."""
        reference = write_file("a.vpt", [[(1, "x")]])
        target = write_file("b.vpt", [[(2, "y")]])

        with caplog.at_level("DEBUG", logger="snapshot_comparer"):
            comparator.compare(reference, target, None, OrderPolicy.TOTAL_ORDER)

        assert f"table from file: {reference} : 1, x" in caplog.text
        assert f"table from file: {target} : 2, y" in caplog.text


class TestChecksum:
    """Test the order-independent checksum."""

    def test_checksum_ignores_order(self):
        rows = [Row.from_values(i, str(i)) for i in range(10)]
        assert update_checksum(0, rows) == update_checksum(0, list(reversed(rows)))

    def test_checksum_changes_with_value(self):
        assert update_checksum(0, [Row.from_values(1)]) != update_checksum(0, [Row.from_values(2)])
