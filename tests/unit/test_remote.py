"""
Unit tests for remote snapshot retrieval.

paramiko is mocked; no SSH server is needed.
"""

import os
import stat
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from snapshot_comparer.exceptions import RemoteFetchError
from snapshot_comparer.snapshot.remote import (
    SftpFetcher,
    cleanup_staging,
    stage_remote_snapshot,
)


def remote_entry(filename, mtime, mode=stat.S_IFREG | 0o644):
    entry = MagicMock()
    entry.filename = filename
    entry.st_mtime = mtime
    entry.st_atime = mtime
    entry.st_mode = mode
    return entry


class TestSftpFetcher:
    """Test suite for SftpFetcher."""

    @pytest.fixture
    def mock_ssh_client(self):
        """Mock paramiko.SSHClient with an SFTP session writing real local files."""
        with patch('snapshot_comparer.snapshot.remote.paramiko.SSHClient') as mock:
            client_instance = MagicMock()
            sftp = MagicMock()

            def fake_get(remote_path, local_path):
                with open(local_path, "w") as f:
                    f.write(remote_path)

            sftp.get.side_effect = fake_get
            client_instance.open_sftp.return_value = sftp
            mock.return_value = client_instance
            yield mock

    @pytest.fixture
    def fetcher(self, tmp_path):
        """Create a fetcher with no key file on disk."""
        return SftpFetcher(
            "voltdb",
            key_filename=str(tmp_path / "no_key"),
            known_hosts=str(tmp_path / "no_known_hosts"),
        )

    def test_init_missing_username_raises_error(self):
        """Test that a username is required."""
        with pytest.raises(ValueError, match="username"):
            SftpFetcher("")

    def test_downloads_new_and_newer_files(self, fetcher, mock_ssh_client, tmp_path):
        """Test that only missing or modified files are downloaded."""
        local_dir = tmp_path / "stage"
        local_dir.mkdir()
        (local_dir / "current.vpt").write_text("old")
        os.utime(local_dir / "current.vpt", (2000, 2000))
        (local_dir / "stale.vpt").write_text("old")
        os.utime(local_dir / "stale.vpt", (2000, 2000))

        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.listdir_attr.return_value = [
            remote_entry("current.vpt", 1000),
            remote_entry("stale.vpt", 3000),
            remote_entry("new.digest", 1500),
            remote_entry("subdir", 1500, mode=stat.S_IFDIR | 0o755),
        ]

        result = fetcher.fetch_directory("db1", "/var/snap", local_dir)

        assert sorted(result.downloaded) == ["new.digest", "stale.vpt"]
        assert result.skipped == ["current.vpt"]
        sftp.get.assert_any_call("/var/snap/stale.vpt", str(local_dir / "stale.vpt"))
        assert int((local_dir / "stale.vpt").stat().st_mtime) == 3000
        assert (local_dir / "current.vpt").read_text() == "old"
        assert not (local_dir / "subdir").exists()

    def test_connects_with_public_key_settings(self, fetcher, mock_ssh_client, tmp_path):
        """Test the SSH connection parameters."""
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.listdir_attr.return_value = []

        fetcher.fetch_directory("db1", "/var/snap", tmp_path / "stage")

        client = mock_ssh_client.return_value
        client.connect.assert_called_once_with(
            "db1",
            port=22,
            username="voltdb",
            key_filename=None,
            timeout=30.0,
            allow_agent=True,
            look_for_keys=True,
        )
        client.set_missing_host_key_policy.assert_called_once()
        sftp.close.assert_called_once()
        client.close.assert_called_once()

    def test_ssh_failure_raises_remote_fetch_error(self, fetcher, mock_ssh_client, tmp_path):
        """Test that SSH errors are wrapped and the client is closed."""
        mock_ssh_client.return_value.connect.side_effect = paramiko.SSHException("auth failed")

        with pytest.raises(RemoteFetchError, match="auth failed"):
            fetcher.fetch_directory("db1", "/var/snap", tmp_path / "stage")

        mock_ssh_client.return_value.close.assert_called_once()

    def test_missing_remote_directory(self, fetcher, mock_ssh_client, tmp_path):
        """Test that a missing remote directory is reported."""
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.listdir_attr.side_effect = FileNotFoundError("No such file")

        with pytest.raises(RemoteFetchError):
            fetcher.fetch_directory("db1", "/missing", tmp_path / "stage")

        sftp.close.assert_called_once()


class TestStaging:
    """Test staging layout helpers."""

    def test_stage_remote_snapshot_layout(self, tmp_path):
        """Test that each host is staged into <root>/<nonce>/<host>."""
        fetcher = MagicMock(spec=SftpFetcher)
        fetcher.fetch_directory.side_effect = lambda host, remote_dir, local_dir: MagicMock(local_dir=local_dir)

        directories = stage_remote_snapshot(
            fetcher, "nightly", ["db1", "db2"], ["/a", "/b"], tmp_path / "staging"
        )

        assert directories == [
            tmp_path / "staging" / "nightly" / "db1",
            tmp_path / "staging" / "nightly" / "db2",
        ]
        fetcher.fetch_directory.assert_any_call("db2", "/b", tmp_path / "staging" / "nightly" / "db2")

    def test_stage_requires_matching_counts(self, tmp_path):
        """Test that hosts and paths must pair up."""
        with pytest.raises(RemoteFetchError, match="one remote directory per host"):
            stage_remote_snapshot(MagicMock(), "nightly", ["db1", "db2"], ["/a"], tmp_path)

    def test_cleanup_staging(self, tmp_path):
        """Test removal of the staging directory."""
        root = tmp_path / "staging"
        (root / "nightly" / "db1").mkdir(parents=True)

        cleanup_staging(root)

        assert not root.exists()

    def test_cleanup_missing_staging_is_noop(self, tmp_path):
        """Test cleanup when nothing was staged."""
        cleanup_staging(tmp_path / "absent")
