"""
Remote Snapshot Retrieval

Fetches snapshot files from remote hosts over SFTP into a local staging
area, laid out as <staging_root>/<nonce>/<host>/. Only files that are
missing locally or modified remotely since the last fetch are downloaded.
"""

import logging
import os
import posixpath
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Union

import paramiko

from snapshot_comparer.exceptions import RemoteFetchError

logger = logging.getLogger(__name__)

DEFAULT_STAGING_DIR = "./remoteSnapshot"
DEFAULT_KEY_FILENAME = "~/.ssh/id_rsa"
DEFAULT_KNOWN_HOSTS = "~/.ssh/known_hosts"


@dataclass
class FetchResult:
    """
    Outcome of fetching one remote directory.

    Attributes:
        host: Remote host name
        remote_dir: Remote directory that was listed
        local_dir: Local directory files were written to
        downloaded: Files downloaded in this run
        skipped: Files already up to date locally
    """

    host: str
    remote_dir: str
    local_dir: Path
    downloaded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


class SftpFetcher:
    """
    Downloads snapshot directories from remote hosts using public key auth.
    """

    def __init__(
        self,
        username: str,
        key_filename: Optional[str] = None,
        known_hosts: Optional[str] = None,
        connect_timeout: float = 30.0,
        port: int = 22
    ):
        """
        Initialize the fetcher.

        Args:
            username: SSH user name
            key_filename: Private key file (defaults to ~/.ssh/id_rsa)
            known_hosts: Known hosts file (defaults to ~/.ssh/known_hosts)
            connect_timeout: Connect timeout in seconds
            port: SSH port

        Raises:
            ValueError: If username is empty
        """
        if not username:
            raise ValueError("A username is required to fetch remote snapshots")

        self.username = username
        self.key_filename = os.path.expanduser(key_filename or DEFAULT_KEY_FILENAME)
        self.known_hosts = os.path.expanduser(known_hosts or DEFAULT_KNOWN_HOSTS)
        self.connect_timeout = connect_timeout
        self.port = port

        logger.debug(f"Initialized SftpFetcher for user {username}")

    def _connect(self, host: str) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if os.path.isfile(self.known_hosts):
            client.load_host_keys(self.known_hosts)
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        key_filename = self.key_filename if os.path.isfile(self.key_filename) else None
        try:
            client.connect(
                host,
                port=self.port,
                username=self.username,
                key_filename=key_filename,
                timeout=self.connect_timeout,
                allow_agent=True,
                look_for_keys=key_filename is None,
            )
        except (paramiko.SSHException, OSError):
            client.close()
            raise
        return client

    def fetch_directory(
        self,
        host: str,
        remote_dir: str,
        local_dir: Union[str, Path]
    ) -> FetchResult:
        """
        Download new or modified regular files of a remote directory.

        Args:
            host: Remote host
            remote_dir: Remote directory to copy
            local_dir: Local destination directory (created if needed)

        Returns:
            FetchResult listing downloaded and skipped files

        Raises:
            RemoteFetchError: If the SSH session or any transfer fails
        """
        local_dir = Path(local_dir)
        local_dir.mkdir(parents=True, exist_ok=True)
        result = FetchResult(host=host, remote_dir=remote_dir, local_dir=local_dir)

        logger.info(f"Fetching {self.username}@{host}:{remote_dir} into {local_dir}")

        client = None
        sftp = None
        try:
            client = self._connect(host)
            sftp = client.open_sftp()

            for entry in sftp.listdir_attr(remote_dir):
                if entry.st_mode is not None and not stat.S_ISREG(entry.st_mode):
                    continue

                local_path = local_dir / entry.filename
                remote_mtime = int(entry.st_mtime or 0)

                if local_path.exists() and remote_mtime <= int(local_path.stat().st_mtime):
                    result.skipped.append(entry.filename)
                    continue

                sftp.get(posixpath.join(remote_dir, entry.filename), str(local_path))
                if entry.st_mtime is not None:
                    os.utime(local_path, (entry.st_atime or remote_mtime, remote_mtime))
                result.downloaded.append(entry.filename)
                logger.debug(f"Downloaded {host}:{remote_dir}/{entry.filename}")

        except (paramiko.SSHException, OSError) as e:
            logger.error(f"Failed to fetch {host}:{remote_dir}: {e}")
            raise RemoteFetchError(f"Failed to fetch {host}:{remote_dir}: {e}") from e

        finally:
            if sftp is not None:
                sftp.close()
            if client is not None:
                client.close()

        logger.info(
            f"Fetched {host}:{remote_dir}: {len(result.downloaded)} downloaded, "
            f"{len(result.skipped)} up to date"
        )
        return result


def stage_remote_snapshot(
    fetcher: SftpFetcher,
    nonce: str,
    hosts: Sequence[str],
    remote_dirs: Sequence[str],
    staging_root: Union[str, Path] = DEFAULT_STAGING_DIR
) -> List[Path]:
    """
    Fetch one snapshot from several hosts into the staging area.

    Args:
        fetcher: Configured SftpFetcher
        nonce: Snapshot name (used as staging subdirectory)
        hosts: Remote hosts
        remote_dirs: Snapshot directory on each host, same order as hosts
        staging_root: Local staging root

    Returns:
        Local directories, one per host, in host order

    Raises:
        RemoteFetchError: If hosts and directories do not pair up or a fetch fails
    """
    if len(hosts) != len(remote_dirs) or not hosts:
        raise RemoteFetchError(
            f"Need one remote directory per host, got {len(remote_dirs)} directories "
            f"for {len(hosts)} hosts"
        )

    root = Path(staging_root) / nonce
    directories = []

    for host, remote_dir in zip(hosts, remote_dirs):
        result = fetcher.fetch_directory(host, remote_dir, root / host)
        directories.append(result.local_dir)

    return directories


def cleanup_staging(staging_root: Union[str, Path] = DEFAULT_STAGING_DIR) -> None:
    """Delete the staging area, if present."""
    root = Path(staging_root)
    if root.exists():
        shutil.rmtree(root)
        logger.info(f"Removed staging directory {root}")
