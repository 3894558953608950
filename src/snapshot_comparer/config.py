"""
Run Configuration for the Snapshot Comparer

Resolves command line arguments, an optional YAML config file and
environment variables into one validated ComparerConfig.

Precedence, highest first: command line, environment, config file,
built-in default.
"""

import argparse
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from snapshot_comparer.exceptions import ConfigError
from snapshot_comparer.monitoring.metrics import DEFAULT_JOB_NAME
from snapshot_comparer.reconciliation.comparer import OrderPolicy
from snapshot_comparer.reconciliation.orchestrator import MODE_PEER, MODE_SELF
from snapshot_comparer.snapshot.remote import DEFAULT_STAGING_DIR
from snapshot_comparer.utils.logging_config import json_logging_requested

logger = logging.getLogger(__name__)

STAGING_DIR_ENV = "SNAPSHOT_COMPARER_STAGING_DIR"


@dataclass
class SnapshotLocation:
    """
    Where one snapshot lives.

    Attributes:
        nonce: Snapshot name
        directories: Local directories (local snapshots) or remote paths (remote snapshots)
        hosts: Remote hosts, one per remote path; empty for local snapshots
    """

    nonce: str
    directories: List[str] = field(default_factory=list)
    hosts: List[str] = field(default_factory=list)

    @property
    def is_remote(self) -> bool:
        return bool(self.hosts)


@dataclass
class ComparerConfig:
    """Validated configuration of one comparison run."""

    mode: str
    source: SnapshotLocation
    target: Optional[SnapshotLocation] = None
    order_policy: OrderPolicy = OrderPolicy.TOTAL_ORDER
    username: Optional[str] = None
    cleanup: bool = False
    staging_dir: str = DEFAULT_STAGING_DIR
    key_filename: Optional[str] = None
    known_hosts: Optional[str] = None
    connect_timeout: float = 30.0
    pushgateway_url: Optional[str] = None
    job_name: str = DEFAULT_JOB_NAME
    json_logs: bool = False
    verbose: bool = False

    @property
    def locations(self) -> List[SnapshotLocation]:
        return [self.source] if self.target is None else [self.source, self.target]

    @property
    def needs_remote(self) -> bool:
        return any(location.is_remote for location in self.locations)


def load_config_file(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML config file with environment variable substitution.

    Args:
        config_path: Path to the config file

    Returns:
        Dictionary with configuration values

    Raises:
        ConfigError: If the file is missing, is not valid YAML or its root is not a mapping
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config root must be a mapping, got {type(data).__name__}")

    logger.debug(f"Loaded config file {config_path}")
    return _substitute_env_vars(data)


def _substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute ${VAR} patterns with environment variables."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        return os.getenv(var_name, obj)  # fall back to original if unset
    return obj


def split_list(value: Optional[str]) -> List[str]:
    """Split a comma separated option value, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _section(file_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return section


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _location(
    label: str,
    nonce: Optional[str],
    dirs: Optional[str],
    paths: Optional[str],
    hosts: Optional[str]
) -> SnapshotLocation:
    if not nonce:
        raise ConfigError(f"Does not specify {label} snapshot nonce.")

    if dirs is not None and (paths is not None or hosts is not None):
        raise ConfigError(
            f"Cannot use both local directories and remote paths for the {label} snapshot."
        )

    if paths is None and hosts is None:
        if dirs is None:
            raise ConfigError(
                "Does not specify location of snapshot, either using --dirs for local "
                "or --paths for remote."
            )
        return SnapshotLocation(nonce=nonce, directories=split_list(dirs))

    remote_paths = split_list(paths)
    remote_hosts = split_list(hosts)
    if not remote_paths or len(remote_paths) != len(remote_hosts):
        raise ConfigError("Directories and Host number does not match.")

    return SnapshotLocation(nonce=nonce, directories=remote_paths, hosts=remote_hosts)


def build_config(
    args: argparse.Namespace,
    file_config: Optional[Dict[str, Any]] = None
) -> ComparerConfig:
    """
    Build and validate the run configuration.

    Args:
        args: Parsed command line arguments
        file_config: Values loaded from the YAML config file, if any

    Returns:
        ComparerConfig

    Raises:
        ConfigError: If the options are missing, conflicting or malformed
    """
    file_config = file_config or {}
    remote = _section(file_config, "remote")
    metrics = _section(file_config, "metrics")
    logging_section = _section(file_config, "logging")

    peer_options = [
        getattr(args, name, None)
        for name in ("nonce1", "nonce2", "dirs1", "dirs2", "paths1", "paths2", "hosts1", "hosts2")
    ]

    if args.self_compare:
        if any(option is not None for option in peer_options):
            raise ConfigError("Cannot combine --self with peer comparison options.")
        source = _location("the", args.nonce, args.dirs, args.paths, args.hosts)
        target = None
        mode = MODE_SELF
    else:
        if any(getattr(args, name, None) is not None for name in ("nonce", "dirs", "paths", "hosts")):
            raise ConfigError("--nonce, --dirs, --paths and --hosts require --self.")
        source = _location("source", args.nonce1, args.dirs1, args.paths1, args.hosts1)
        target = _location("comparing", args.nonce2, args.dirs2, args.paths2, args.hosts2)
        mode = MODE_PEER

    try:
        connect_timeout = float(remote.get("connect_timeout", 30.0))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid remote.connect_timeout: {remote.get('connect_timeout')}") from e

    config = ComparerConfig(
        mode=mode,
        source=source,
        target=target,
        order_policy=OrderPolicy.from_flags(args.ignore_chunk_order, args.ignore_order),
        username=args.user or remote.get("username"),
        cleanup=args.cleanup,
        staging_dir=(
            args.staging_dir
            or os.getenv(STAGING_DIR_ENV)
            or remote.get("staging_dir")
            or DEFAULT_STAGING_DIR
        ),
        key_filename=remote.get("key_filename"),
        known_hosts=remote.get("known_hosts"),
        connect_timeout=connect_timeout,
        pushgateway_url=args.pushgateway or metrics.get("pushgateway_url"),
        job_name=metrics.get("job_name") or DEFAULT_JOB_NAME,
        json_logs=(
            args.json_logs
            or json_logging_requested()
            or _as_bool(logging_section.get("json", False))
        ),
        verbose=args.verbose or _as_bool(logging_section.get("verbose", False)),
    )

    if config.needs_remote and not config.username:
        raise ConfigError("Does not specify username.")

    return config
