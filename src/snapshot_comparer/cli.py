"""
Snapshot Comparer Command Line Tool

Checks that the copies of a snapshot's tables agree, either between the
replicas inside one snapshot or between two snapshots. Snapshots are read
from local directories or fetched from remote hosts over SFTP first.

Usage:
    snapshot-comparer --self --nonce nightly --dirs /data/host0,/data/host1
    snapshot-comparer --self --nonce nightly --paths /var/snap,/var/snap --hosts db1,db2 --user voltdb
    snapshot-comparer --nonce1 monday --nonce2 tuesday --dirs1 /snap/mon --dirs2 /snap/tue --ignoreChunkOrder

Exit codes:
    0   all copies are consistent
    -1  invalid input (arguments, missing or incomplete snapshot, transfer failure)
    -2  at least one table is inconsistent
"""

import argparse
import json
import logging
import sys
from typing import List, Optional, Sequence

from snapshot_comparer.config import ComparerConfig, SnapshotLocation, build_config, load_config_file
from snapshot_comparer.exceptions import ConfigError, InvalidInputError
from snapshot_comparer.monitoring.metrics import ComparisonMetrics
from snapshot_comparer.reconciliation.orchestrator import (
    MODE_PEER,
    MODE_SELF,
    ComparisonOrchestrator,
    OverallVerdict,
)
from snapshot_comparer.snapshot.catalog import SnapshotCatalogLoader
from snapshot_comparer.snapshot.models import SnapshotHandle
from snapshot_comparer.snapshot.remote import SftpFetcher, cleanup_staging, stage_remote_snapshot
from snapshot_comparer.utils.logging_config import RunContext, setup_logging

logger = logging.getLogger(__name__)


class ComparerArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors as ConfigError instead of exiting."""

    def error(self, message):
        raise ConfigError(message)


def build_parser() -> argparse.ArgumentParser:
    """Create the command line parser."""
    parser = ComparerArgumentParser(
        prog="snapshot-comparer",
        description="Check consistency of snapshot table copies",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    # Self comparison
    parser.add_argument("--self", dest="self_compare", action="store_true",
                        help="Compare the copies inside one snapshot")
    parser.add_argument("--nonce", help="Snapshot name (with --self)")
    parser.add_argument("--dirs", help="Comma separated local snapshot directories")
    parser.add_argument("--paths", help="Comma separated remote snapshot directories")
    parser.add_argument("--hosts", help="Comma separated remote hosts, one per path")

    # Peer comparison
    parser.add_argument("--nonce1", help="Source snapshot name")
    parser.add_argument("--nonce2", help="Comparing snapshot name")
    parser.add_argument("--dirs1", help="Local directories of the source snapshot")
    parser.add_argument("--dirs2", help="Local directories of the comparing snapshot")
    parser.add_argument("--paths1", help="Remote directories of the source snapshot")
    parser.add_argument("--paths2", help="Remote directories of the comparing snapshot")
    parser.add_argument("--hosts1", help="Remote hosts of the source snapshot")
    parser.add_argument("--hosts2", help="Remote hosts of the comparing snapshot")

    # Remote options
    parser.add_argument("--user", help="SSH user for remote snapshots")
    parser.add_argument("--cleanup", action="store_true",
                        help="Delete the remote staging directory before fetching")
    parser.add_argument("--staging-dir", help="Local staging directory for remote snapshots")

    # Order policy
    parser.add_argument("--ignoreChunkOrder", dest="ignore_chunk_order", action="store_true",
                        help="Allow rows to be reordered within a chunk")
    parser.add_argument("--ignoreOrder", dest="ignore_order", action="store_true",
                        help="Allow rows to be reordered anywhere (checksum comparison)")

    # Ambient options
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--pushgateway", help="Prometheus Pushgateway to push run metrics to")
    parser.add_argument("--json-logs", action="store_true", help="Also emit JSON log records")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    return parser


def resolve_directories(
    location: SnapshotLocation,
    config: ComparerConfig,
    fetcher: Optional[SftpFetcher] = None
) -> List[str]:
    """
    Return the local directories holding a snapshot, fetching it first if remote.

    Raises:
        RemoteFetchError: If a remote fetch fails
    """
    if not location.is_remote:
        return list(location.directories)

    staged = stage_remote_snapshot(
        fetcher,
        location.nonce,
        location.hosts,
        location.directories,
        config.staging_dir,
    )
    return [str(path) for path in staged]


def run_comparison(
    config: ComparerConfig,
    metrics: Optional[ComparisonMetrics] = None,
    loader: Optional[SnapshotCatalogLoader] = None,
    orchestrator: Optional[ComparisonOrchestrator] = None
) -> OverallVerdict:
    """
    Fetch, load and compare the configured snapshot(s).

    Args:
        config: Validated run configuration
        metrics: Optional metrics collector
        loader: Snapshot loader
        orchestrator: Comparison orchestrator

    Returns:
        OverallVerdict

    Raises:
        InvalidInputError: If a snapshot cannot be fetched or loaded
    """
    loader = loader or SnapshotCatalogLoader()
    orchestrator = orchestrator or ComparisonOrchestrator(metrics=metrics)

    fetcher = None
    if config.needs_remote:
        if config.cleanup:
            cleanup_staging(config.staging_dir)
        fetcher = SftpFetcher(
            config.username,
            key_filename=config.key_filename,
            known_hosts=config.known_hosts,
            connect_timeout=config.connect_timeout,
        )

    snapshots: List[SnapshotHandle] = []
    for location in config.locations:
        directories = resolve_directories(location, config, fetcher)
        snapshots.append(loader.load(location.nonce, directories))

    if config.target is None:
        return orchestrator.self_compare(snapshots[0], config.order_policy)
    return orchestrator.compare_with(snapshots[0], snapshots[1], config.order_policy)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    requested = list(sys.argv[1:] if argv is None else argv)

    try:
        args = parser.parse_args(requested)
        file_config = load_config_file(args.config) if args.config else {}
        config = build_config(args, file_config)
    except ConfigError as e:
        setup_logging()
        logger.error(f"Error: {e}")
        parser.print_usage(sys.stderr)
        mode = MODE_SELF if "--self" in requested else MODE_PEER
        verdict = OverallVerdict.invalid(mode, [str(e)])
        print(json.dumps(verdict.to_dict(), indent=2))
        return verdict.exit_code

    setup_logging(verbose=config.verbose, json_logs=config.json_logs)
    metrics = ComparisonMetrics()

    with RunContext() as run_id:
        try:
            verdict = run_comparison(config, metrics)

        except InvalidInputError as e:
            logger.error(f"Error: {e}")
            verdict = OverallVerdict.invalid(config.mode, [str(e)])
            metrics.record_run(config.mode, verdict.status.name, 0)

        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=config.verbose)
            verdict = OverallVerdict.invalid(config.mode, [f"Unexpected error: {e}"])
            metrics.record_run(config.mode, verdict.status.name, 0)

        summary = verdict.to_dict()
        summary["run_id"] = run_id
        print(json.dumps(summary, indent=2))

        if config.pushgateway_url:
            try:
                metrics.push(config.pushgateway_url, config.job_name)
            except OSError:
                logger.warning("Run metrics were not pushed")

    return verdict.exit_code


if __name__ == "__main__":
    sys.exit(main())
