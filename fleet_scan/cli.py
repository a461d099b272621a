# fleet_scan/cli.py
"""Entry points for the scheduled jobs.

    fleet-scan-dispatch repos.csv [more.csv ...] [--shard-size N] [--manifest PATH]
    fleet-scan-dispatch --from-input-bucket
    fleet-scan-transfer [--keep-going]

Bucket, queue and warehouse identifiers come from the YAML config
(config/fleet_scan.yaml, $FLEET_SCAN_CONFIG or --config) and FLEET_SCAN_*
environment variables.
"""

from __future__ import annotations

import argparse
import logging
import sys
from datetime import timedelta
from pathlib import Path

from rich.console import Console
from rich.table import Table

from fleet_scan.batch_queue import SqsPublisher
from fleet_scan.completion import get_bucket_summary
from fleet_scan.config import PipelineConfig
from fleet_scan.dispatcher import DispatchResult, dispatch_scan
from fleet_scan.errors import PipelineError
from fleet_scan.object_store import S3ObjectStore
from fleet_scan.repo_source import CsvRepoSource, S3RepoSource
from fleet_scan.run_manifest import write_dispatch_manifest
from fleet_scan.transfer import TransferReport, transfer_completed_runs
from fleet_scan.warehouse import RedshiftLoader

logger = logging.getLogger(__name__)

console = Console()

REPO_ROOT = Path(__file__).resolve().parents[1]


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        force=True,
    )
    # boto's own DEBUG output drowns ours
    for noisy in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _print_dispatch(result: DispatchResult, store: S3ObjectStore) -> None:
    table = Table(title="Dispatch")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Run", result.run_identity.isoformat())
    table.add_row("Repositories", f"{result.repo_count:,}")
    table.add_row("Shards", str(result.shard_count))
    table.add_row("Marker", store.uri(result.marker_key))
    console.print(table)


def _print_transfer(report: TransferReport) -> None:
    styles = {"transferred": "green", "skipped": "dim", "claimed": "yellow", "failed": "red"}
    table = Table(title="Transfer")
    table.add_column("Run", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    for o in report.outcomes:
        table.add_row(o.run_identity.isoformat(), f"[{styles[o.status]}]{o.status}[/]", o.reason)
    console.print(table)


def dispatch_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Shard a repository list and publish scan requests.")
    parser.add_argument("repo_lists", nargs="*", type=Path, help="Repo-list CSV files (header: repo,metadata)")
    parser.add_argument(
        "--from-input-bucket",
        action="store_true",
        help="Read every CSV under input-bucket/input-prefix instead of local files",
    )
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--shard-size", type=int, default=None, help="Override shard-size from config")
    parser.add_argument("--manifest", type=Path, default=None, help="Write a local JSON dispatch manifest")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    try:
        cfg = PipelineConfig.load(args.config)
        shard_size = args.shard_size if args.shard_size is not None else cfg.get_shard_size()
        queue_url = cfg.require("request_queue_url")
        store = S3ObjectStore(cfg.require("result_bucket"), region=cfg.region)

        if args.from_input_bucket:
            source: CsvRepoSource | S3RepoSource = S3RepoSource(
                S3ObjectStore(cfg.require("input_bucket"), region=cfg.region),
                cfg.input_prefix,
            )
        else:
            if not args.repo_lists:
                parser.error("give repo-list files or --from-input-bucket")
            source = CsvRepoSource(args.repo_lists)

        result = dispatch_scan(
            source,
            SqsPublisher(queue_url, region=cfg.region),
            store,
            shard_size=shard_size,
            result_prefix=cfg.result_prefix,
        )

        if args.manifest is not None:
            path = write_dispatch_manifest(
                manifest_path=args.manifest,
                result=result,
                command=" ".join(sys.argv),
                shard_size=shard_size,
                queue_url=queue_url,
                marker_uri=store.uri(result.marker_key),
                repo_root=REPO_ROOT,
            )
            logger.info("Dispatch manifest written to %s", path)
    except PipelineError as exc:
        logger.error("Dispatch failed: %s", exc)
        return 1

    _print_dispatch(result, store)
    return 0


def transfer_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Load completed scan runs into the warehouse.")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Record a failed run and continue with the next one instead of stopping",
    )
    parser.add_argument("--no-claims", action="store_true", help="Skip the best-effort transfer claim")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    try:
        cfg = PipelineConfig.load(args.config)
        store = S3ObjectStore(cfg.require("result_bucket"), region=cfg.region)
        loader = RedshiftLoader(
            target=cfg.warehouse_target(),
            table=cfg.require("warehouse_table"),
            partition_column=cfg.require("partition_column"),
            iam_role=cfg.require("copy_iam_role"),
            region=cfg.region,
            poll_interval=cfg.require_positive_int("poll_interval_seconds"),
        )

        summary = get_bucket_summary(
            store,
            result_prefix=cfg.result_prefix,
            exclude_prefixes=[cfg.manifest_prefix],
        )
        report = transfer_completed_runs(
            summary,
            store,
            loader,
            result_prefix=cfg.result_prefix,
            manifest_prefix=cfg.manifest_prefix,
            timeout=cfg.require_positive_int("load_timeout_seconds"),
            claim_ttl=timedelta(seconds=cfg.require_positive_int("claim_ttl_seconds")),
            use_claims=not args.no_claims,
            fail_fast=not args.keep_going,
            webhook_url=cfg.webhook_url or None,
        )
    except PipelineError as exc:
        logger.error("Transfer failed: %s", exc)
        return 1

    _print_transfer(report)
    if report.failed:
        logger.error("%d run(s) failed to transfer; they will be retried next cycle", len(report.failed))
        return 1
    return 0
