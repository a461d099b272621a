# fleet_scan/transfer.py
"""Load complete runs into the warehouse exactly once.

Per-run state machine, driven entirely by objects in the result bucket::

    no marker -> expecting (shard-count written) -> complete (all shards
    present) -> transferred (marker written after a successful load)

``transferred`` is terminal. Every other state is re-evaluated on each call.
Two concurrent calls may both load the same run; the load overwrites the
day's partition, so the duplicate is wasted work, not wrong data. The
transfer claim narrows that window but nothing depends on it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

import requests

from fleet_scan.blob_keys import (
    SHARD_DATA_PREFIX,
    BlobKind,
    decode,
    format_run,
    run_prefix,
    transfer_claim_key,
    transferred_key,
)
from fleet_scan.completion import ShardSummary
from fleet_scan.config import DEFAULT_CLAIM_TTL_SECONDS, DEFAULT_MANIFEST_PREFIX
from fleet_scan.errors import LoadJobError, ObjectStoreError, PipelineError
from fleet_scan.object_store import S3ObjectStore
from fleet_scan.warehouse import RedshiftLoader, build_copy_manifest

logger = logging.getLogger(__name__)

Status = Literal["transferred", "skipped", "claimed", "failed"]

WEBHOOK_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class TransferOutcome:
    run_identity: datetime
    status: Status
    reason: str = ""


@dataclass
class TransferReport:
    outcomes: list[TransferOutcome] = field(default_factory=list)

    def add(self, run: datetime, status: Status, reason: str = "") -> None:
        self.outcomes.append(TransferOutcome(run, status, reason))

    def with_status(self, status: Status) -> list[TransferOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def failed(self) -> list[TransferOutcome]:
        return self.with_status("failed")


def skip_reason(summary: ShardSummary) -> str | None:
    """Why a run is not eligible for transfer, or None if it is complete and pending."""
    if summary.is_transferred:
        return "already transferred"
    if summary.shards_expected == 0:
        return "no shards expected"
    if summary.shards_created != summary.shards_expected:
        return f"{summary.shards_created}/{summary.shards_expected} shards written"
    return None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def acquire_claim(
    store: S3ObjectStore,
    key: str,
    *,
    ttl: timedelta,
    now: Callable[[], datetime] = _utc_now,
) -> bool:
    """Best-effort claim of a run's transfer.

    Creates the claim object only if absent. An existing claim older than
    ``ttl`` (or with unreadable content) is taken over, but only if it has
    not changed since it was read.
    """
    stamp = now().isoformat().encode("utf-8")
    if store.put_if_absent(key, stamp):
        return True

    try:
        existing = store.read_object(key)
    except ObjectStoreError:
        # Released between our write and read; try once more.
        return store.put_if_absent(key, stamp)

    try:
        claimed_at = datetime.fromisoformat(existing.body.decode("utf-8").strip())
    except ValueError:
        claimed_at = None
    if claimed_at is not None and claimed_at.tzinfo is None:
        claimed_at = claimed_at.replace(tzinfo=timezone.utc)

    if claimed_at is not None and now() - claimed_at < ttl:
        return False

    logger.warning("Taking over stale transfer claim %s (claimed at %s)", key, claimed_at)
    if existing.etag is None:
        return False
    return store.replace_if_match(key, stamp, existing.etag)


def release_claim(store: S3ObjectStore, key: str) -> None:
    try:
        store.delete(key)
    except ObjectStoreError as exc:
        logger.warning("Could not release transfer claim %s: %s", key, exc)


def list_shard_keys(store: S3ObjectStore, run: datetime, result_prefix: str = "") -> list[str]:
    """Keys matching ``{run}/shard-*`` that are shard data (never the shard-count marker)."""
    prefix = run_prefix(run, result_prefix) + SHARD_DATA_PREFIX
    return [k for k in store.list_keys(prefix) if decode(k, result_prefix).kind is BlobKind.SHARD_DATA]


def manifest_key(run: datetime, manifest_prefix: str = DEFAULT_MANIFEST_PREFIX) -> str:
    return f"{manifest_prefix}{format_run(run)}/load.manifest"


def notify_webhook(url: str, payload: dict[str, object]) -> None:
    """POST a completion notice. Failures are logged, never raised."""
    try:
        resp = requests.post(url, json=payload, timeout=WEBHOOK_TIMEOUT_SECONDS)
        resp.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Webhook %s failed: %s", url, exc)
        return
    logger.info("Webhook %s notified (HTTP %d)", url, resp.status_code)


def load_run(
    summary: ShardSummary,
    store: S3ObjectStore,
    loader: RedshiftLoader,
    *,
    result_prefix: str = "",
    manifest_prefix: str = DEFAULT_MANIFEST_PREFIX,
    timeout: float | None = None,
) -> None:
    """Write the COPY manifest for one run and block until the load finishes.

    Raises:
        LoadJobError: the shard listing no longer matches the expected count,
            or the load failed or timed out
    """
    run = summary.run_identity
    try:
        shard_keys = list_shard_keys(store, run, result_prefix)
    except ObjectStoreError as exc:
        raise LoadJobError(run, f"listing shard objects failed: {exc}") from exc
    if len(shard_keys) != summary.shards_expected:
        raise LoadJobError(run, f"found {len(shard_keys)} shard objects, expected {summary.shards_expected}")

    key = manifest_key(run, manifest_prefix)
    try:
        store.write(key, build_copy_manifest([store.uri(k) for k in shard_keys]), content_type="application/json")
    except ObjectStoreError as exc:
        raise LoadJobError(run, f"writing load manifest failed: {exc}") from exc

    logger.info(
        "Loading run %s (%d shards) into %s partition %s",
        run.isoformat(),
        len(shard_keys),
        loader.table,
        loader.partition_for(run).isoformat(),
    )
    loader.load(run, store.uri(key), timeout=timeout)


def transfer_completed_runs(
    summaries: Mapping[datetime, ShardSummary],
    store: S3ObjectStore,
    loader: RedshiftLoader,
    *,
    result_prefix: str = "",
    manifest_prefix: str = DEFAULT_MANIFEST_PREFIX,
    timeout: float | None = None,
    claim_ttl: timedelta = timedelta(seconds=DEFAULT_CLAIM_TTL_SECONDS),
    use_claims: bool = True,
    fail_fast: bool = True,
    webhook_url: str | None = None,
    now: Callable[[], datetime] = _utc_now,
) -> TransferReport:
    """Load every complete, not-yet-transferred run and mark it transferred.

    Args:
        summaries: Output of get_bucket_summary()
        store: Result bucket (markers, shards, load manifests)
        loader: Warehouse loader
        timeout: Per-run deadline in seconds for the load to finish
        claim_ttl: Age after which another invocation's claim is ignored
        use_claims: Disable to skip the best-effort claim entirely
        fail_fast: Raise on the first failed run instead of recording it
            and continuing with the next one
        webhook_url: Optional URL notified after each successful transfer

    Raises:
        LoadJobError / ObjectStoreError: only when fail_fast is True
    """
    report = TransferReport()

    for run, summary in summaries.items():
        reason = skip_reason(summary)
        if reason is not None:
            logger.debug("Skipping run %s: %s", run.isoformat(), reason)
            report.add(run, "skipped", reason)
            continue

        claim_key = transfer_claim_key(run, result_prefix)
        try:
            # Re-check immediately before loading: another invocation may have finished.
            if store.exists(transferred_key(run, result_prefix)):
                report.add(run, "skipped", "already transferred")
                continue
            if use_claims and not acquire_claim(store, claim_key, ttl=claim_ttl, now=now):
                logger.info("Run %s is being transferred by another invocation; skipping", run.isoformat())
                report.add(run, "claimed", "claimed by another invocation")
                continue
        except ObjectStoreError as exc:
            logger.error("Run %s: pre-load checks failed: %s", run.isoformat(), exc)
            if fail_fast:
                raise
            report.add(run, "failed", str(exc))
            continue

        try:
            load_run(
                summary,
                store,
                loader,
                result_prefix=result_prefix,
                manifest_prefix=manifest_prefix,
                timeout=timeout,
            )
        except PipelineError as exc:
            logger.error("Run %s: load failed, will retry next cycle: %s", run.isoformat(), exc)
            if use_claims:
                release_claim(store, claim_key)
            if fail_fast:
                raise
            report.add(run, "failed", str(exc))
            continue

        try:
            store.write(transferred_key(run, result_prefix), b"")
        except ObjectStoreError as exc:
            # Data is loaded; the next cycle will reload the same partition.
            logger.error("Run %s loaded but transferred marker not written: %s", run.isoformat(), exc)
            if use_claims:
                release_claim(store, claim_key)
            report.add(run, "failed", f"marker write failed: {exc}")
            continue

        if use_claims:
            release_claim(store, claim_key)
        logger.info("Run %s transferred", run.isoformat())
        report.add(run, "transferred", f"{summary.shards_expected} shards")

        if webhook_url:
            notify_webhook(
                webhook_url,
                {
                    "run_identity": run.isoformat(),
                    "shards": summary.shards_expected,
                    "table": loader.table,
                    "partition": loader.partition_for(run).isoformat(),
                },
            )

    return report
