# fleet_scan/completion.py
"""
Completion detection: reconstruct per-run shard progress from a bucket listing.

The summary is recomputed from scratch on every call; nothing is cached
between invocations. Any key that does not decode aborts the whole call,
because a partial summary could under-count shards and trigger an early load.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from fleet_scan.blob_keys import BlobKind, decode
from fleet_scan.errors import CorruptMarkerError
from fleet_scan.object_store import S3ObjectStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShardSummary:
    run_identity: datetime
    shards_expected: int = 0
    shards_created: int = 0
    is_transferred: bool = False
    is_claimed: bool = False

    @property
    def is_complete(self) -> bool:
        """A zero expected count means nothing to do, not done."""
        return self.shards_expected > 0 and self.shards_created == self.shards_expected

    @property
    def is_pending(self) -> bool:
        return self.is_complete and not self.is_transferred


@dataclass
class _RunAccumulator:
    shards_expected: int | None = None
    shard_indices: set[int] = field(default_factory=set)
    is_transferred: bool = False
    is_claimed: bool = False


def parse_shard_count(key: str, data: bytes) -> int:
    text = data.decode("utf-8", errors="replace").strip()
    if not (text.isascii() and text.isdecimal()):
        raise CorruptMarkerError(f"Shard-count marker {key} does not hold a non-negative integer: {text[:40]!r}")
    return int(text)


def build_bucket_summary(
    keys: Iterable[str],
    read_marker: Callable[[str], bytes],
    *,
    result_prefix: str = "",
) -> dict[datetime, ShardSummary]:
    """Project a key listing into one ShardSummary per run.

    Args:
        keys: Every object key in scope (relative to the bucket)
        read_marker: Returns the content of a shard-count marker
        result_prefix: Key prefix shared by all run objects

    Returns:
        Summaries keyed by run identity, oldest run first

    Raises:
        MalformedKeyError: a key does not decode
        CorruptMarkerError: a shard-count marker is not an integer, or a shard
            index is not below its run's shard count
    """
    runs: dict[datetime, _RunAccumulator] = {}

    for key in sorted(set(keys)):
        blob = decode(key, result_prefix)
        acc = runs.setdefault(blob.run_identity, _RunAccumulator())
        if blob.kind is BlobKind.SHARD_COUNT:
            acc.shards_expected = parse_shard_count(key, read_marker(key))
        elif blob.kind is BlobKind.SHARD_DATA and blob.shard_index is not None:
            acc.shard_indices.add(blob.shard_index)
        elif blob.kind is BlobKind.TRANSFERRED:
            acc.is_transferred = True
        elif blob.kind is BlobKind.TRANSFER_CLAIM:
            acc.is_claimed = True

    for run, acc in runs.items():
        if acc.shards_expected is None or not acc.shard_indices:
            continue
        stray = max(acc.shard_indices)
        if stray >= acc.shards_expected:
            raise CorruptMarkerError(
                f"Run {run.isoformat()} has shard index {stray} but its shard-count marker says "
                f"{acc.shards_expected}; a shard object does not belong to this dispatch"
            )

    return {
        run: ShardSummary(
            run_identity=run,
            shards_expected=acc.shards_expected or 0,
            shards_created=len(acc.shard_indices),
            is_transferred=acc.is_transferred,
            is_claimed=acc.is_claimed,
        )
        for run, acc in sorted(runs.items())
    }


def get_bucket_summary(
    store: S3ObjectStore,
    *,
    result_prefix: str = "",
    exclude_prefixes: Sequence[str] = (),
) -> dict[datetime, ShardSummary]:
    """List the result bucket once and summarize every run found under ``result_prefix``.

    ``exclude_prefixes`` carves out non-run objects that share the listing
    scope (the load-manifest prefix when it sits under ``result_prefix``).
    """
    keys = store.list_keys(result_prefix)
    excluded = [p for p in exclude_prefixes if p]
    in_scope = [k for k in keys if not any(k.startswith(p) for p in excluded)]
    if len(in_scope) != len(keys):
        logger.debug("Ignoring %d keys under excluded prefixes %s", len(keys) - len(in_scope), excluded)

    summary = build_bucket_summary(in_scope, store.read, result_prefix=result_prefix)

    pending = sum(1 for s in summary.values() if s.is_pending)
    logger.info(
        "Bucket summary: %d runs, %d pending transfer (%d keys scanned)",
        len(summary),
        pending,
        len(in_scope),
    )
    for s in summary.values():
        logger.debug(
            "Run %s: expected=%d created=%d transferred=%s claimed=%s",
            s.run_identity.isoformat(),
            s.shards_expected,
            s.shards_created,
            s.is_transferred,
            s.is_claimed,
        )
    return summary
