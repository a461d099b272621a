# fleet_scan/dispatcher.py
"""Split a repository list into shards and publish one batch request per shard.

Ordering contract
-----------------
The shard-count marker is written only after every publish has returned
successfully. If the source or any publish fails, the exception propagates
out of dispatch_scan() before the marker statement is reached, so a run
either has a marker equal to the number of published shards or no marker at
all. The completion detector never sees an expected count that workers cannot
reach.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from fleet_scan.batch_queue import BatchRequest, Publisher
from fleet_scan.blob_keys import run_identity as to_run_identity
from fleet_scan.blob_keys import shard_count_key
from fleet_scan.errors import ConfigurationError
from fleet_scan.object_store import S3ObjectStore
from fleet_scan.repo_source import RepoEntry

logger = logging.getLogger(__name__)

ERR_BAD_SHARD_SIZE = "shard_size must be > 0; got: {}"


@dataclass(frozen=True)
class DispatchResult:
    run_identity: datetime
    shard_count: int
    repo_count: int
    marker_key: str


def publish_shards(
    source: Iterable[RepoEntry],
    publisher: Publisher,
    *,
    shard_size: int,
    run: datetime,
    result_prefix: str = "",
    log_every: int = 100,
) -> tuple[int, int]:
    """Publish ``source`` in shards of ``shard_size``. Returns (shards, repos)."""
    batch: list[RepoEntry] = []
    shard_index = 0
    repo_count = 0

    for entry in source:
        batch.append(entry)
        repo_count += 1
        if len(batch) < shard_size:
            continue
        publisher.publish(BatchRequest(run, shard_index, tuple(batch), result_prefix))
        shard_index += 1
        batch = []
        if log_every > 0 and shard_index % log_every == 0:
            logger.info("Published %d shards (%s repos) so far", shard_index, f"{repo_count:,}")

    # Final partial shard
    if batch:
        publisher.publish(BatchRequest(run, shard_index, tuple(batch), result_prefix))
        shard_index += 1

    return shard_index, repo_count


def dispatch_scan(
    source: Iterable[RepoEntry],
    publisher: Publisher,
    store: S3ObjectStore,
    *,
    shard_size: int,
    run_time: datetime | None = None,
    result_prefix: str = "",
) -> DispatchResult:
    """Dispatch one scan run and record how many shards it produced.

    Args:
        source: Repository entries; consumed once, in order
        publisher: Queue publisher receiving one BatchRequest per shard
        store: Result bucket where the shard-count marker is written
        shard_size: Maximum repositories per shard (> 0)
        run_time: Run start time; defaults to now
        result_prefix: Key prefix for all run objects

    Raises:
        ConfigurationError: shard_size is not positive
        SourceReadError / PublishError / ObjectStoreError: propagated as-is;
            no marker is written when the first two occur
    """
    if shard_size <= 0:
        raise ConfigurationError(ERR_BAD_SHARD_SIZE.format(shard_size))

    run = to_run_identity(run_time)
    logger.info("Dispatching run %s with shard_size=%d", run.isoformat(), shard_size)

    shard_count, repo_count = publish_shards(
        source,
        publisher,
        shard_size=shard_size,
        run=run,
        result_prefix=result_prefix,
    )

    # Last step: only reached once every shard above has been published.
    marker_key = shard_count_key(run, result_prefix)
    store.write(marker_key, str(shard_count).encode("utf-8"), content_type="text/plain")

    if shard_count == 0:
        logger.warning("Run %s had no repositories; wrote shard-count 0", run.isoformat())
    logger.info(
        "Dispatch complete. Run=%s Shards=%d Repos=%s Marker=%s",
        run.isoformat(),
        shard_count,
        f"{repo_count:,}",
        store.uri(marker_key),
    )
    return DispatchResult(run_identity=run, shard_count=shard_count, repo_count=repo_count, marker_key=marker_key)
