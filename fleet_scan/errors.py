# fleet_scan/errors.py
"""Error taxonomy for the dispatch / completion / transfer pipeline.

Every error raised by the library derives from PipelineError so that entry
points can log-and-exit on a single exception type.
"""

from __future__ import annotations

from datetime import datetime


class PipelineError(Exception):
    """Base class for all fleet_scan errors."""


class ConfigurationError(PipelineError):
    """Missing or invalid bucket, queue, table or numeric setting."""


class SourceReadError(PipelineError):
    """The repository-list source cannot be read or parsed."""


class PublishError(PipelineError):
    """The message queue rejected a batch request."""

    def __init__(self, run_identity: datetime, shard_index: int, reason: str) -> None:
        self.run_identity = run_identity
        self.shard_index = shard_index
        super().__init__(f"Failed to publish shard {shard_index} for run {run_identity.isoformat()}: {reason}")


class MalformedKeyError(PipelineError):
    """An object key does not decode to a known (run, purpose) pair."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        super().__init__(f"Unrecognized object key {key!r}: {reason}")


class CorruptMarkerError(PipelineError):
    """A shard-count marker is not a non-negative integer, or disagrees with the shards present."""


class ObjectStoreError(PipelineError):
    """Listing, reading or writing the object store failed."""


class LoadJobError(PipelineError):
    """A warehouse load failed, was aborted, or exceeded its deadline."""

    def __init__(self, run_identity: datetime, reason: str) -> None:
        self.run_identity = run_identity
        super().__init__(f"Warehouse load for run {run_identity.isoformat()} failed: {reason}")
