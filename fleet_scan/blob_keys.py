# fleet_scan/blob_keys.py
"""Object-store key naming for scan runs.

Every object written by the pipeline lives at::

    {result_prefix}{YYYY.MM.DD}/{HHMMSS}/{name}

where the two date/time segments are the run identity (UTC, whole seconds)
and ``name`` is one of:

- ``shard-count``      number of shards dispatched for the run
- ``shard-NNNNNNN``    worker output for one shard
- ``transferred``      the run has been loaded into the warehouse
- ``transfer-claim``   a transfer attempt is in progress

The date/time format sorts lexicographically in chronological order, so a
plain prefix listing returns runs oldest first.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from fleet_scan.errors import MalformedKeyError

RUN_FORMAT = "%Y.%m.%d/%H%M%S"

SHARD_COUNT_NAME = "shard-count"
TRANSFERRED_NAME = "transferred"
TRANSFER_CLAIM_NAME = "transfer-claim"
SHARD_DATA_PREFIX = "shard-"
SHARD_INDEX_WIDTH = 7
MAX_SHARDS = 10**SHARD_INDEX_WIDTH

_RUN_PAT = re.compile(r"^[0-9]{4}\.[0-9]{2}\.[0-9]{2}/[0-9]{6}$")
_SHARD_PAT = re.compile(rf"^shard-([0-9]{{{SHARD_INDEX_WIDTH}}})$")


class BlobKind(enum.Enum):
    SHARD_COUNT = "shard-count"
    SHARD_DATA = "shard-data"
    TRANSFERRED = "transferred"
    TRANSFER_CLAIM = "transfer-claim"


@dataclass(frozen=True)
class BlobKey:
    """A decoded object key: which run it belongs to and what it is for."""

    run_identity: datetime
    kind: BlobKind
    shard_index: int | None = None

    def __post_init__(self) -> None:
        if (self.kind is BlobKind.SHARD_DATA) != (self.shard_index is not None):
            raise ValueError(f"shard_index is required for SHARD_DATA and forbidden otherwise: {self!r}")
        if self.shard_index is not None and not 0 <= self.shard_index < MAX_SHARDS:
            raise ValueError(f"shard_index must be in [0, {MAX_SHARDS}), got {self.shard_index}")

    @property
    def name(self) -> str:
        if self.kind is BlobKind.SHARD_DATA:
            return f"{SHARD_DATA_PREFIX}{self.shard_index:0{SHARD_INDEX_WIDTH}d}"
        return self.kind.value


def run_identity(moment: datetime | None = None) -> datetime:
    """Normalize a timestamp to a run identity (UTC, truncated to whole seconds).

    Naive datetimes are taken to already be UTC.
    """
    if moment is None:
        moment = datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(microsecond=0)


def format_run(run: datetime) -> str:
    return run_identity(run).strftime(RUN_FORMAT)


def run_prefix(run: datetime, result_prefix: str = "") -> str:
    """Key prefix shared by every object of one run, with trailing slash."""
    return f"{result_prefix}{format_run(run)}/"


def encode(key: BlobKey, result_prefix: str = "") -> str:
    return run_prefix(key.run_identity, result_prefix) + key.name


def shard_count_key(run: datetime, result_prefix: str = "") -> str:
    return encode(BlobKey(run_identity(run), BlobKind.SHARD_COUNT), result_prefix)


def shard_data_key(run: datetime, shard_index: int, result_prefix: str = "") -> str:
    return encode(BlobKey(run_identity(run), BlobKind.SHARD_DATA, shard_index), result_prefix)


def transferred_key(run: datetime, result_prefix: str = "") -> str:
    return encode(BlobKey(run_identity(run), BlobKind.TRANSFERRED), result_prefix)


def transfer_claim_key(run: datetime, result_prefix: str = "") -> str:
    return encode(BlobKey(run_identity(run), BlobKind.TRANSFER_CLAIM), result_prefix)


def decode(key: str, result_prefix: str = "") -> BlobKey:
    """Parse an object key back into a BlobKey.

    Raises:
        MalformedKeyError: the key is outside ``result_prefix``, its run
            segment is not a valid timestamp, or its name is not one of the
            known purposes.
    """
    if not key.startswith(result_prefix):
        raise MalformedKeyError(key, f"not under result prefix {result_prefix!r}")
    relative = key[len(result_prefix) :]

    parts = relative.split("/")
    if len(parts) != 3:
        raise MalformedKeyError(key, "expected YYYY.MM.DD/HHMMSS/<name>")

    run_segment = f"{parts[0]}/{parts[1]}"
    if not _RUN_PAT.match(run_segment):
        raise MalformedKeyError(key, f"run segment {run_segment!r} is not YYYY.MM.DD/HHMMSS")
    try:
        run = datetime.strptime(run_segment, RUN_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError as exc:
        raise MalformedKeyError(key, f"run segment {run_segment!r} is not a valid timestamp") from exc

    name = parts[2]
    if name == SHARD_COUNT_NAME:
        return BlobKey(run, BlobKind.SHARD_COUNT)
    if name == TRANSFERRED_NAME:
        return BlobKey(run, BlobKind.TRANSFERRED)
    if name == TRANSFER_CLAIM_NAME:
        return BlobKey(run, BlobKind.TRANSFER_CLAIM)
    m = _SHARD_PAT.match(name)
    if m:
        return BlobKey(run, BlobKind.SHARD_DATA, int(m.group(1)))
    raise MalformedKeyError(key, f"unknown object name {name!r}")
