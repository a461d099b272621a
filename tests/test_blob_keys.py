"""Tests for object-store key naming."""

from datetime import datetime, timedelta, timezone

import pytest

from fleet_scan.blob_keys import (
    BlobKey,
    BlobKind,
    decode,
    encode,
    run_identity,
    run_prefix,
    shard_count_key,
    shard_data_key,
    transfer_claim_key,
    transferred_key,
)
from fleet_scan.errors import MalformedKeyError

RUN = datetime(2022, 9, 26, 2, 0, 3, tzinfo=timezone.utc)


def test_key_layout():
    """Keys are {YYYY.MM.DD}/{HHMMSS}/{name}."""
    assert shard_count_key(RUN) == "2022.09.26/020003/shard-count"
    assert shard_data_key(RUN, 12) == "2022.09.26/020003/shard-0000012"
    assert transferred_key(RUN) == "2022.09.26/020003/transferred"
    assert transfer_claim_key(RUN) == "2022.09.26/020003/transfer-claim"
    assert run_prefix(RUN, "scans/") == "scans/2022.09.26/020003/"


def test_decode_known_purposes():
    """Each known name decodes to its kind and run."""
    assert decode("2022.09.26/020003/shard-count") == BlobKey(RUN, BlobKind.SHARD_COUNT)
    assert decode("2022.09.26/020003/shard-0000012") == BlobKey(RUN, BlobKind.SHARD_DATA, 12)
    assert decode("2022.09.26/020003/transferred") == BlobKey(RUN, BlobKind.TRANSFERRED)
    assert decode("2022.09.26/020003/transfer-claim") == BlobKey(RUN, BlobKind.TRANSFER_CLAIM)


def test_decode_inverts_encode_with_prefix():
    """decode(encode(k)) == k for every kind."""
    keys = [
        BlobKey(RUN, BlobKind.SHARD_COUNT),
        BlobKey(RUN, BlobKind.SHARD_DATA, 0),
        BlobKey(RUN, BlobKind.SHARD_DATA, 4_999_999),
        BlobKey(RUN, BlobKind.TRANSFERRED),
        BlobKey(RUN, BlobKind.TRANSFER_CLAIM),
    ]
    for key in keys:
        assert decode(encode(key, "scans/"), "scans/") == key


@pytest.mark.parametrize(
    "key",
    [
        "2022.09.26/020003/results.json",  # unknown name
        "2022.09.26/020003/shard-",  # no index
        "2022.09.26/020003/shard-abc",
        "2022.09.26/020003/shard-3",  # unpadded
        "2022.09.26/020003/shard-00000003",  # eight digits
        "2022.09.26/020003/shard-\u0661\u0662\u0663\u0664\u0665\u0666\u0667",  # non-ASCII digits
        "2022.13.26/020003/shard-count",  # month 13
        "2022.09.26/250003/shard-count",  # hour 25
        "2022-09-26/020003/shard-count",  # wrong separators
        "2022.09.26/shard-count",  # missing time segment
        "2022.09.26/020003/extra/shard-count",
        ".shard_num",
    ],
)
def test_decode_rejects_malformed_keys(key):
    """Anything that is not one of the known forms raises MalformedKeyError."""
    with pytest.raises(MalformedKeyError):
        decode(key)


def test_decode_rejects_key_outside_prefix():
    """Keys must sit under the configured result prefix."""
    with pytest.raises(MalformedKeyError):
        decode("other/2022.09.26/020003/shard-count", "scans/")


def test_run_identity_truncates_and_normalizes():
    """Run identities are UTC and whole seconds; naive input is taken as UTC."""
    assert run_identity(datetime(2022, 9, 26, 2, 0, 3, 987654)) == RUN
    plus_two = timezone(timedelta(hours=2))
    assert run_identity(datetime(2022, 9, 26, 4, 0, 3, tzinfo=plus_two)) == RUN
    assert run_identity().tzinfo is not None


def test_lexicographic_order_is_chronological():
    """Sorting keys sorts runs oldest first."""
    runs = [RUN + timedelta(days=d, seconds=s) for d, s in [(40, 0), (0, 59), (0, 1), (365, 0)]]
    keys = sorted(shard_count_key(r) for r in runs)
    assert [decode(k).run_identity for k in keys] == sorted(runs)


def test_blob_key_validates_shard_index():
    """shard_index goes with SHARD_DATA only."""
    with pytest.raises(ValueError):
        BlobKey(RUN, BlobKind.SHARD_DATA)
    with pytest.raises(ValueError):
        BlobKey(RUN, BlobKind.TRANSFERRED, 1)
    with pytest.raises(ValueError):
        BlobKey(RUN, BlobKind.SHARD_DATA, 10_000_000)  # would not fit seven digits
