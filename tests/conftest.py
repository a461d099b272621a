"""Shared fixtures: in-memory stand-ins for the boto3 S3, SQS and Redshift Data clients."""

from __future__ import annotations

import hashlib
import io
from datetime import datetime, timezone

import pytest
from botocore.exceptions import ClientError

from fleet_scan.batch_queue import SqsPublisher
from fleet_scan.blob_keys import shard_count_key, shard_data_key, transferred_key
from fleet_scan.object_store import S3ObjectStore
from fleet_scan.warehouse import RedshiftLoader

BUCKET = "scan-results"
QUEUE_URL = "https://sqs.us-west-2.amazonaws.com/123456789012/scan-requests"
RUN = datetime(2022, 9, 19, 2, 0, 1, tzinfo=timezone.utc)


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakePaginator:
    def __init__(self, client: FakeS3Client) -> None:
        self.client = client

    def paginate(self, Bucket: str, Prefix: str = ""):  # noqa: N803 - boto3 kwarg names
        self.client.list_calls += 1
        if self.client.fail_list:
            raise client_error("AccessDenied", "ListObjectsV2")
        keys = sorted(k for k in self.client.objects if k.startswith(Prefix))
        size = self.client.page_size
        if not keys:
            yield {"KeyCount": 0}
            return
        for i in range(0, len(keys), size):
            yield {"Contents": [{"Key": k, "Size": len(self.client.objects[k][0])} for k in keys[i : i + size]]}


class FakeS3Client:
    """Enough of the S3 client API for S3ObjectStore, with conditional writes."""

    def __init__(self, page_size: int = 2) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.page_size = page_size
        self.list_calls = 0
        self.fail_list = False
        self.fail_put_keys: set[str] = set()
        self._version = 0

    def get_paginator(self, name: str) -> FakePaginator:
        assert name == "list_objects_v2"
        return FakePaginator(self)

    def put_object(self, Bucket, Key, Body=b"", ContentType=None, IfNoneMatch=None, IfMatch=None):  # noqa: N803
        if Key in self.fail_put_keys:
            raise client_error("InternalError", "PutObject")
        if IfNoneMatch == "*" and Key in self.objects:
            raise client_error("PreconditionFailed", "PutObject")
        if IfMatch is not None:
            if Key not in self.objects:
                raise client_error("NoSuchKey", "PutObject")
            if self.objects[Key][1] != IfMatch:
                raise client_error("PreconditionFailed", "PutObject")
        data = Body if isinstance(Body, bytes) else str(Body).encode("utf-8")
        self._version += 1
        etag = f"\"{hashlib.md5(data).hexdigest()}-{self._version}\""  # noqa: S324
        self.objects[Key] = (data, etag)
        return {"ETag": etag}

    def get_object(self, Bucket, Key):  # noqa: N803
        if Key not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        data, etag = self.objects[Key]
        return {"Body": io.BytesIO(data), "ETag": etag}

    def head_object(self, Bucket, Key):  # noqa: N803
        if Key not in self.objects:
            raise client_error("404", "HeadObject")
        return {"ETag": self.objects[Key][1]}

    def delete_object(self, Bucket, Key):  # noqa: N803
        self.objects.pop(Key, None)
        return {}


class FakeSQSClient:
    def __init__(self, fail_after: int | None = None) -> None:
        self.messages: list[dict] = []
        self.fail_after = fail_after

    def send_message(self, QueueUrl, MessageBody, MessageAttributes=None):  # noqa: N803
        if self.fail_after is not None and len(self.messages) >= self.fail_after:
            raise client_error("ServiceUnavailable", "SendMessage")
        self.messages.append({"QueueUrl": QueueUrl, "MessageBody": MessageBody, "Attributes": MessageAttributes})
        return {"MessageId": f"msg-{len(self.messages)}"}


class FakeRedshiftDataClient:
    """Each submitted batch reports the next status sequence from ``statuses``."""

    def __init__(self, statuses: list[str] | None = None) -> None:
        self.statuses = list(statuses or ["STARTED", "FINISHED"])
        self.batches: list[dict] = []
        self.cancelled: list[str] = []
        self._polls: dict[str, int] = {}
        self.fail_submit = False

    def batch_execute_statement(self, Sqls, StatementName=None, **target):  # noqa: N803
        if self.fail_submit:
            raise client_error("ValidationException", "BatchExecuteStatement")
        statement_id = f"stmt-{len(self.batches) + 1}"
        self.batches.append({"Id": statement_id, "Sqls": list(Sqls), "StatementName": StatementName, **target})
        self._polls[statement_id] = 0
        return {"Id": statement_id}

    def describe_statement(self, Id):  # noqa: N803
        i = min(self._polls[Id], len(self.statuses) - 1)
        self._polls[Id] += 1
        status = self.statuses[i]
        desc = {"Id": Id, "Status": status}
        if status in ("FAILED", "ABORTED"):
            desc["Error"] = "ERROR: Load into table failed"
        return desc

    def cancel_statement(self, Id):  # noqa: N803
        self.cancelled.append(Id)
        return {"Status": True}


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def seed_run(
    store: S3ObjectStore,
    run: datetime,
    *,
    expected: int | None,
    shards: list[int],
    transferred: bool = False,
    result_prefix: str = "",
) -> None:
    """Write the objects a dispatcher and its workers would have left behind."""
    for i in shards:
        store.write(shard_data_key(run, i, result_prefix), b'{"repo": "github.com/a/b", "score": 7}\n')
    if expected is not None:
        store.write(shard_count_key(run, result_prefix), str(expected).encode())
    if transferred:
        store.write(transferred_key(run, result_prefix), b"")


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def store(s3_client: FakeS3Client) -> S3ObjectStore:
    return S3ObjectStore(BUCKET, client=s3_client)


@pytest.fixture
def sqs_client() -> FakeSQSClient:
    return FakeSQSClient()


@pytest.fixture
def publisher(sqs_client: FakeSQSClient) -> SqsPublisher:
    return SqsPublisher(QUEUE_URL, client=sqs_client)


@pytest.fixture
def redshift_client() -> FakeRedshiftDataClient:
    return FakeRedshiftDataClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def loader(redshift_client: FakeRedshiftDataClient, clock: FakeClock) -> RedshiftLoader:
    return RedshiftLoader(
        target={"WorkgroupName": "fleet-scan", "Database": "analytics"},
        table="public.scan_results",
        partition_column="run_date",
        iam_role="arn:aws:iam::123456789012:role/redshift-copy",
        region="us-west-2",
        client=redshift_client,
        poll_interval=5,
        sleep=clock.sleep,
        clock=clock,
    )
