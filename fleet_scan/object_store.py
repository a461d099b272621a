# fleet_scan/object_store.py
"""S3 access for run markers, shard listings and load manifests.

The pipeline only needs a handful of primitives: deterministic prefix
listing, whole-object reads and writes, and two conditional writes used for
the best-effort transfer claim. botocore errors are wrapped in
ObjectStoreError so callers deal with one exception type.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from fleet_scan.errors import ObjectStoreError

logger = logging.getLogger(__name__)

# Codes S3 returns when an IfNoneMatch / IfMatch precondition does not hold.
PRECONDITION_CODES = frozenset({"PreconditionFailed", "ConditionalRequestConflict", "412", "409"})
NOT_FOUND_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


def make_s3_client(region: str | None = None, max_attempts: int = 5) -> Any:
    return boto3.client(
        "s3",
        region_name=region,
        config=BotoConfig(retries={"max_attempts": max_attempts, "mode": "standard"}),
    )


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


@dataclass(frozen=True)
class StoredObject:
    key: str
    body: bytes
    etag: str | None


class S3ObjectStore:
    """Thin wrapper over one S3 bucket."""

    def __init__(self, bucket: str, client: Any | None = None, region: str | None = None) -> None:
        self.bucket = bucket
        self.s3 = client if client is not None else make_s3_client(region)

    def uri(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def list_keys(self, prefix: str = "") -> list[str]:
        """All keys under ``prefix``, de-duplicated and sorted."""
        logger.debug("Listing s3://%s/%s", self.bucket, prefix)
        keys: set[str] = set()
        try:
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    key = obj.get("Key")
                    if key and not key.endswith("/"):
                        keys.add(key)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Listing {self.uri(prefix)} failed: {type(exc).__name__}: {exc}") from exc
        return sorted(keys)

    def read(self, key: str) -> bytes:
        return self.read_object(key).body

    def read_object(self, key: str) -> StoredObject:
        try:
            resp = self.s3.get_object(Bucket=self.bucket, Key=key)
            body = resp["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Reading {self.uri(key)} failed: {type(exc).__name__}: {exc}") from exc
        return StoredObject(key=key, body=body, etag=resp.get("ETag"))

    def write(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Writing {self.uri(key)} failed: {type(exc).__name__}: {exc}") from exc
        logger.debug("Wrote %s (%d bytes)", self.uri(key), len(data))

    def exists(self, key: str) -> bool:
        try:
            self.s3.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_CODES:
                return False
            raise ObjectStoreError(f"Checking {self.uri(key)} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Checking {self.uri(key)} failed: {exc}") from exc
        return True

    def delete(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise ObjectStoreError(f"Deleting {self.uri(key)} failed: {type(exc).__name__}: {exc}") from exc

    def put_if_absent(self, key: str, data: bytes) -> bool:
        """Create ``key`` only if it does not exist. Returns False if it already did."""
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, IfNoneMatch="*")
        except ClientError as exc:
            if _error_code(exc) in PRECONDITION_CODES:
                return False
            raise ObjectStoreError(f"Conditional write of {self.uri(key)} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Conditional write of {self.uri(key)} failed: {exc}") from exc
        return True

    def replace_if_match(self, key: str, data: bytes, etag: str) -> bool:
        """Overwrite ``key`` only if its ETag is still ``etag``."""
        try:
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, IfMatch=etag)
        except ClientError as exc:
            if _error_code(exc) in PRECONDITION_CODES | NOT_FOUND_CODES:
                return False
            raise ObjectStoreError(f"Conditional overwrite of {self.uri(key)} failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ObjectStoreError(f"Conditional overwrite of {self.uri(key)} failed: {exc}") from exc
        return True
