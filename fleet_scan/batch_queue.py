# fleet_scan/batch_queue.py
"""Batch requests and the SQS publisher that carries them to workers.

Delivery is at-least-once. Each request names the exact shard object the
worker must write, so a redelivered request overwrites the same key.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from fleet_scan.blob_keys import run_identity as to_run_identity
from fleet_scan.blob_keys import shard_data_key
from fleet_scan.errors import PublishError
from fleet_scan.repo_source import RepoEntry

logger = logging.getLogger(__name__)

WIRE_TIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class BatchRequest:
    run_identity: datetime
    shard_index: int
    repos: tuple[RepoEntry, ...] = field(default_factory=tuple)
    result_prefix: str = ""

    @property
    def shard_key(self) -> str:
        return shard_data_key(self.run_identity, self.shard_index, self.result_prefix)

    def to_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {
            "run_identity": self.run_identity.strftime(WIRE_TIME_FORMAT),
            "shard_index": self.shard_index,
            "shard_key": self.shard_key,
            "repos": [r.repo for r in self.repos],
        }
        metadata = {r.repo: list(r.metadata) for r in self.repos if r.metadata}
        if metadata:
            message["metadata"] = metadata
        return message

    def to_json(self) -> str:
        return json.dumps(self.to_message(), sort_keys=True)

    @classmethod
    def from_json(cls, body: str, result_prefix: str = "") -> BatchRequest:
        """Inverse of to_json, for workers and tests."""
        message = json.loads(body)
        run = datetime.strptime(message["run_identity"], WIRE_TIME_FORMAT).replace(tzinfo=timezone.utc)
        metadata = message.get("metadata", {})
        repos = tuple(RepoEntry(repo=r, metadata=tuple(metadata.get(r, ()))) for r in message["repos"])
        return cls(
            run_identity=to_run_identity(run),
            shard_index=int(message["shard_index"]),
            repos=repos,
            result_prefix=result_prefix,
        )


class Publisher(Protocol):
    def publish(self, request: BatchRequest) -> None: ...


class SqsPublisher:
    """Publishes one SQS message per batch request."""

    def __init__(self, queue_url: str, client: Any | None = None, region: str | None = None) -> None:
        self.queue_url = queue_url
        self.sqs = (
            client
            if client is not None
            else boto3.client(
                "sqs",
                region_name=region,
                config=BotoConfig(retries={"max_attempts": 5, "mode": "standard"}),
            )
        )
        self.published = 0

    def publish(self, request: BatchRequest) -> None:
        try:
            resp = self.sqs.send_message(
                QueueUrl=self.queue_url,
                MessageBody=request.to_json(),
                MessageAttributes={
                    "run_identity": {
                        "DataType": "String",
                        "StringValue": request.run_identity.strftime(WIRE_TIME_FORMAT),
                    },
                    "shard_index": {"DataType": "Number", "StringValue": str(request.shard_index)},
                },
            )
        except (ClientError, BotoCoreError) as exc:
            raise PublishError(request.run_identity, request.shard_index, f"{type(exc).__name__}: {exc}") from exc
        self.published += 1
        logger.debug(
            "Published shard %d (%d repos) as message %s",
            request.shard_index,
            len(request.repos),
            resp.get("MessageId"),
        )
