# fleet_scan/warehouse.py
"""Bulk load of a run's shard files into a day-partitioned Redshift table.

The load runs as a single Redshift Data API batch, which Redshift executes as
one transaction:

1. stage the shard files (newline-delimited JSON) into a temp table via COPY
   with a manifest that lists exactly the run's shard objects
2. stamp the partition column with the run's calendar date
3. delete that date from the target table and insert the staged rows

Steps 2-3 make the load an overwrite of the day's partition, so retrying a
failed or duplicated load is safe.
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Sequence
from datetime import date, datetime
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from fleet_scan.errors import ConfigurationError, LoadJobError

logger = logging.getLogger(__name__)

_IDENT_PART = r"[A-Za-z_][A-Za-z0-9_$]*"
_TABLE_PAT = re.compile(rf"^{_IDENT_PART}(\.{_IDENT_PART}){{0,2}}$")
_COLUMN_PAT = re.compile(rf"^{_IDENT_PART}$")

TERMINAL_OK = "FINISHED"
TERMINAL_FAILED = frozenset({"FAILED", "ABORTED"})

DEFAULT_POLL_INTERVAL = 10.0


def build_copy_manifest(shard_uris: Sequence[str]) -> bytes:
    """Redshift COPY manifest; every entry is mandatory so a missing shard fails the load."""
    entries = [{"url": uri, "mandatory": True} for uri in shard_uris]
    return (json.dumps({"entries": entries}, indent=2) + "\n").encode("utf-8")


def _sql_literal(value: str, what: str) -> str:
    if "'" in value or "\\" in value:
        raise ConfigurationError(f"{what} must not contain quotes or backslashes: {value!r}")
    return f"'{value}'"


class RedshiftLoader:
    """Submits overwrite-partition loads and waits for them to finish."""

    def __init__(
        self,
        *,
        target: dict[str, str],
        table: str,
        partition_column: str,
        iam_role: str,
        region: str | None = None,
        client: Any | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not _TABLE_PAT.match(table):
            raise ConfigurationError(f"Invalid warehouse table name: {table!r}")
        if not _COLUMN_PAT.match(partition_column):
            raise ConfigurationError(f"Invalid partition column name: {partition_column!r}")
        self.target = dict(target)
        self.table = table
        self.partition_column = partition_column
        self.iam_role = iam_role
        self.region = region
        self.poll_interval = poll_interval
        self.client = client if client is not None else boto3.client("redshift-data", region_name=region)
        self._sleep = sleep
        self._clock = clock

    def build_load_sql(self, run: datetime, manifest_uri: str) -> list[str]:
        partition = _sql_literal(run.date().isoformat(), "partition date")
        stage = f"stage_{self.table.split('.')[-1]}_{run.strftime('%Y%m%d%H%M%S')}"
        copy = (
            f"COPY {stage} FROM {_sql_literal(manifest_uri, 'manifest URI')} "
            f"IAM_ROLE {_sql_literal(self.iam_role, 'IAM role')} "
            "FORMAT AS JSON 'auto' MANIFEST"
        )
        if self.region:
            copy += f" REGION {_sql_literal(self.region, 'region')}"
        return [
            f"CREATE TEMP TABLE {stage} (LIKE {self.table})",
            copy,
            f"UPDATE {stage} SET {self.partition_column} = {partition}",
            f"DELETE FROM {self.table} WHERE {self.partition_column} = {partition}",
            f"INSERT INTO {self.table} SELECT * FROM {stage}",
        ]

    def submit(self, run: datetime, manifest_uri: str) -> str:
        sqls = self.build_load_sql(run, manifest_uri)
        try:
            resp = self.client.batch_execute_statement(
                Sqls=sqls,
                StatementName=f"fleet-scan-load-{run.strftime('%Y%m%dT%H%M%S')}",
                **self.target,
            )
        except (ClientError, BotoCoreError) as exc:
            raise LoadJobError(run, f"submission failed: {type(exc).__name__}: {exc}") from exc
        statement_id = str(resp["Id"])
        logger.info("Submitted load for run %s as statement %s", run.isoformat(), statement_id)
        return statement_id

    def wait(self, run: datetime, statement_id: str, timeout: float | None) -> None:
        """Poll until the statement finishes; cancel it and fail once ``timeout`` elapses."""
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            try:
                desc = self.client.describe_statement(Id=statement_id)
            except (ClientError, BotoCoreError) as exc:
                raise LoadJobError(run, f"status check failed: {type(exc).__name__}: {exc}") from exc

            status = desc.get("Status")
            if status == TERMINAL_OK:
                logger.info("Load statement %s finished (%s rows)", statement_id, desc.get("ResultRows", "?"))
                return
            if status in TERMINAL_FAILED:
                raise LoadJobError(run, f"statement {statement_id} {status}: {desc.get('Error', 'no error message')}")

            if deadline is not None and self._clock() >= deadline:
                self._cancel(statement_id)
                raise LoadJobError(run, f"statement {statement_id} still {status} after {timeout:.0f}s; cancelled")

            logger.debug("Load statement %s is %s; polling again in %.1fs", statement_id, status, self.poll_interval)
            self._sleep(self.poll_interval)

    def _cancel(self, statement_id: str) -> None:
        try:
            self.client.cancel_statement(Id=statement_id)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Could not cancel statement %s: %s", statement_id, exc)

    def load(self, run: datetime, manifest_uri: str, timeout: float | None = None) -> None:
        statement_id = self.submit(run, manifest_uri)
        self.wait(run, statement_id, timeout)

    def partition_for(self, run: datetime) -> date:
        return run.date()
