# fleet_scan/repo_source.py
"""Repository-list sources for a dispatch run.

A source is an iterable of RepoEntry objects. Iterating it again starts over
from the first file, so a dispatch can be retried against the same source
object. Input files are CSVs with a header row::

    repo,metadata
    # comment lines are ignored
    github.com/owner1/repo1,
    github.com/owner2/repo2,critical infra

``metadata`` is optional and holds whitespace-separated tags.
"""

from __future__ import annotations

import io
import logging
import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path

import polars as pl

from fleet_scan.errors import ObjectStoreError, SourceReadError
from fleet_scan.object_store import S3ObjectStore

logger = logging.getLogger(__name__)

REPO_COLUMN = "repo"
METADATA_COLUMN = "metadata"

_REPO_PAT = re.compile(r"^(?:https?://)?[\w.-]+(?:/[\w.-]+)+/?$")

ERR_MISSING_REPO_COLUMN = "{}: CSV header has no {!r} column (found {})"
ERR_INVALID_REPO = "{}: record {}: invalid repository identifier {!r}"


@dataclass(frozen=True)
class RepoEntry:
    repo: str
    metadata: tuple[str, ...] = ()


def parse_repo_csv(data: bytes | Path, source_name: str) -> list[RepoEntry]:
    """Parse one repo-list CSV into entries, in file order.

    Raises:
        SourceReadError: unreadable file, missing ``repo`` column, or an
            identifier that is not ``owner/name`` shaped.
    """
    raw = io.BytesIO(data) if isinstance(data, bytes) else data
    try:
        df = pl.read_csv(
            raw,
            comment_prefix="#",
            infer_schema=False,
            truncate_ragged_lines=True,
            raise_if_empty=False,
        )
    except (pl.exceptions.PolarsError, OSError) as exc:
        raise SourceReadError(f"{source_name}: cannot read CSV: {type(exc).__name__}: {exc}") from exc

    if df.width == 0:
        logger.warning("Repo list %s is empty", source_name)
        return []
    if REPO_COLUMN not in df.columns:
        raise SourceReadError(ERR_MISSING_REPO_COLUMN.format(source_name, REPO_COLUMN, df.columns))

    df = df.with_row_index("record", offset=1)
    if METADATA_COLUMN not in df.columns:
        df = df.with_columns(pl.lit(None, dtype=pl.String).alias(METADATA_COLUMN))

    rows = (
        df.select(
            pl.col("record"),
            pl.col(REPO_COLUMN).str.strip_chars().alias(REPO_COLUMN),
            pl.col(METADATA_COLUMN).str.strip_chars().alias(METADATA_COLUMN),
        )
        .filter(pl.col(REPO_COLUMN).is_not_null() & (pl.col(REPO_COLUMN) != ""))
        .iter_rows(named=True)
    )

    entries: list[RepoEntry] = []
    for row in rows:
        repo = row[REPO_COLUMN]
        if not _REPO_PAT.match(repo):
            raise SourceReadError(ERR_INVALID_REPO.format(source_name, row["record"], repo))
        tags = tuple((row[METADATA_COLUMN] or "").split())
        entries.append(RepoEntry(repo=repo, metadata=tags))

    logger.info("Read %s repositories from %s", f"{len(entries):,}", source_name)
    return entries


class CsvRepoSource:
    """Repo lists from local CSV files, chained in the order given."""

    def __init__(self, paths: Sequence[Path | str]) -> None:
        if not paths:
            raise SourceReadError("No repo-list files given")
        self.paths = [Path(p) for p in paths]

    def __iter__(self) -> Iterator[RepoEntry]:
        for path in self.paths:
            if not path.exists():
                raise SourceReadError(f"Repo list not found: {path}")
            yield from parse_repo_csv(path, str(path))


class S3RepoSource:
    """Repo lists from every ``*.csv`` object under an S3 prefix, in key order."""

    def __init__(self, store: S3ObjectStore, prefix: str = "") -> None:
        self.store = store
        self.prefix = prefix

    def list_files(self) -> list[str]:
        try:
            keys = self.store.list_keys(self.prefix)
        except ObjectStoreError as exc:
            raise SourceReadError(str(exc)) from exc
        return [k for k in keys if k.endswith(".csv")]

    def __iter__(self) -> Iterator[RepoEntry]:
        keys = self.list_files()
        if not keys:
            logger.warning("No repo-list CSVs found under %s", self.store.uri(self.prefix))
        for key in keys:
            try:
                data = self.store.read(key)
            except ObjectStoreError as exc:
                raise SourceReadError(str(exc)) from exc
            yield from parse_repo_csv(data, self.store.uri(key))
