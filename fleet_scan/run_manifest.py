# fleet_scan/run_manifest.py
from __future__ import annotations

import json
import platform
import subprocess
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path

from fleet_scan.dispatcher import DispatchResult


@dataclass(frozen=True)
class DispatchManifest:
    """Lightweight, reproducible metadata for one dispatch run."""

    created_utc: str
    python: str
    platform: str
    git_commit: str | None
    command: str

    # Run
    run_identity: str
    shard_count: int
    repo_count: int
    shard_size: int

    # Destinations
    queue_url: str
    marker_uri: str


def _git_head(repo_root: Path) -> str | None:
    """HEAD of the checkout the dispatch ran from, or None outside a git work tree."""
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=repo_root,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return None
    return (proc.stdout.strip() or None) if proc.returncode == 0 else None


def write_dispatch_manifest(
    *,
    manifest_path: str | Path,
    result: DispatchResult,
    command: str,
    shard_size: int,
    queue_url: str,
    marker_uri: str,
    repo_root: str | Path | None = None,
) -> Path:
    """Write dispatch metadata as JSON next to the operator's other run artifacts."""
    path = Path(manifest_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    manifest = DispatchManifest(
        created_utc=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        python=sys.version.replace("\n", " "),
        platform=f"{platform.system()} {platform.release()} ({platform.machine()})",
        git_commit=_git_head(Path(repo_root)) if repo_root is not None else None,
        command=command,
        run_identity=result.run_identity.isoformat(),
        shard_count=result.shard_count,
        repo_count=result.repo_count,
        shard_size=shard_size,
        queue_url=queue_url,
        marker_uri=marker_uri,
    )

    path.write_text(json.dumps(asdict(manifest), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return path
