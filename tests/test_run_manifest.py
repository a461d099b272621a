"""Tests for the local dispatch manifest."""

import json

from conftest import QUEUE_URL, RUN

from fleet_scan.dispatcher import DispatchResult
from fleet_scan.run_manifest import write_dispatch_manifest

RESULT = DispatchResult(run_identity=RUN, shard_count=2, repo_count=3, marker_key="2022.09.19/020001/shard-count")


def _write(tmp_path, repo_root):
    return write_dispatch_manifest(
        manifest_path=tmp_path / "runs" / "dispatch.json",
        result=RESULT,
        command="fleet-scan-dispatch repos.csv",
        shard_size=2,
        queue_url=QUEUE_URL,
        marker_uri="s3://scan-results/2022.09.19/020001/shard-count",
        repo_root=repo_root,
    )


def test_manifest_records_run(tmp_path):
    path = _write(tmp_path, None)

    manifest = json.loads(path.read_text(encoding="utf-8"))
    assert manifest["run_identity"] == "2022-09-19T02:00:01+00:00"
    assert (manifest["shard_count"], manifest["repo_count"], manifest["shard_size"]) == (2, 3, 2)
    assert manifest["git_commit"] is None


def test_git_commit_outside_work_tree_is_none(tmp_path):
    """A directory that is not a git checkout gives no commit, not an error."""
    (tmp_path / "plain").mkdir()
    manifest = json.loads(_write(tmp_path, tmp_path / "plain").read_text(encoding="utf-8"))
    assert manifest["git_commit"] is None
