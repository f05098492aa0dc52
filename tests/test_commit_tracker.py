"""Tests for revision capture and pipeline discovery."""

import pytest

from mergegate.execution_engine.commit_tracker import CommitTracker
from mergegate.execution_engine.errors import (
    CIBackendUnavailable,
    NoPipelineTriggered,
    RevisionUnavailable,
)
from mergegate.execution_engine.merge_types import Revision

from .conftest import SHA_A, SHA_B, passing, pending


@pytest.fixture
def tracker(backend, clock, settings):
    return CommitTracker(backend, clock, settings)


@pytest.mark.asyncio
async def test_capture_pins_the_remote_sha(tracker, backend):
    backend.commits.add(SHA_A)
    revision = await tracker.capture(SHA_A, "feature")
    assert revision.sha == SHA_A
    assert revision.branch == "feature"


@pytest.mark.asyncio
async def test_capture_rejects_unknown_commit(tracker):
    with pytest.raises(RevisionUnavailable) as exc:
        await tracker.capture(SHA_A, "feature")
    assert "not found on remote" in exc.value.reason


@pytest.mark.asyncio
async def test_capture_wraps_backend_errors(tracker, backend):
    async def broken(sha):
        raise ConnectionError("api down")

    backend.get_commit = broken
    with pytest.raises(RevisionUnavailable) as exc:
        await tracker.capture(SHA_A, "feature")
    assert "api down" in exc.value.reason


@pytest.mark.asyncio
async def test_find_pipeline_ignores_runs_for_other_shas(tracker, backend):
    """The newest run on the branch belongs to a later push; ours is older."""
    backend.add_run("feature", passing("r1", SHA_A))
    backend.add_run("feature", pending("r2", SHA_B))

    found = await tracker.find_pipeline(Revision(sha=SHA_A, branch="feature"))

    assert found.id == "r1"
    assert backend.get_run_calls == ["r1"]


@pytest.mark.asyncio
async def test_find_pipeline_waits_for_run_to_appear(tracker, backend, clock):
    revision = Revision(sha=SHA_A, branch="feature")
    original = backend.list_runs
    calls = []

    async def list_runs(ref):
        calls.append(clock.now)
        if len(calls) == 3:
            backend.add_run("feature", passing("r1", SHA_A))
        return await original(ref)

    backend.list_runs = list_runs
    found = await tracker.find_pipeline(revision)

    assert found.id == "r1"
    assert calls == [0.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_find_pipeline_times_out(tracker, backend, clock):
    backend.add_run("feature", pending("r2", SHA_B))

    with pytest.raises(NoPipelineTriggered) as exc:
        await tracker.find_pipeline(Revision(sha=SHA_A, branch="feature"))

    assert exc.value.reason == "no CI pipeline triggered for aaaaaaaa on feature within 60s"
    assert clock.now == 60.0
    assert exc.value.diagnostics["lookups"] == 31


@pytest.mark.asyncio
async def test_find_pipeline_retries_after_transient_backend_errors(tracker, backend, clock):
    backend.add_run("feature", passing("r1", SHA_A))
    backend.list_runs_errors = [CIBackendUnavailable("list workflow runs failed with HTTP 502")]
    backend.get_run_errors = [CIBackendUnavailable("get workflow run failed with HTTP 503")]

    run = await tracker.find_pipeline(Revision(sha=SHA_A, branch="feature"))

    assert run.id == "r1"
    assert clock.sleeps == [2.0, 2.0]
