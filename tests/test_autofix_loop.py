"""Tests for the bounded auto-fix loop."""

import asyncio

import pytest

from mergegate.execution_engine.autofix_loop import AutoFixLoop
from mergegate.execution_engine.errors import NoPipelineTriggered
from mergegate.execution_engine.fix_strategies import FixResult
from mergegate.execution_engine.job_status import first_failure
from mergegate.execution_engine.merge_types import (
    FailureKind,
    FixOutcome,
    LoopStatus,
    MergeAttemptContext,
    PollResult,
    PollStatus,
    Revision,
)

from .conftest import (
    LINT_LOG,
    RATE_LIMIT_LOG,
    SECURITY_LOG,
    SHA_A,
    SHA_B,
    SHA_C,
    SHA_D,
    job,
    lint_failure,
    passing,
    pending,
    run,
)


def _lint_log(path):
    return f"Run ruff check .\n{path}:1:1: F401 [*] `sys` imported but unused\n"


def _failed(context, failed_run):
    context.record_pipeline_run(failed_run)
    return PollResult(
        status=PollStatus.FAILED,
        run=failed_run,
        jobs=failed_run.jobs,
        first_failure=first_failure(failed_run.jobs),
    )


@pytest.fixture
def context():
    ctx = MergeAttemptContext(repository="octo/app", branch="feature", target_branch="main")
    ctx.bind_revision(Revision(sha=SHA_A, branch="feature"))
    return ctx


@pytest.fixture
def loop(backend, workspace, fix_provider, clock, settings, store):
    return AutoFixLoop(backend, workspace, fix_provider, clock=clock, settings=settings, store=store)


@pytest.mark.asyncio
async def test_lint_fix_lands_and_pipeline_passes(loop, context, backend, workspace, clock, store):
    workspace.push_shas = [SHA_B]
    backend.add_run("feature", pending("r2", SHA_B), passing("r2", SHA_B))

    result = await loop.run_loop(context, _failed(context, lint_failure("r1", SHA_A)))

    assert result.status == LoopStatus.SUCCESS
    assert result.attempts == 1
    assert result.reason == "pipeline passed after 1 auto-fix attempt(s)"
    assert context.revision.sha == SHA_B
    assert context.pipeline_run.id == "r2"

    attempt = context.fix_history[0]
    assert attempt.outcome == FixOutcome.RE_CI_PASSED
    assert attempt.resulting_commit_sha == SHA_B
    assert attempt.strategy_applied == "apply_linter_autofix"
    assert attempt.category.kind == FailureKind.LINT

    commit = workspace.commits[0]
    assert commit["branch"] == "feature"
    assert commit["files"] == ["src/app.py"]
    assert commit["message"].startswith("fix(ci): apply linter autofix for lint")
    assert commit["locked"] is True
    assert workspace.events == ["lock", "checkout:feature", "commit:feature", "unlock"]

    # Cooldown before looking for the new pipeline
    assert clock.sleeps == [30.0]
    assert len(store.load(context.attempt_id).fix_history) == 1


@pytest.mark.asyncio
async def test_security_failure_is_never_attempted(loop, context, fix_provider, workspace):
    failed = run("r1", SHA_A, job("audit", "failure", SECURITY_LOG), job("build", "success"))

    result = await loop.run_loop(context, _failed(context, failed))

    assert result.status == LoopStatus.REQUIRES_HUMAN_INTERVENTION
    assert result.attempts == 0
    assert result.category.kind == FailureKind.SECURITY
    assert result.reason == "security failure in job 'audit' requires human intervention"
    assert fix_provider.calls == []
    assert workspace.commits == []
    assert context.fix_history == []


@pytest.mark.asyncio
async def test_unknown_failure_requires_human(loop, context, fix_provider):
    failed = run("r1", SHA_A, job("deploy", "failure", "Process completed with exit code 1."))

    result = await loop.run_loop(context, _failed(context, failed))

    assert result.status == LoopStatus.REQUIRES_HUMAN_INTERVENTION
    assert result.category.kind == FailureKind.UNKNOWN
    assert fix_provider.calls == []


@pytest.mark.asyncio
async def test_same_fix_on_same_files_is_circular(loop, context, backend, workspace, fix_provider):
    workspace.push_shas = [SHA_B, SHA_C]
    backend.add_run("feature", lint_failure("r2", SHA_B))
    backend.add_run("feature", lint_failure("r3", SHA_C))

    result = await loop.run_loop(context, _failed(context, lint_failure("r1", SHA_A)))

    assert result.status == LoopStatus.CIRCULAR_FIX_DETECTED
    assert result.attempts == 2
    assert result.reason == (
        "circular fix detected: apply_linter_autofix already tried 2 times "
        "for lint failures in src/app.py"
    )
    assert len(fix_provider.calls) == 2
    assert [a.outcome for a in context.fix_history] == [FixOutcome.RE_CI_FAILED] * 2
    assert context.revision.sha == SHA_C


@pytest.mark.asyncio
async def test_attempt_bound_is_enforced(loop, context, backend, workspace, fix_provider):
    """Different files each round, so only the attempt bound stops the loop."""
    workspace.push_shas = [SHA_B, SHA_C, SHA_D]
    backend.add_run("feature", lint_failure("r2", SHA_B, _lint_log("src/b.py")))
    backend.add_run("feature", lint_failure("r3", SHA_C, _lint_log("src/c.py")))
    backend.add_run("feature", lint_failure("r4", SHA_D, _lint_log("src/d.py")))

    result = await loop.run_loop(
        context, _failed(context, lint_failure("r1", SHA_A, _lint_log("src/a.py")))
    )

    assert result.status == LoopStatus.MAX_ATTEMPTS_EXCEEDED
    assert result.attempts == 3
    assert result.reason == "auto-fix gave up after 3 attempts; job 'lint' still failing (lint)"
    assert len(fix_provider.calls) == 3
    assert len(context.fix_history) == 3
    assert [a.attempt_number for a in context.fix_history] == [1, 2, 3]


@pytest.mark.asyncio
async def test_zero_attempt_budget_gives_up_immediately(
    backend, workspace, fix_provider, clock, settings, context
):
    cfg = settings.model_copy(update={"autofix_max_attempts": 0})
    loop = AutoFixLoop(backend, workspace, fix_provider, clock=clock, settings=cfg)

    result = await loop.run_loop(context, _failed(context, lint_failure("r1", SHA_A)))

    assert result.status == LoopStatus.MAX_ATTEMPTS_EXCEEDED
    assert result.attempts == 0
    assert fix_provider.calls == []


@pytest.mark.asyncio
async def test_failed_fix_is_recorded(loop, context, fix_provider, workspace):
    fix_provider.results = [
        FixResult(success=False, strategy="apply_linter_autofix", output="ruff crashed")
    ]

    result = await loop.run_loop(context, _failed(context, lint_failure("r1", SHA_A)))

    assert result.status == LoopStatus.FIX_APPLICATION_FAILED
    assert result.reason == (
        "fix application failed: apply_linter_autofix for lint failure in job 'lint'"
    )
    assert context.fix_history[0].outcome == FixOutcome.FIX_FAILED
    assert context.fix_history[0].detail == "ruff crashed"
    assert workspace.commits == []
    assert workspace.events == ["lock", "checkout:feature", "discard", "unlock"]


@pytest.mark.asyncio
async def test_fix_without_changes_fails(backend, workspace, clock, settings, context):
    from .conftest import FakeFixProvider

    loop = AutoFixLoop(backend, workspace, FakeFixProvider(files=[]), clock=clock, settings=settings)

    result = await loop.run_loop(context, _failed(context, lint_failure("r1", SHA_A)))

    assert result.status == LoopStatus.FIX_APPLICATION_FAILED
    assert context.fix_history[0].detail == "fix produced no changes"


@pytest.mark.asyncio
async def test_fix_timeout(backend, workspace, fix_provider, clock, settings, context):
    cfg = settings.model_copy(update={"fix_timeout": 0.01})
    fix_provider.delay = 1.0
    loop = AutoFixLoop(backend, workspace, fix_provider, clock=clock, settings=cfg)

    result = await loop.run_loop(context, _failed(context, lint_failure("r1", SHA_A)))

    assert result.status == LoopStatus.FIX_APPLICATION_FAILED
    assert context.fix_history[0].detail.startswith("fix application exceeded")
    assert workspace.commits == []
    assert workspace.discards == 1


@pytest.mark.asyncio
async def test_infrastructure_failure_reruns_same_revision(loop, context, backend, workspace):
    backend.add_run("feature", passing("r1", SHA_A))
    failed = run("r1", SHA_A, job("e2e", "failure", RATE_LIMIT_LOG), job("lint", "success"))

    result = await loop.run_loop(context, _failed(context, failed))

    assert result.status == LoopStatus.SUCCESS
    assert backend.rerun_calls == ["r1"]
    assert workspace.commits == []
    assert workspace.events == []
    assert context.revision.sha == SHA_A
    attempt = context.fix_history[0]
    assert attempt.strategy_applied == "rerun_failed_jobs"
    assert attempt.resulting_commit_sha == SHA_A


@pytest.mark.asyncio
async def test_refused_rerun_fails_the_fix(loop, context, backend):
    backend.rerun_result = False
    failed = run("r1", SHA_A, job("e2e", "failure", RATE_LIMIT_LOG))

    result = await loop.run_loop(context, _failed(context, failed))

    assert result.status == LoopStatus.FIX_APPLICATION_FAILED
    assert context.fix_history[0].detail == "CI refused to re-run the failed jobs"


@pytest.mark.asyncio
async def test_infrastructure_timeout_requires_human(loop, context, backend):
    log = "Error: The job running on runner ubuntu-8 has exceeded the maximum execution time of 360 minutes."
    failed = run("r1", SHA_A, job("e2e", "failure", log))

    result = await loop.run_loop(context, _failed(context, failed))

    assert result.status == LoopStatus.REQUIRES_HUMAN_INTERVENTION
    assert result.reason == "infrastructure timeout in job 'e2e' requires human intervention"
    assert backend.rerun_calls == []


@pytest.mark.asyncio
async def test_missing_pipeline_after_push_propagates(loop, context, backend, workspace):
    workspace.push_shas = [SHA_B]
    backend.commits.add(SHA_B)

    with pytest.raises(NoPipelineTriggered):
        await loop.run_loop(context, _failed(context, lint_failure("r1", SHA_A, LINT_LOG)))

    attempt = context.fix_history[0]
    assert attempt.outcome == FixOutcome.FIXED
    assert attempt.resulting_commit_sha == SHA_B


@pytest.mark.asyncio
async def test_repoll_timeout_ends_the_loop(loop, context, backend, workspace):
    workspace.push_shas = [SHA_B]
    backend.add_run("feature", pending("r2", SHA_B))

    result = await loop.run_loop(context, _failed(context, lint_failure("r1", SHA_A)))

    assert result.status == LoopStatus.TIMED_OUT
    assert result.reason == "CI polling timed out after 600s (10 polls) waiting for bbbbbbbb"
    assert context.fix_history[0].outcome == FixOutcome.RE_CI_FAILED


@pytest.mark.asyncio
async def test_dirty_workspace_is_not_fixed(loop, context, fix_provider, workspace):
    workspace.files = ["notes.txt"]

    result = await loop.run_loop(context, _failed(context, lint_failure("r1", SHA_A)))

    assert result.status == LoopStatus.FIX_APPLICATION_FAILED
    assert context.fix_history[0].detail == "workspace has uncommitted changes: notes.txt"
    assert fix_provider.calls == []
    assert workspace.checkouts == []
    assert workspace.discards == 0


@pytest.mark.asyncio
async def test_attempts_on_other_branches_do_not_interleave_in_the_workspace(
    backend, workspace, fix_provider, clock, settings
):
    fix_provider.delay = 0.01
    workspace.push_shas = [SHA_B, SHA_C]
    backend.add_run("feature", pending("r2", SHA_B), passing("r2", SHA_B))
    backend.add_run("hotfix", passing("r3", SHA_C))

    feature = MergeAttemptContext(repository="octo/app", branch="feature", target_branch="main")
    feature.bind_revision(Revision(sha=SHA_A, branch="feature"))
    hotfix = MergeAttemptContext(repository="octo/app", branch="hotfix", target_branch="main")
    hotfix.bind_revision(Revision(sha=SHA_D, branch="hotfix"))

    def new_loop():
        return AutoFixLoop(backend, workspace, fix_provider, clock=clock, settings=settings)

    results = await asyncio.gather(
        new_loop().run_loop(feature, _failed(feature, lint_failure("r1", SHA_A))),
        new_loop().run_loop(hotfix, _failed(hotfix, lint_failure("r4", SHA_D))),
    )

    assert [r.status for r in results] == [LoopStatus.SUCCESS, LoopStatus.SUCCESS]
    assert workspace.events == [
        "lock", "checkout:feature", "commit:feature", "unlock",
        "lock", "checkout:hotfix", "commit:hotfix", "unlock",
    ]
    assert [(c["branch"], c["sha"]) for c in workspace.commits] == [
        ("feature", SHA_B),
        ("hotfix", SHA_C),
    ]
