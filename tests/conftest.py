"""Shared fakes and fixtures for the merge pipeline tests

Provides:
- FakeClock: simulated monotonic time; sleeps advance it instantly
- FakeCIBackend: scripted pipeline runs, commits and merge requests
- FakeWorkspace: in-memory VCS workspace
- FakeFixProvider: records fix requests and returns scripted results
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pytest

from mergegate.core.config import Settings
from mergegate.execution_engine.backends import DryRunResult
from mergegate.execution_engine.fix_strategies import FixResult, strategy_for
from mergegate.execution_engine.merge_executor import MergeExecutor
from mergegate.execution_engine.merge_types import (
    Job,
    JobConclusion,
    MergeStrategy,
    PipelineRun,
    PipelineRunSummary,
    PipelineStatus,
)
from mergegate.services.branch_lock import BranchLockManager
from mergegate.services.context_store import InMemoryContextStore

SHA_A = "a" * 40
SHA_B = "b" * 40
SHA_C = "c" * 40
SHA_D = "d" * 40

LINT_LOG = (
    "Run ruff check .\n"
    "src/app.py:3:8: F401 [*] `os` imported but unused\n"
    "Found 1 error.\n"
)
SECURITY_LOG = (
    "Run pip-audit\n"
    "Found 1 known vulnerability in 1 package\n"
    "Name Version ID             Fix Versions\n"
    "h2   4.1.0   CVE-2023-44487 4.1.1\n"
)
RATE_LIMIT_LOG = "Error: API rate limit exceeded for installation ID 1234.\n"


def job(name: str, conclusion: str, log: str = "") -> Job:
    return Job(name=name, conclusion=JobConclusion(conclusion), log_excerpt=log)


def run(run_id: str, sha: str, *jobs: Job, status: PipelineStatus = PipelineStatus.RUNNING) -> PipelineRun:
    return PipelineRun(id=run_id, sha=sha, status=status, jobs=list(jobs))


def passing(run_id: str, sha: str) -> PipelineRun:
    return run(
        run_id,
        sha,
        job("lint", "success"),
        job("build", "success"),
        job("test", "success"),
        status=PipelineStatus.SUCCESS,
    )


def pending(run_id: str, sha: str) -> PipelineRun:
    return run(run_id, sha, job("lint", "pending"), job("build", "pending"))


def lint_failure(run_id: str, sha: str, log: str = LINT_LOG) -> PipelineRun:
    return run(
        run_id,
        sha,
        job("lint", "failure", log),
        job("build", "success"),
        job("test", "pending"),
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class FakeCIBackend:
    """
    Scripted CI host.

    Each run has a list of snapshots; get_run returns them in order and then
    keeps returning the last one.
    """

    def __init__(self) -> None:
        self.commits: set = set()
        self.branch_runs: Dict[str, List[str]] = {}
        self.snapshots: Dict[str, List[PipelineRun]] = {}
        self.merge_requests: Dict[str, str] = {}
        self.review_comments: List[Dict[str, Any]] = []
        self.merge_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.rerun_result = True
        # Raised, in order, by the next list_runs / get_run calls
        self.list_runs_errors: List[Exception] = []
        self.get_run_errors: List[Exception] = []

        self.get_run_calls: List[str] = []
        self.rerun_calls: List[str] = []
        self.merge_calls: List[Dict[str, Any]] = []
        self.deleted_branches: List[str] = []

    def add_run(self, branch: str, *snapshots: PipelineRun) -> None:
        run_id = snapshots[0].id
        self.commits.add(snapshots[0].sha)
        self.branch_runs.setdefault(branch, []).insert(0, run_id)
        self.snapshots[run_id] = list(snapshots)

    async def get_commit(self, sha: str) -> Optional[str]:
        return sha if sha in self.commits else None

    async def list_runs(self, ref: str) -> List[PipelineRunSummary]:
        if self.list_runs_errors:
            raise self.list_runs_errors.pop(0)
        summaries = []
        for run_id in self.branch_runs.get(ref, []):
            current = self.snapshots[run_id][0]
            summaries.append(
                PipelineRunSummary(id=run_id, sha=current.sha, status=current.status, head_branch=ref)
            )
        return summaries

    async def get_run(self, run_id: str) -> PipelineRun:
        self.get_run_calls.append(run_id)
        if self.get_run_errors:
            raise self.get_run_errors.pop(0)
        queue = self.snapshots[run_id]
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    async def rerun_failed_jobs(self, run_id: str) -> bool:
        self.rerun_calls.append(run_id)
        return self.rerun_result

    async def find_merge_request(self, branch: str, target_branch: str) -> Optional[str]:
        return self.merge_requests.get(branch)

    async def merge_request(
        self, merge_request_id: str, strategy: MergeStrategy, sha: Optional[str] = None
    ) -> str:
        self.merge_calls.append({"id": merge_request_id, "strategy": strategy, "sha": sha})
        if self.merge_error is not None:
            raise self.merge_error
        return "f" * 40

    async def list_review_comments(self, merge_request_id: str) -> List[Dict[str, Any]]:
        return list(self.review_comments)

    async def delete_branch(self, branch: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted_branches.append(branch)


class FakeWorkspace:
    def __init__(self, heads: Optional[Dict[str, str]] = None) -> None:
        self.heads = dict(heads or {})
        self.push_shas: List[str] = []
        self.files: List[str] = []
        self.dry_run_result = DryRunResult(success=True, test_exit_code=0)
        self.commits: List[Dict[str, Any]] = []
        self.dry_runs: List[Dict[str, Any]] = []
        self.checkouts: List[str] = []
        self.pulls: List[str] = []
        self.deleted: List[str] = []
        self.pull_error: Optional[Exception] = None
        self.discards = 0
        self.locked = False
        self.events: List[str] = []
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def exclusive(self):
        async with self._lock:
            self.locked = True
            self.events.append("lock")
            try:
                yield
            finally:
                self.events.append("unlock")
                self.locked = False

    async def resolve_branch_head(self, branch: str) -> str:
        return self.heads[branch]

    async def changed_files(self) -> List[str]:
        return list(self.files)

    async def discard_changes(self) -> None:
        self.discards += 1
        self.events.append("discard")
        self.files = []

    async def commit_and_push(self, files: List[str], message: str, branch: str) -> str:
        sha = self.push_shas.pop(0)
        self.events.append(f"commit:{branch}")
        self.commits.append(
            {
                "files": list(files),
                "message": message,
                "branch": branch,
                "sha": sha,
                "locked": self.locked,
            }
        )
        self.heads[branch] = sha
        return sha

    async def dry_run_merge(
        self, source_ref: str, target_branch: str, test_command: Optional[str]
    ) -> DryRunResult:
        self.dry_runs.append(
            {"source": source_ref, "target": target_branch, "command": test_command}
        )
        return self.dry_run_result

    async def checkout(self, branch: str) -> None:
        self.events.append(f"checkout:{branch}")
        self.checkouts.append(branch)

    async def pull(self, branch: str) -> None:
        if self.pull_error is not None:
            raise self.pull_error
        self.pulls.append(branch)

    async def delete_local_branch(self, branch: str) -> None:
        self.deleted.append(branch)


class FakeFixProvider:
    def __init__(self, files: Optional[List[str]] = None) -> None:
        self.files = files if files is not None else ["src/app.py"]
        self.results: List[FixResult] = []
        self.delay = 0.0
        self.calls: List[Dict[str, Any]] = []

    async def apply_fix(self, category, context) -> FixResult:
        self.calls.append(
            {"kind": category.kind, "attempt": context.attempt_number, "branch": context.branch}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.results:
            return self.results.pop(0)
        rerun_only = category.kind.value == "infrastructure"
        return FixResult(
            success=True,
            strategy=strategy_for(category.kind),
            files_changed=[] if rerun_only else list(self.files),
            rerun_only=rerun_only,
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        poll_jitter=0.0,
        redis_url=None,
        context_store_dir=None,
        github_token=None,
        allow_force_merge=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> FakeCIBackend:
    return FakeCIBackend()


@pytest.fixture
def workspace() -> FakeWorkspace:
    return FakeWorkspace({"feature": SHA_A})


@pytest.fixture
def fix_provider() -> FakeFixProvider:
    return FakeFixProvider()


@pytest.fixture
def store() -> InMemoryContextStore:
    return InMemoryContextStore()


@pytest.fixture
def make_executor(settings, clock, backend, workspace, fix_provider, store):
    def _make(**overrides) -> MergeExecutor:
        cfg = overrides.pop("settings", settings)
        return MergeExecutor(
            overrides.pop("repository", "octo/app"),
            overrides.pop("backend", backend),
            overrides.pop("workspace", workspace),
            overrides.pop("fix_provider", fix_provider),
            settings=cfg,
            clock=overrides.pop("clock", clock),
            store=overrides.pop("store", store),
            lock_manager=overrides.pop("lock_manager", BranchLockManager(cfg)),
        )

    return _make
