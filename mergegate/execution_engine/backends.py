"""
Collaborator interfaces of the merge pipeline

The execution engine talks to the CI/VCS host and to the local working
copy only through these protocols. GitHubCIBackend and GitService are the
production implementations; tests substitute in-memory fakes.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol

from .merge_types import MergeStrategy, PipelineRun, PipelineRunSummary


@dataclass
class DryRunResult:
    """Outcome of a non-destructive trial merge"""

    success: bool
    conflict: bool = False
    conflicting_files: List[str] = field(default_factory=list)
    test_exit_code: Optional[int] = None
    output: str = ""


class CIBackend(Protocol):
    """Remote CI/VCS host (GitHub, GitLab, ...)"""

    async def get_commit(self, sha: str) -> Optional[str]:
        """Full SHA of the commit on the remote, or None if it does not exist."""
        ...

    async def list_runs(self, ref: str) -> List[PipelineRunSummary]: ...

    async def get_run(self, run_id: str) -> PipelineRun:
        """Run with per-job detail (failed jobs carry a log excerpt)."""
        ...

    async def rerun_failed_jobs(self, run_id: str) -> bool: ...

    async def find_merge_request(self, branch: str, target_branch: str) -> Optional[str]: ...

    async def merge_request(
        self, merge_request_id: str, strategy: MergeStrategy, sha: Optional[str] = None
    ) -> str:
        """Merge and return the resulting SHA; raises MergeConflict."""
        ...

    async def list_review_comments(self, merge_request_id: str) -> List[Dict[str, Any]]: ...

    async def delete_branch(self, branch: str) -> None: ...


class VCSWorkspace(Protocol):
    """Local working copy, shared by every attempt on the repository"""

    def exclusive(self) -> AsyncContextManager[None]:
        """Serialize working-tree changes (checkout, fix, commit, cleanup)."""
        ...

    async def resolve_branch_head(self, branch: str) -> str: ...

    async def changed_files(self) -> List[str]: ...

    async def discard_changes(self) -> None:
        """Drop uncommitted changes; only used on a tree that was clean before a fix."""
        ...

    async def commit_and_push(self, files: List[str], message: str, branch: str) -> str:
        """Commit the files on the branch, push, and return the new SHA."""
        ...

    async def dry_run_merge(
        self, source_ref: str, target_branch: str, test_command: Optional[str]
    ) -> DryRunResult:
        """Trial-merge ``source_ref`` (a pinned SHA) into the target and run the tests."""
        ...

    async def checkout(self, branch: str) -> None: ...

    async def pull(self, branch: str) -> None: ...

    async def delete_local_branch(self, branch: str) -> None: ...
