"""
GitHub implementation of the CI backend

Maps GitHub Actions workflow runs and jobs onto the merge pipeline's
PipelineRun/Job models and pull requests onto merge requests.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import httpx
import structlog

from mergegate.core.config import Settings, settings as default_settings
from mergegate.execution_engine.errors import CIBackendUnavailable, MergeConflict
from mergegate.execution_engine.job_status import normalize_conclusion, normalize_run_status
from mergegate.execution_engine.merge_types import (
    Job,
    JobConclusion,
    MergeStrategy,
    PipelineRun,
    PipelineRunSummary,
)

from .github_actions_client import GitHubActionsClient

logger = structlog.get_logger(__name__)

_MISSING_COMMIT_STATUSES = {404, 422}
_MERGE_CONFLICT_STATUSES = {405, 409}
_TRANSIENT_STATUSES = {429, 500, 502, 503, 504}


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _duration(job: Dict[str, Any]) -> Optional[float]:
    started = _parse_time(job.get("started_at"))
    completed = _parse_time(job.get("completed_at"))
    if started and completed:
        return max(0.0, (completed - started).total_seconds())
    return None


def _is_transient(response: httpx.Response) -> bool:
    if response.status_code in _TRANSIENT_STATUSES:
        return True
    # Primary rate limit: 403 with no requests left
    return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"


@contextmanager
def _retryable_read(what: str, **diagnostics: Any) -> Iterator[None]:
    """Turn network errors and 5xx/rate-limit responses into CIBackendUnavailable."""
    try:
        yield
    except httpx.TransportError as e:
        raise CIBackendUnavailable(f"{what} failed: {e}", diagnostics) from e
    except httpx.HTTPStatusError as e:
        if not _is_transient(e.response):
            raise
        raise CIBackendUnavailable(
            f"{what} failed with HTTP {e.response.status_code}",
            {**diagnostics, "status_code": e.response.status_code},
        ) from e


class GitHubCIBackend:
    def __init__(
        self,
        client: GitHubActionsClient,
        repository: str,
        settings: Optional[Settings] = None,
    ):
        if repository.count("/") != 1:
            raise ValueError(f"repository must be 'owner/name', got {repository!r}")
        self.client = client
        self.repository = repository
        self.owner, self.repo = repository.split("/")
        self.settings = settings or default_settings

    async def get_commit(self, sha: str) -> Optional[str]:
        try:
            data = await self.client.get_commit(self.owner, self.repo, sha)
        except httpx.HTTPStatusError as e:
            if e.response.status_code in _MISSING_COMMIT_STATUSES:
                return None
            raise
        return data.get("sha")

    async def list_runs(self, ref: str) -> List[PipelineRunSummary]:
        with _retryable_read("list workflow runs", branch=ref):
            data = await self.client.list_workflow_runs(self.owner, self.repo, branch=ref)
        summaries = []
        for run in data.get("workflow_runs", []):
            summaries.append(
                PipelineRunSummary(
                    id=str(run["id"]),
                    sha=run.get("head_sha") or "",
                    status=normalize_run_status(run.get("status"), run.get("conclusion")),
                    head_branch=run.get("head_branch"),
                    created_at=_parse_time(run.get("created_at")),
                )
            )
        return summaries

    async def get_run(self, run_id: str) -> PipelineRun:
        with _retryable_read("get workflow run", run_id=run_id):
            run = await self.client.get_workflow_run(self.owner, self.repo, int(run_id))
            raw_jobs = await self.client.list_all_jobs_for_run(self.owner, self.repo, int(run_id))
        logger.debug(
            "github.run_fetched", summary=self.client.format_run_summary(run), jobs=len(raw_jobs)
        )

        jobs: List[Job] = []
        for raw in raw_jobs:
            conclusion = normalize_conclusion(raw.get("status"), raw.get("conclusion"))
            excerpt = ""
            if conclusion in (JobConclusion.FAILURE, JobConclusion.CANCELLED):
                excerpt = await self._log_excerpt(raw["id"])
            jobs.append(
                Job(
                    name=raw.get("name") or str(raw["id"]),
                    conclusion=conclusion,
                    duration_seconds=_duration(raw),
                    log_excerpt=excerpt,
                    job_id=str(raw["id"]),
                )
            )

        return PipelineRun(
            id=str(run["id"]),
            sha=run.get("head_sha") or "",
            status=normalize_run_status(run.get("status"), run.get("conclusion")),
            jobs=jobs,
            started_at=_parse_time(run.get("run_started_at") or run.get("created_at")),
            html_url=run.get("html_url"),
        )

    async def _log_excerpt(self, job_id: int) -> str:
        try:
            text = await self.client.get_job_logs(self.owner, self.repo, job_id)
        except httpx.HTTPStatusError as e:
            # Logs expire or are not yet available; classification falls back to unknown
            logger.warning(
                "github.job_logs_unavailable",
                job_id=job_id,
                status=e.response.status_code,
            )
            return ""
        return text[-self.settings.job_log_tail_bytes:]

    async def rerun_failed_jobs(self, run_id: str) -> bool:
        return await self.client.rerun_failed_jobs(self.owner, self.repo, int(run_id))

    async def find_merge_request(self, branch: str, target_branch: str) -> Optional[str]:
        pulls = await self.client.list_pull_requests(
            self.owner, self.repo, head=f"{self.owner}:{branch}", base=target_branch
        )
        if not pulls:
            return None
        return str(pulls[0]["number"])

    async def merge_request(
        self, merge_request_id: str, strategy: MergeStrategy, sha: Optional[str] = None
    ) -> str:
        try:
            data = await self.client.merge_pull_request(
                self.owner,
                self.repo,
                int(merge_request_id),
                merge_method=strategy.value,
                sha=sha,
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code in _MERGE_CONFLICT_STATUSES:
                raise MergeConflict(
                    "merge conflict",
                    {
                        "merge_request_id": merge_request_id,
                        "status_code": e.response.status_code,
                        "message": self._error_message(e.response),
                    },
                ) from e
            raise
        return data.get("sha") or ""

    async def list_review_comments(self, merge_request_id: str) -> List[Dict[str, Any]]:
        number = int(merge_request_id)
        inline = await self.client.list_review_comments(self.owner, self.repo, number)
        conversation = await self.client.list_issue_comments(self.owner, self.repo, number)
        return [*inline, *conversation]

    async def delete_branch(self, branch: str) -> None:
        await self.client.delete_branch(self.owner, self.repo, branch)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return str(response.json().get("message") or "")
        except ValueError:
            return response.text[:200]
