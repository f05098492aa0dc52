"""
GitHub REST API client for CI-gated merges.

Covers the endpoints the merge pipeline needs: workflow runs and jobs,
job logs, commits, pull requests and their review comments, and branch refs.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class GitHubActionsClient:
    """
    Async GitHub API client.

    Use as an async context manager:

        async with GitHubActionsClient(token) as client:
            runs = await client.list_workflow_runs("octo", "app", branch="feature")
    """

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        access_token: Optional[str],
        timeout: float = 30.0,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.timeout = timeout
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "GitHubActionsClient":
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use async context manager.")
        return self._client

    # -------------------------------------------------------------------------
    # Workflow Runs
    # -------------------------------------------------------------------------

    async def list_workflow_runs(
        self,
        owner: str,
        repo: str,
        branch: Optional[str] = None,
        head_sha: Optional[str] = None,
        status: Optional[str] = None,
        per_page: int = 30,
        page: int = 1,
    ) -> Dict[str, Any]:
        """
        List workflow runs.

        Args:
            owner: Repository owner
            repo: Repository name
            branch: Filter by branch
            head_sha: Filter by head commit SHA
            status: Filter by status (queued, in_progress, completed, etc.)
            per_page: Results per page
            page: Page number

        Returns:
            Workflow runs
        """
        params: Dict[str, Any] = {"per_page": per_page, "page": page}
        if branch:
            params["branch"] = branch
        if head_sha:
            params["head_sha"] = head_sha
        if status:
            params["status"] = status

        resp = await self.client.get(f"/repos/{owner}/{repo}/actions/runs", params=params)
        resp.raise_for_status()
        return resp.json()

    async def get_workflow_run(self, owner: str, repo: str, run_id: int) -> Dict[str, Any]:
        """Get a specific workflow run."""
        resp = await self.client.get(f"/repos/{owner}/{repo}/actions/runs/{run_id}")
        resp.raise_for_status()
        return resp.json()

    async def rerun_failed_jobs(self, owner: str, repo: str, run_id: int) -> bool:
        """Re-run only failed jobs in a workflow run."""
        resp = await self.client.post(
            f"/repos/{owner}/{repo}/actions/runs/{run_id}/rerun-failed-jobs"
        )
        return resp.status_code == 201

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def list_jobs_for_run(
        self,
        owner: str,
        repo: str,
        run_id: int,
        filter: str = "latest",
        per_page: int = 100,
        page: int = 1,
    ) -> Dict[str, Any]:
        """List jobs for a workflow run (latest attempt by default)."""
        params = {"filter": filter, "per_page": per_page, "page": page}
        resp = await self.client.get(
            f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs",
            params=params,
        )
        resp.raise_for_status()
        return resp.json()

    async def list_all_jobs_for_run(
        self,
        owner: str,
        repo: str,
        run_id: int,
        filter: str = "latest",
        per_page: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        Every job of a workflow run, following pagination.

        Matrix builds can exceed one page; reading stops once ``total_count``
        jobs are collected or an empty page comes back.
        """
        jobs: List[Dict[str, Any]] = []
        page = 1
        while True:
            data = await self.list_jobs_for_run(
                owner, repo, run_id, filter=filter, per_page=per_page, page=page
            )
            batch = data.get("jobs") or []
            jobs.extend(batch)
            total = data.get("total_count")
            if not batch:
                return jobs
            if total is None and len(batch) < per_page:
                return jobs
            if total is not None and len(jobs) >= total:
                return jobs
            page += 1

    async def get_job_logs(self, owner: str, repo: str, job_id: int) -> str:
        """Download job logs."""
        resp = await self.client.get(
            f"/repos/{owner}/{repo}/actions/jobs/{job_id}/logs",
            follow_redirects=True,
        )
        resp.raise_for_status()
        return resp.text

    # -------------------------------------------------------------------------
    # Commits and refs
    # -------------------------------------------------------------------------

    async def get_commit(self, owner: str, repo: str, ref: str) -> Dict[str, Any]:
        resp = await self.client.get(f"/repos/{owner}/{repo}/commits/{ref}")
        resp.raise_for_status()
        return resp.json()

    async def delete_branch(self, owner: str, repo: str, branch: str) -> bool:
        resp = await self.client.delete(f"/repos/{owner}/{repo}/git/refs/heads/{branch}")
        if resp.status_code == 422:
            # Already gone (e.g. deleted by GitHub's auto-delete on merge)
            return False
        resp.raise_for_status()
        return resp.status_code == 204

    # -------------------------------------------------------------------------
    # Pull requests
    # -------------------------------------------------------------------------

    async def list_pull_requests(
        self,
        owner: str,
        repo: str,
        head: Optional[str] = None,
        base: Optional[str] = None,
        state: str = "open",
        per_page: int = 30,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"state": state, "per_page": per_page}
        if head:
            params["head"] = head
        if base:
            params["base"] = base
        resp = await self.client.get(f"/repos/{owner}/{repo}/pulls", params=params)
        resp.raise_for_status()
        return resp.json()

    async def merge_pull_request(
        self,
        owner: str,
        repo: str,
        number: int,
        merge_method: str = "squash",
        sha: Optional[str] = None,
        commit_title: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Merge a pull request.

        With ``sha`` set GitHub refuses the merge (409) if the head moved.
        """
        payload: Dict[str, Any] = {"merge_method": merge_method}
        if sha:
            payload["sha"] = sha
        if commit_title:
            payload["commit_title"] = commit_title
        resp = await self.client.put(
            f"/repos/{owner}/{repo}/pulls/{number}/merge",
            json=payload,
        )
        resp.raise_for_status()
        return resp.json()

    async def _get_all_pages(
        self, path: str, per_page: int = 100
    ) -> List[Dict[str, Any]]:
        """GET a list endpoint page by page until a short page comes back."""
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            resp = await self.client.get(path, params={"per_page": per_page, "page": page})
            resp.raise_for_status()
            batch = resp.json()
            items.extend(batch)
            if len(batch) < per_page:
                return items
            page += 1

    async def list_review_comments(
        self, owner: str, repo: str, number: int, per_page: int = 100
    ) -> List[Dict[str, Any]]:
        """Inline review comments on a pull request (all pages)."""
        return await self._get_all_pages(f"/repos/{owner}/{repo}/pulls/{number}/comments", per_page)

    async def list_issue_comments(
        self, owner: str, repo: str, number: int, per_page: int = 100
    ) -> List[Dict[str, Any]]:
        """Conversation comments on a pull request (bot summaries live here)."""
        return await self._get_all_pages(
            f"/repos/{owner}/{repo}/issues/{number}/comments", per_page
        )

    def format_run_summary(self, run: Dict[str, Any]) -> str:
        """Format a workflow run for display."""
        status = run.get("status", "unknown")
        conclusion = run.get("conclusion") or "pending"
        name = run.get("name", "Unknown")
        run_number = run.get("run_number", 0)
        sha = str(run.get("head_sha") or "")[:8]
        branch = run.get("head_branch", "unknown")

        return f"#{run_number} {name} [{status}/{conclusion}] {sha} on {branch}"
