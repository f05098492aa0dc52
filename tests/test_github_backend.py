"""Tests for the GitHub CI backend against a mocked REST API."""

import json

import httpx
import pytest
import pytest_asyncio

from mergegate.execution_engine.errors import CIBackendUnavailable, MergeConflict
from mergegate.execution_engine.job_status import aggregate_jobs
from mergegate.execution_engine.merge_types import (
    JobConclusion,
    MergeStrategy,
    PipelineStatus,
)
from mergegate.integrations.github_actions_client import GitHubActionsClient
from mergegate.integrations.github_ci_backend import GitHubCIBackend

from .conftest import SHA_A, SHA_B

REPO = "/repos/octo/app"


class FakeGitHub:
    """Routes (method, path) to canned responses and records requests."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, status=200, body=None, text=None, headers=None):
        self.routes[(method, path)] = (status, body, text, headers)

    def add_pages(self, method, path, *pages):
        """Serve one JSON body per ``page`` query parameter."""
        self.routes[(method, path)] = list(pages)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"message": "Not Found"})
        route = self.routes[key]
        if isinstance(route, list):
            page = int(request.url.params.get("page", "1"))
            return httpx.Response(200, json=route[page - 1])
        status, body, text, headers = route
        if text is not None:
            return httpx.Response(status, text=text, headers=headers)
        return httpx.Response(status, json=body if body is not None else {}, headers=headers)


@pytest.fixture
def github():
    return FakeGitHub()


@pytest_asyncio.fixture
async def backend(github, settings):
    async with GitHubActionsClient(
        "ghp_test", transport=httpx.MockTransport(github)
    ) as client:
        yield GitHubCIBackend(client, "octo/app", settings)


def test_repository_must_be_owner_and_name(settings):
    with pytest.raises(ValueError):
        GitHubCIBackend(GitHubActionsClient(None), "octo", settings)


@pytest.mark.asyncio
async def test_get_commit(backend, github):
    github.add("GET", f"{REPO}/commits/{SHA_A}", body={"sha": SHA_A})
    assert await backend.get_commit(SHA_A) == SHA_A
    assert github.requests[0].headers["Authorization"] == "Bearer ghp_test"


@pytest.mark.asyncio
async def test_missing_commit_is_none(backend):
    assert await backend.get_commit(SHA_B) is None


@pytest.mark.asyncio
async def test_list_runs_maps_workflow_runs(backend, github):
    github.add(
        "GET",
        f"{REPO}/actions/runs",
        body={
            "workflow_runs": [
                {"id": 11, "head_sha": SHA_B, "status": "in_progress", "conclusion": None,
                 "head_branch": "feature"},
                {"id": 10, "head_sha": SHA_A, "status": "completed", "conclusion": "failure",
                 "head_branch": "feature", "created_at": "2024-05-01T10:00:00Z"},
            ]
        },
    )

    runs = await backend.list_runs("feature")

    assert [(r.id, r.sha, r.status) for r in runs] == [
        ("11", SHA_B, PipelineStatus.RUNNING),
        ("10", SHA_A, PipelineStatus.FAILURE),
    ]
    assert runs[1].created_at.year == 2024
    assert github.requests[0].url.params["branch"] == "feature"


@pytest.mark.asyncio
async def test_get_run_fetches_logs_only_for_failed_jobs(backend, github, settings):
    github.add(
        "GET",
        f"{REPO}/actions/runs/10",
        body={"id": 10, "head_sha": SHA_A, "status": "completed", "conclusion": "failure",
              "name": "CI", "run_number": 7, "head_branch": "feature"},
    )
    github.add(
        "GET",
        f"{REPO}/actions/runs/10/jobs",
        body={
            "jobs": [
                {"id": 1, "name": "lint", "status": "completed", "conclusion": "failure",
                 "started_at": "2024-05-01T10:00:00Z", "completed_at": "2024-05-01T10:01:30Z"},
                {"id": 2, "name": "test", "status": "in_progress", "conclusion": None},
            ]
        },
    )
    long_log = "x" * 10_000 + "\nsrc/app.py:3:8: F401 unused"
    github.add("GET", f"{REPO}/actions/jobs/1/logs", text=long_log)

    run = await backend.get_run("10")

    assert run.sha == SHA_A
    lint, test = run.jobs
    assert lint.conclusion == JobConclusion.FAILURE
    assert lint.duration_seconds == 90.0
    assert lint.log_excerpt.endswith("F401 unused")
    assert len(lint.log_excerpt) == settings.job_log_tail_bytes
    assert test.conclusion == JobConclusion.PENDING
    assert test.log_excerpt == ""
    paths = [r.url.path for r in github.requests]
    assert f"{REPO}/actions/jobs/2/logs" not in paths


@pytest.mark.asyncio
async def test_expired_logs_give_empty_excerpt(backend, github):
    github.add("GET", f"{REPO}/actions/runs/10", body={"id": 10, "head_sha": SHA_A,
                                                       "status": "completed"})
    github.add(
        "GET",
        f"{REPO}/actions/runs/10/jobs",
        body={"jobs": [{"id": 1, "name": "lint", "status": "completed", "conclusion": "failure"}]},
    )
    github.add("GET", f"{REPO}/actions/jobs/1/logs", status=410, body={"message": "Gone"})

    run = await backend.get_run("10")

    assert run.jobs[0].log_excerpt == ""


@pytest.mark.asyncio
async def test_failed_job_on_a_later_page_fails_the_run(backend, github):
    github.add("GET", f"{REPO}/actions/runs/1", body={"id": 1, "head_sha": SHA_A,
                                                      "status": "in_progress"})
    matrix = [
        {"id": 1000 + i, "name": f"matrix-{i}", "status": "completed", "conclusion": "success"}
        for i in range(100)
    ]
    github.add_pages(
        "GET",
        f"{REPO}/actions/runs/1/jobs",
        {"total_count": 101, "jobs": matrix},
        {"total_count": 101, "jobs": [{"id": 1100, "name": "matrix-100",
                                       "status": "completed", "conclusion": "failure"}]},
    )

    run = await backend.get_run("1")

    assert len(run.jobs) == 101
    assert run.jobs[-1].name == "matrix-100"
    assert aggregate_jobs(run.jobs) == PipelineStatus.FAILURE
    pages = [
        r.url.params["page"] for r in github.requests if r.url.path.endswith("/jobs")
    ]
    assert pages == ["1", "2"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, headers",
    [(502, None), (503, None), (429, None), (403, {"x-ratelimit-remaining": "0"})],
)
async def test_transient_run_read_errors_are_retryable(backend, github, status, headers):
    github.add("GET", f"{REPO}/actions/runs/1", status=status, body={"message": "busy"},
               headers=headers)

    with pytest.raises(CIBackendUnavailable) as exc:
        await backend.get_run("1")

    assert exc.value.diagnostics == {"run_id": "1", "status_code": status}


@pytest.mark.asyncio
async def test_network_error_listing_runs_is_retryable(settings):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with GitHubActionsClient("t", transport=httpx.MockTransport(refuse)) as client:
        with pytest.raises(CIBackendUnavailable):
            await GitHubCIBackend(client, "octo/app", settings).list_runs("feature")


@pytest.mark.asyncio
async def test_permanent_run_read_errors_propagate(backend, github):
    github.add("GET", f"{REPO}/actions/runs/1", status=403, body={"message": "forbidden"},
               headers={"x-ratelimit-remaining": "4999"})

    with pytest.raises(httpx.HTTPStatusError):
        await backend.get_run("1")


@pytest.mark.asyncio
async def test_rerun_failed_jobs(backend, github):
    github.add("POST", f"{REPO}/actions/runs/10/rerun-failed-jobs", status=201)
    assert await backend.rerun_failed_jobs("10") is True


@pytest.mark.asyncio
async def test_find_merge_request(backend, github):
    github.add("GET", f"{REPO}/pulls", body=[{"number": 42}])

    assert await backend.find_merge_request("feature", "main") == "42"
    params = github.requests[0].url.params
    assert params["head"] == "octo:feature"
    assert params["base"] == "main"
    assert params["state"] == "open"


@pytest.mark.asyncio
async def test_find_merge_request_none_open(backend, github):
    github.add("GET", f"{REPO}/pulls", body=[])
    assert await backend.find_merge_request("feature", "main") is None


@pytest.mark.asyncio
async def test_merge_pins_head_sha(backend, github):
    github.add("PUT", f"{REPO}/pulls/42/merge", body={"sha": "f" * 40, "merged": True})

    merged = await backend.merge_request("42", MergeStrategy.SQUASH, sha=SHA_A)

    assert merged == "f" * 40
    payload = json.loads(github.requests[0].content)
    assert payload == {"merge_method": "squash", "sha": SHA_A}


@pytest.mark.asyncio
async def test_merge_conflict_is_translated(backend, github):
    github.add(
        "PUT",
        f"{REPO}/pulls/42/merge",
        status=409,
        body={"message": "Head branch was modified. Review and try the merge again."},
    )

    with pytest.raises(MergeConflict) as exc:
        await backend.merge_request("42", MergeStrategy.MERGE, sha=SHA_A)

    assert exc.value.diagnostics["status_code"] == 409
    assert exc.value.diagnostics["message"].startswith("Head branch was modified")


@pytest.mark.asyncio
async def test_other_merge_errors_propagate(backend, github):
    github.add("PUT", f"{REPO}/pulls/42/merge", status=500, body={"message": "boom"})
    with pytest.raises(httpx.HTTPStatusError):
        await backend.merge_request("42", MergeStrategy.MERGE)


@pytest.mark.asyncio
async def test_review_comments_include_conversation(backend, github):
    github.add("GET", f"{REPO}/pulls/42/comments", body=[{"id": 1, "body": "inline"}])
    github.add("GET", f"{REPO}/issues/42/comments", body=[{"id": 2, "body": "summary"}])

    comments = await backend.list_review_comments("42")

    assert [c["id"] for c in comments] == [1, 2]


@pytest.mark.asyncio
async def test_delete_branch(backend, github):
    github.add("DELETE", f"{REPO}/git/refs/heads/feature", status=204)
    await backend.delete_branch("feature")
    assert github.requests[0].method == "DELETE"


@pytest.mark.asyncio
async def test_review_comments_follow_pagination(backend, github):
    first_page = [{"id": i, "body": "nit"} for i in range(100)]
    github.add_pages(
        "GET",
        f"{REPO}/pulls/42/comments",
        first_page,
        [{"id": 100, "body": "**Critical**: SQL injection"}],
    )
    github.add_pages("GET", f"{REPO}/issues/42/comments", [{"id": 200, "body": "summary"}])

    comments = await backend.list_review_comments("42")

    assert len(comments) == 102
    assert comments[100]["id"] == 100
    assert comments[-1]["id"] == 200
