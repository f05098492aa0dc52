"""
Job-level status aggregation

A pipeline's overall state is always derived from its jobs. A provider's
own roll-up status is never trusted on its own: one failed job must fail
the pipeline even if the roll-up still reads "success" or "in_progress".
"""

from typing import Any, Iterable, Optional, Sequence

from .merge_types import Job, JobConclusion, PipelineStatus

PASSING_CONCLUSIONS = {JobConclusion.SUCCESS, JobConclusion.SKIPPED}
FAILING_CONCLUSIONS = {JobConclusion.FAILURE, JobConclusion.CANCELLED}

# Provider vocabulary (GitHub check runs / workflow jobs)
_SUCCESS_TOKENS = {"success", "neutral", "skipped"}
_FAILURE_TOKENS = {"failure", "timed_out", "action_required", "startup_failure", "error"}
_CANCELLED_TOKENS = {"cancelled", "stale"}
_PENDING_STATES = {"queued", "in_progress", "pending", "waiting", "requested"}


def aggregate_jobs(jobs: Iterable[Job]) -> PipelineStatus:
    """
    Compute the aggregate status of a set of jobs.

    failure  - any job failed or was cancelled (wins over pending)
    success  - every job succeeded or was skipped
    pending  - anything else, including an empty job list
    """
    conclusions = [job.conclusion for job in jobs]
    if any(c in FAILING_CONCLUSIONS for c in conclusions):
        return PipelineStatus.FAILURE
    if conclusions and all(c in PASSING_CONCLUSIONS for c in conclusions):
        return PipelineStatus.SUCCESS
    return PipelineStatus.PENDING


def first_failure(jobs: Sequence[Job]) -> Optional[Job]:
    """First failed or cancelled job in backend order."""
    for job in jobs:
        if job.conclusion in FAILING_CONCLUSIONS:
            return job
    return None


def normalize_token(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def normalize_conclusion(status: Any, conclusion: Any) -> JobConclusion:
    """Map a provider (status, conclusion) pair to a JobConclusion."""
    conclusion_token = normalize_token(conclusion)
    status_token = normalize_token(status)

    if conclusion_token == "skipped":
        return JobConclusion.SKIPPED
    if conclusion_token in _SUCCESS_TOKENS:
        return JobConclusion.SUCCESS
    if conclusion_token in _FAILURE_TOKENS:
        return JobConclusion.FAILURE
    if conclusion_token in _CANCELLED_TOKENS:
        return JobConclusion.CANCELLED
    if status_token in _PENDING_STATES or not conclusion_token:
        return JobConclusion.PENDING
    # Unrecognized conclusions are treated as failures rather than guessed as passes
    return JobConclusion.FAILURE


def normalize_run_status(status: Any, conclusion: Any) -> PipelineStatus:
    """Map a provider workflow-run (status, conclusion) pair to a PipelineStatus."""
    status_token = normalize_token(status)
    conclusion_token = normalize_token(conclusion)

    if status_token != "completed":
        if status_token == "in_progress":
            return PipelineStatus.RUNNING
        return PipelineStatus.PENDING
    if conclusion_token in _SUCCESS_TOKENS:
        return PipelineStatus.SUCCESS
    if conclusion_token == "timed_out":
        return PipelineStatus.TIMEOUT
    if conclusion_token in _CANCELLED_TOKENS:
        return PipelineStatus.CANCELLED
    return PipelineStatus.FAILURE
