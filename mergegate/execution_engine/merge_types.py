"""
CI-gated merge type system

Pydantic models for every record the merge pipeline produces: the pinned
revision, pipeline runs and their jobs, failure classifications, the
append-only fix history, and the terminal merge decision. The
MergeAttemptContext ties them together and is the only state a merge
attempt carries between components.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .review.review_types import ReviewFinding


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineStatus(str, Enum):
    """Lifecycle of a CI pipeline run"""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


TERMINAL_PIPELINE_STATUSES = {
    PipelineStatus.SUCCESS,
    PipelineStatus.FAILURE,
    PipelineStatus.CANCELLED,
    PipelineStatus.TIMEOUT,
}


class JobConclusion(str, Enum):
    """Outcome of a single CI job"""

    SUCCESS = "success"
    PENDING = "pending"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class FailureKind(str, Enum):
    """Why a job failed, in classifier priority order"""

    SECURITY = "security"
    LINT = "lint"
    TYPE = "type"
    TEST = "test"
    BUILD = "build"
    DEPENDENCY = "dependency"
    INFRASTRUCTURE = "infrastructure"
    UNKNOWN = "unknown"


class FixConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NOT_APPLICABLE = "n/a"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FixOutcome(str, Enum):
    """Result of one auto-fix iteration"""

    FIXED = "fixed"  # Fix applied and pushed, CI not yet re-polled
    FIX_FAILED = "fix_failed"  # Fix provider failed or produced nothing
    RE_CI_PASSED = "re_ci_passed"
    RE_CI_FAILED = "re_ci_failed"


class MergeStrategy(str, Enum):
    SQUASH = "squash"
    MERGE = "merge"
    REBASE = "rebase"


class MergeState(str, Enum):
    """Merge executor states"""

    INITIATED = "initiated"
    TRACKING = "tracking"
    POLLING = "polling"
    FIXING = "fixing"
    VERIFYING = "verifying"
    DRY_RUN_TESTING = "dry_run_testing"
    MERGING = "merging"
    CLEANING_UP = "cleaning_up"
    COMPLETED = "completed"
    ABORTED = "aborted"


class PollStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class LoopStatus(str, Enum):
    SUCCESS = "success"
    REQUIRES_HUMAN_INTERVENTION = "requires_human_intervention"
    CIRCULAR_FIX_DETECTED = "circular_fix_detected"
    FIX_APPLICATION_FAILED = "fix_application_failed"
    MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
    TIMED_OUT = "timed_out"


class Revision(BaseModel):
    """The exact commit being merged; immutable once captured"""

    model_config = ConfigDict(frozen=True)

    sha: str
    branch: str
    captured_at: datetime = Field(default_factory=utcnow)

    @property
    def short_sha(self) -> str:
        return self.sha[:8]


class Job(BaseModel):
    """One named unit of work inside a pipeline run"""

    model_config = ConfigDict(frozen=True)

    name: str
    conclusion: JobConclusion
    duration_seconds: Optional[float] = None
    log_excerpt: str = ""
    job_id: Optional[str] = None


class PipelineRunSummary(BaseModel):
    """Entry of a backend "list runs for ref" response"""

    model_config = ConfigDict(frozen=True)

    id: str
    sha: str
    status: PipelineStatus
    head_branch: Optional[str] = None
    created_at: Optional[datetime] = None


class PipelineRun(BaseModel):
    """A CI execution tied 1:1 to a revision"""

    model_config = ConfigDict(frozen=True)

    id: str
    sha: str
    status: PipelineStatus
    jobs: List[Job] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    html_url: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PIPELINE_STATUSES

    def with_status(self, status: PipelineStatus) -> "PipelineRun":
        return self.model_copy(update={"status": status})


class FailureCategory(BaseModel):
    """Classification of a failing job's log with its auto-fix policy"""

    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    auto_fixable: bool
    confidence: FixConfidence
    severity: Severity
    signature: Optional[str] = None
    is_timeout: bool = False
    files: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def security_never_auto_fixable(cls, data: Any) -> Any:
        if isinstance(data, dict):
            kind = data.get("kind")
            if kind == FailureKind.SECURITY or kind == FailureKind.SECURITY.value:
                data = {**data, "auto_fixable": False}
        return data

    @property
    def file_set(self) -> Tuple[str, ...]:
        return tuple(sorted(set(self.files)))


class FixAttempt(BaseModel):
    """One iteration of the auto-fix loop"""

    model_config = ConfigDict(frozen=True)

    attempt_number: int
    category: FailureCategory
    strategy_applied: str
    files: List[str] = Field(default_factory=list)
    resulting_commit_sha: Optional[str] = None
    outcome: FixOutcome
    started_at: datetime = Field(default_factory=utcnow)
    detail: str = ""

    def fingerprint(self) -> Tuple[str, str, Tuple[str, ...]]:
        """Key used to detect the loop retrying the same fix on the same files."""
        return (self.category.kind.value, self.strategy_applied, self.category.file_set)


class PollResult(BaseModel):
    """Terminal outcome of the status poller"""

    status: PollStatus
    run: Optional[PipelineRun] = None
    jobs: List[Job] = Field(default_factory=list)
    first_failure: Optional[Job] = None
    elapsed_seconds: float = 0.0
    polls: int = 0
    intervals: List[float] = Field(default_factory=list)
    reason: str = ""


class LoopResult(BaseModel):
    """Outcome of the bounded auto-fix loop"""

    status: LoopStatus
    attempts: int = 0
    history: List[FixAttempt] = Field(default_factory=list)
    category: Optional[FailureCategory] = None
    failing_job: Optional[Job] = None
    final_poll: Optional[PollResult] = None
    revision: Optional[Revision] = None
    reason: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == LoopStatus.SUCCESS


class StateTransitionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: MergeState
    target: MergeState
    at: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None


class AbortDiagnostics(BaseModel):
    """Context attached to an aborted decision so a human can act on it"""

    failing_job: Optional[str] = None
    log_excerpt: Optional[str] = None
    category: Optional[FailureCategory] = None
    attempt_history: List[FixAttempt] = Field(default_factory=list)
    review_findings: List[ReviewFinding] = Field(default_factory=list)
    detail: Dict[str, Any] = Field(default_factory=dict)


class MergeDecision(BaseModel):
    """Terminal record of a merge attempt; created once, never mutated"""

    model_config = ConfigDict(frozen=True)

    approved: bool
    reason: str
    merged_sha: Optional[str] = None
    strategy: Optional[MergeStrategy] = None
    override: bool = False
    authorized_by: Optional[str] = None
    aborted_in: Optional[MergeState] = None
    diagnostics: Optional[AbortDiagnostics] = None
    decided_at: datetime = Field(default_factory=utcnow)


class MergeAttemptContext(BaseModel):
    """
    Explicit state of one merge attempt.

    Passed through every component call and persisted through a
    ContextStore; there is no ambient session state.
    """

    attempt_id: str = Field(default_factory=lambda: f"merge_{uuid.uuid4().hex[:12]}")
    repository: str
    branch: str
    target_branch: str
    strategy: MergeStrategy = MergeStrategy.SQUASH
    state: MergeState = MergeState.INITIATED
    state_history: List[StateTransitionRecord] = Field(default_factory=list)
    revision: Optional[Revision] = None
    pipeline_run: Optional[PipelineRun] = None
    merge_request_id: Optional[str] = None
    verified_sha: Optional[str] = None
    fix_history: List[FixAttempt] = Field(default_factory=list)
    decision: Optional[MergeDecision] = None
    cleanup_warnings: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def bind_revision(self, revision: Revision) -> None:
        """Pin the attempt to a new revision; clears anything derived from the old one."""
        self.revision = revision
        self.pipeline_run = None
        self.verified_sha = None
        self.touch()

    def record_pipeline_run(self, run: PipelineRun) -> bool:
        """
        Store a pipeline read if it may replace the current one.

        Reads for another revision are rejected, and once a terminal status
        has been recorded for a run a later non-terminal read of the same run
        is ignored.
        """
        if self.revision is not None and run.sha != self.revision.sha:
            return False
        current = self.pipeline_run
        if (
            current is not None
            and current.id == run.id
            and current.is_terminal
            and not run.is_terminal
        ):
            return False
        self.pipeline_run = run
        self.touch()
        return True

    def record_fix_attempt(self, attempt: FixAttempt) -> None:
        # Rebuild rather than append so earlier snapshots of the list stay intact
        self.fix_history = [*self.fix_history, attempt]
        self.touch()

    def record_decision(self, decision: MergeDecision) -> None:
        if self.decision is not None:
            raise ValueError(f"Merge attempt {self.attempt_id} already decided")
        self.decision = decision
        self.touch()
