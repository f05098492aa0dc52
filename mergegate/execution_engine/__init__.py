"""
CI-gated merge execution engine

Commit tracking, status polling, failure classification, the bounded
auto-fix loop and the merge executor state machine.
"""

from .autofix_loop import AutoFixLoop
from .backends import CIBackend, DryRunResult, VCSWorkspace
from .commit_tracker import CommitTracker
from .failure_classifier import classify, requires_human
from .fix_strategies import (
    STRATEGY_NAMES,
    FixContext,
    FixResult,
    FixStrategyProvider,
    SubprocessFixProvider,
)
from .job_status import aggregate_jobs, first_failure
from .merge_executor import MergeExecutor, OverrideAuthorization
from .merge_types import (
    FailureCategory,
    FailureKind,
    FixAttempt,
    Job,
    JobConclusion,
    LoopResult,
    LoopStatus,
    MergeAttemptContext,
    MergeDecision,
    MergeState,
    MergeStrategy,
    PipelineRun,
    PipelineStatus,
    PollResult,
    PollStatus,
    Revision,
)
from .status_poller import StatusPoller
from .timing import CancellationToken, SystemClock

__all__ = [
    "AutoFixLoop",
    "CIBackend",
    "DryRunResult",
    "VCSWorkspace",
    "CommitTracker",
    "classify",
    "requires_human",
    "STRATEGY_NAMES",
    "FixContext",
    "FixResult",
    "FixStrategyProvider",
    "SubprocessFixProvider",
    "aggregate_jobs",
    "first_failure",
    "MergeExecutor",
    "OverrideAuthorization",
    "FailureCategory",
    "FailureKind",
    "FixAttempt",
    "Job",
    "JobConclusion",
    "LoopResult",
    "LoopStatus",
    "MergeAttemptContext",
    "MergeDecision",
    "MergeState",
    "MergeStrategy",
    "PipelineRun",
    "PipelineStatus",
    "PollResult",
    "PollStatus",
    "Revision",
    "StatusPoller",
    "CancellationToken",
    "SystemClock",
]
