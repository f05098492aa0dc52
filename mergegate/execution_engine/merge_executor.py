"""
Merge Executor

Orchestrates one CI-gated merge attempt:

    tracking -> polling -> (fixing) -> verifying -> dry_run_testing
    -> merging -> cleaning_up -> completed

Every fatal condition ends in an aborted MergeDecision carrying a reason and
enough diagnostics (failing job, log excerpt, fix history, blocking review
findings) for a human to act on. The real merge is only attempted for the
exact revision whose pipeline was verified green.
"""

import asyncio
import random
from typing import Any, Dict, Optional, Sequence

import structlog
from pydantic import BaseModel, field_validator

from mergegate.core.config import Settings, settings as default_settings

from .autofix_loop import AutoFixLoop
from .backends import CIBackend, VCSWorkspace
from .commit_tracker import CommitTracker
from .errors import (
    CircularFixDetected,
    FixApplicationFailed,
    MaxAttemptsExceeded,
    MergeGateError,
    MergeRequestNotFound,
    OverrideNotAuthorized,
    PollingTimedOut,
    PreMergeTestFailed,
    RequiresHumanIntervention,
    VerificationFailed,
)
from .fix_strategies import FixStrategyProvider
from .job_status import aggregate_jobs, first_failure
from .merge_types import (
    AbortDiagnostics,
    LoopResult,
    LoopStatus,
    MergeAttemptContext,
    MergeDecision,
    MergeState,
    MergeStrategy,
    PipelineStatus,
    PollStatus,
    Revision,
    StateTransitionRecord,
)
from .review import ReviewFindingAdapter, ReviewSeverity, blocking_findings, parse_review_findings
from .state_machine import assert_transition, is_terminal
from .status_poller import StatusPoller
from .timing import CancellationToken, Clock, SystemClock

logger = structlog.get_logger(__name__)

_LOOP_ERRORS = {
    LoopStatus.REQUIRES_HUMAN_INTERVENTION: RequiresHumanIntervention,
    LoopStatus.CIRCULAR_FIX_DETECTED: CircularFixDetected,
    LoopStatus.FIX_APPLICATION_FAILED: FixApplicationFailed,
    LoopStatus.MAX_ATTEMPTS_EXCEEDED: MaxAttemptsExceeded,
    LoopStatus.TIMED_OUT: PollingTimedOut,
}

_EXCERPT_LIMIT = 4000


class OverrideAuthorization(BaseModel):
    """Who approved a force-merge and why"""

    authorized_by: str
    justification: str

    @field_validator("authorized_by", "justification")
    @classmethod
    def not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class MergeExecutor:
    def __init__(
        self,
        repository: str,
        backend: CIBackend,
        workspace: VCSWorkspace,
        fix_provider: FixStrategyProvider,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        store=None,
        lock_manager=None,
        review_adapters: Optional[Sequence[ReviewFindingAdapter]] = None,
        rng: Optional[random.Random] = None,
    ):
        # Imported here: the services package depends on this one
        from mergegate.services.branch_lock import BranchLockManager

        self.repository = repository
        self.backend = backend
        self.workspace = workspace
        self.settings = settings or default_settings
        self.clock = clock or SystemClock()
        self.store = store
        self.locks = lock_manager or BranchLockManager(self.settings)
        self.review_adapters = review_adapters
        self.tracker = CommitTracker(backend, self.clock, self.settings)
        self.poller = StatusPoller(backend, self.clock, self.settings, rng=rng)
        self.autofix = AutoFixLoop(
            backend,
            workspace,
            fix_provider,
            tracker=self.tracker,
            poller=self.poller,
            clock=self.clock,
            settings=self.settings,
            store=store,
        )

    def new_context(
        self,
        branch: str,
        target_branch: Optional[str] = None,
        strategy: Optional[MergeStrategy] = None,
    ) -> MergeAttemptContext:
        return MergeAttemptContext(
            repository=self.repository,
            branch=branch,
            target_branch=target_branch or self.settings.default_target_branch,
            strategy=strategy or MergeStrategy(self.settings.default_strategy),
        )

    async def execute(
        self,
        branch: str,
        target_branch: Optional[str] = None,
        strategy: Optional[MergeStrategy] = None,
        token: Optional[CancellationToken] = None,
        context: Optional[MergeAttemptContext] = None,
    ) -> MergeDecision:
        """
        Run a full merge attempt for a branch.

        Args:
            branch: Source branch
            target_branch: Branch to merge into (default from settings)
            strategy: squash, merge or rebase (default from settings)
            token: Cooperative cancellation token
            context: Pre-built context (lets callers know the attempt id up front)

        Returns:
            The terminal MergeDecision; aborted attempts are returned, not raised
        """
        context = context or self.new_context(branch, target_branch, strategy)
        token = token or CancellationToken()
        log = logger.bind(attempt_id=context.attempt_id, repository=self.repository, branch=branch)
        log.info("merge.started", target=context.target_branch, strategy=context.strategy.value)
        self._save(context)

        try:
            async with self.locks.hold(self.repository, branch):
                return await self._run(context, token)
        except MergeGateError as e:
            return self._abort(context, e)
        except Exception as e:
            log.exception("merge.unexpected_error", state=context.state.value)
            return self._abort(
                context,
                MergeGateError(
                    f"unexpected error during {context.state.value}: {e}",
                    {"error_type": type(e).__name__},
                ),
            )

    async def _run(self, context: MergeAttemptContext, token: CancellationToken) -> MergeDecision:
        # Tracking
        self._transition(context, MergeState.TRACKING, token)
        head = await self.workspace.resolve_branch_head(context.branch)
        revision = await self.tracker.capture(head, context.branch)
        context.bind_revision(revision)
        run = await self.tracker.find_pipeline(revision, token=token)
        context.record_pipeline_run(run)

        # Polling, and fixing if the pipeline fails
        self._transition(context, MergeState.POLLING, token)
        poll = await self.poller.poll(run, revision, token)
        if poll.run is not None:
            context.record_pipeline_run(poll.run)
        if poll.status == PollStatus.TIMED_OUT:
            raise PollingTimedOut(poll.reason, {"run_id": run.id, "polls": poll.polls})
        if poll.status == PollStatus.FAILED:
            self._transition(context, MergeState.FIXING, token, note=poll.first_failure.name)
            result = await self.autofix.run_loop(context, poll, token)
            if not result.succeeded:
                raise self._loop_error(result)

        # Verifying
        self._transition(context, MergeState.VERIFYING, token)
        revision = context.revision
        await self._verify(context, revision)

        # Dry-run testing
        self._transition(context, MergeState.DRY_RUN_TESTING, token)
        await self._dry_run(context)

        # Merging; cancellation is no longer honoured once the merge is issued
        self._transition(context, MergeState.MERGING, token)
        if context.verified_sha is None or context.verified_sha != revision.sha:
            raise VerificationFailed(
                "refusing to merge: revision was not verified",
                {"verified_sha": context.verified_sha, "revision_sha": revision.sha},
            )
        merged_sha = await self.backend.merge_request(
            context.merge_request_id, context.strategy, sha=revision.sha
        )
        logger.info(
            "merge.merged",
            attempt_id=context.attempt_id,
            merged_sha=merged_sha,
            strategy=context.strategy.value,
        )

        # Cleaning up
        self._transition(context, MergeState.CLEANING_UP)
        await self._cleanup(context)

        decision = MergeDecision(
            approved=True,
            reason=f"merged {revision.short_sha} into {context.target_branch}",
            merged_sha=merged_sha,
            strategy=context.strategy,
        )
        self._transition(context, MergeState.COMPLETED)
        context.record_decision(decision)
        self._save(context)
        logger.info("merge.completed", attempt_id=context.attempt_id, merged_sha=merged_sha)
        return decision

    async def _verify(self, context: MergeAttemptContext, revision: Revision) -> None:
        """Re-read the pipeline and the review bots right before merging."""
        run = await self.backend.get_run(context.pipeline_run.id)
        if run.sha != revision.sha:
            raise VerificationFailed(
                f"pipeline {run.id} belongs to {run.sha[:8]}, not {revision.short_sha}",
                {"run_id": run.id, "run_sha": run.sha, "revision_sha": revision.sha},
            )
        aggregate = aggregate_jobs(run.jobs)
        context.record_pipeline_run(run.with_status(aggregate))
        if aggregate != PipelineStatus.SUCCESS:
            failed = first_failure(run.jobs)
            raise VerificationFailed(
                f"pipeline {run.id} is {aggregate.value} on re-check",
                {
                    "run_id": run.id,
                    "failing_job": failed.name if failed else None,
                    "log_excerpt": failed.log_excerpt if failed else None,
                },
            )

        merge_request_id = await self.backend.find_merge_request(
            context.branch, context.target_branch
        )
        if merge_request_id is None:
            raise MergeRequestNotFound(
                f"no open merge request from {context.branch} into {context.target_branch}"
            )
        context.merge_request_id = merge_request_id

        threshold = self.settings.review_block_severity
        if threshold:
            comments = await self.backend.list_review_comments(merge_request_id)
            findings = parse_review_findings(comments, self.review_adapters)
            blocking = blocking_findings(findings, ReviewSeverity(threshold))
            if blocking:
                raise VerificationFailed(
                    f"{len(blocking)} blocking review finding(s) at or above {threshold}",
                    {"review_findings": blocking, "merge_request_id": merge_request_id},
                )

        context.verified_sha = revision.sha
        context.touch()
        logger.info("merge.verified", attempt_id=context.attempt_id, sha=revision.sha)

    async def _dry_run(self, context: MergeAttemptContext) -> None:
        try:
            result = await asyncio.wait_for(
                self.workspace.dry_run_merge(
                    context.revision.sha,
                    context.target_branch,
                    self.settings.dry_run_test_command,
                ),
                timeout=self.settings.dry_run_timeout,
            )
        except asyncio.TimeoutError:
            raise PreMergeTestFailed(
                "pre-merge test failed",
                {"timeout_seconds": self.settings.dry_run_timeout},
            ) from None

        if not result.success:
            raise PreMergeTestFailed(
                "pre-merge test failed",
                {
                    "conflict": result.conflict,
                    "conflicting_files": list(result.conflicting_files),
                    "test_exit_code": result.test_exit_code,
                    "log_excerpt": result.output[-_EXCERPT_LIMIT:],
                },
            )
        logger.info("merge.dry_run_passed", attempt_id=context.attempt_id)

    async def _cleanup(self, context: MergeAttemptContext) -> None:
        steps = (
            ("delete remote branch", lambda: self.backend.delete_branch(context.branch)),
            ("checkout target branch", lambda: self.workspace.checkout(context.target_branch)),
            ("pull target branch", lambda: self.workspace.pull(context.target_branch)),
            ("delete local branch", lambda: self.workspace.delete_local_branch(context.branch)),
        )
        async with self.workspace.exclusive():
            for label, step in steps:
                try:
                    await step()
                except Exception as e:
                    warning = f"{label} failed: {e}"
                    context.cleanup_warnings = [*context.cleanup_warnings, warning]
                    logger.warning(
                        "merge.cleanup_failed",
                        attempt_id=context.attempt_id,
                        step=label,
                        error=str(e),
                    )
        context.touch()

    async def force_merge(
        self,
        branch: str,
        authorization: OverrideAuthorization,
        target_branch: Optional[str] = None,
        strategy: Optional[MergeStrategy] = None,
    ) -> MergeDecision:
        """
        Merge without the CI gate.

        Only available when ``allow_force_merge`` is enabled and an explicit
        authorization is supplied. The decision is marked as an override.
        """
        if not self.settings.allow_force_merge:
            raise OverrideNotAuthorized("force-merge is disabled (allow_force_merge=false)")
        if authorization is None:
            raise OverrideNotAuthorized("force-merge requires an authorization")

        context = self.new_context(branch, target_branch, strategy)
        logger.warning(
            "merge.force_merge_requested",
            attempt_id=context.attempt_id,
            repository=self.repository,
            branch=branch,
            authorized_by=authorization.authorized_by,
            justification=authorization.justification,
        )

        try:
            async with self.locks.hold(self.repository, branch):
                merge_request_id = await self.backend.find_merge_request(
                    branch, context.target_branch
                )
                if merge_request_id is None:
                    raise MergeRequestNotFound(
                        f"no open merge request from {branch} into {context.target_branch}"
                    )
                context.merge_request_id = merge_request_id
                merged_sha = await self.backend.merge_request(merge_request_id, context.strategy)
        except MergeGateError as e:
            decision = MergeDecision(
                approved=False,
                reason=e.reason,
                strategy=context.strategy,
                override=True,
                authorized_by=authorization.authorized_by,
                diagnostics=AbortDiagnostics(detail=self._plain(e.diagnostics)),
            )
        else:
            decision = MergeDecision(
                approved=True,
                reason=f"force-merged by {authorization.authorized_by}: {authorization.justification}",
                merged_sha=merged_sha,
                strategy=context.strategy,
                override=True,
                authorized_by=authorization.authorized_by,
            )
        context.record_decision(decision)
        self._save(context)
        return decision

    def _transition(
        self,
        context: MergeAttemptContext,
        target: MergeState,
        token: Optional[CancellationToken] = None,
        note: Optional[str] = None,
    ) -> None:
        if token is not None:
            token.raise_if_cancelled()
        assert_transition(context.state, target)
        context.state_history = [
            *context.state_history,
            StateTransitionRecord(source=context.state, target=target, note=note),
        ]
        context.state = target
        context.touch()
        logger.info(
            "merge.state_changed",
            attempt_id=context.attempt_id,
            state=target.value,
            note=note,
        )
        self._save(context)

    def _abort(self, context: MergeAttemptContext, error: MergeGateError) -> MergeDecision:
        aborted_in = context.state
        diagnostics = self._diagnostics(context, error)
        if not is_terminal(context.state):
            self._transition(context, MergeState.ABORTED, note=error.reason)
        decision = MergeDecision(
            approved=False,
            reason=error.reason,
            strategy=context.strategy,
            aborted_in=aborted_in,
            diagnostics=diagnostics,
        )
        context.record_decision(decision)
        self._save(context)
        logger.warning(
            "merge.aborted",
            attempt_id=context.attempt_id,
            state=aborted_in.value,
            reason=error.reason,
            error_type=type(error).__name__,
        )
        return decision

    def _diagnostics(self, context: MergeAttemptContext, error: MergeGateError) -> AbortDiagnostics:
        detail = dict(error.diagnostics)
        failing_job = detail.pop("failing_job", None)
        log_excerpt = detail.pop("log_excerpt", None)
        category = detail.pop("category", None)
        findings = detail.pop("review_findings", [])

        if failing_job is None and context.pipeline_run is not None:
            failed = first_failure(context.pipeline_run.jobs)
            if failed is not None:
                failing_job = failed.name
                log_excerpt = log_excerpt or failed.log_excerpt

        return AbortDiagnostics(
            failing_job=failing_job,
            log_excerpt=log_excerpt[-_EXCERPT_LIMIT:] if log_excerpt else None,
            category=category,
            attempt_history=list(context.fix_history),
            review_findings=list(findings),
            detail=self._plain(detail),
        )

    @staticmethod
    def _loop_error(result: LoopResult) -> MergeGateError:
        error_cls = _LOOP_ERRORS.get(result.status, MergeGateError)
        job = result.failing_job
        return error_cls(
            result.reason,
            {
                "failing_job": job.name if job else None,
                "log_excerpt": job.log_excerpt if job else None,
                "category": result.category,
                "loop_status": result.status.value,
                "attempts": result.attempts,
            },
        )

    @staticmethod
    def _plain(detail: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: value if isinstance(value, (str, int, float, bool, list, type(None))) else str(value)
            for key, value in detail.items()
        }

    def _save(self, context: MergeAttemptContext) -> None:
        if self.store is not None:
            self.store.save(context)
