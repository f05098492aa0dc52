"""
Auto-Fix Loop

Turns a failed poll into either a passing pipeline or a terminal outcome a
human can act on. Bounded by attempt count, by per-fix wall-clock time and by
a circularity check over the attempt history; every fix that lands moves the
merge attempt to a new revision.
"""

import asyncio
from typing import List, Optional, Tuple

import structlog

from mergegate.core.config import Settings, settings as default_settings

from .backends import CIBackend, VCSWorkspace
from .commit_tracker import CommitTracker
from .failure_classifier import classify, requires_human
from .fix_strategies import (
    RERUN_ONLY_KINDS,
    FixContext,
    FixResult,
    FixStrategyProvider,
    strategy_for,
)
from .merge_types import (
    FailureCategory,
    FixAttempt,
    FixOutcome,
    Job,
    LoopResult,
    LoopStatus,
    MergeAttemptContext,
    PollResult,
    PollStatus,
    Revision,
)
from .status_poller import StatusPoller
from .timing import CancellationToken, Clock, SystemClock, wait

logger = structlog.get_logger(__name__)

# Earlier non-passing attempts with the same fingerprint that make the next one circular
CIRCULAR_THRESHOLD = 2


class AutoFixLoop:
    def __init__(
        self,
        backend: CIBackend,
        workspace: VCSWorkspace,
        fix_provider: FixStrategyProvider,
        tracker: Optional[CommitTracker] = None,
        poller: Optional[StatusPoller] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        store=None,
    ):
        self.settings = settings or default_settings
        self.clock = clock or SystemClock()
        self.backend = backend
        self.workspace = workspace
        self.fix_provider = fix_provider
        self.tracker = tracker or CommitTracker(backend, self.clock, self.settings)
        self.poller = poller or StatusPoller(backend, self.clock, self.settings)
        self.store = store

    async def run_loop(
        self,
        context: MergeAttemptContext,
        failed: PollResult,
        token: Optional[CancellationToken] = None,
    ) -> LoopResult:
        """
        Repair a failed pipeline within the configured bounds.

        Args:
            context: Merge attempt; its revision and fix history are updated
            failed: The FAILED poll result that triggered the loop
            token: Optional cancellation token

        Returns:
            LoopResult describing how the loop ended

        Raises:
            NoPipelineTriggered / RevisionUnavailable: a pushed fix could not be tracked
            MergeCancelled: the token was cancelled
        """
        cfg = self.settings
        poll = failed
        attempts = 0
        history: List[FixAttempt] = []

        while True:
            if token is not None:
                token.raise_if_cancelled()

            job = poll.first_failure
            category = classify(job.log_excerpt if job else "")
            job_name = job.name if job else "unknown"

            if requires_human(category, cfg.require_human_for):
                reason = (
                    f"{category.kind.value} failure in job '{job_name}' "
                    "requires human intervention"
                )
                if category.is_timeout:
                    reason = f"infrastructure timeout in job '{job_name}' requires human intervention"
                return self._finish(
                    LoopStatus.REQUIRES_HUMAN_INTERVENTION, context, attempts, history,
                    category, job, poll, reason,
                )

            if attempts >= cfg.autofix_max_attempts:
                return self._finish(
                    LoopStatus.MAX_ATTEMPTS_EXCEEDED, context, attempts, history,
                    category, job, poll,
                    f"auto-fix gave up after {attempts} attempts; job '{job_name}' "
                    f"still failing ({category.kind.value})",
                )

            strategy = strategy_for(category.kind)
            if self._is_circular(context, category, strategy):
                return self._finish(
                    LoopStatus.CIRCULAR_FIX_DETECTED, context, attempts, history,
                    category, job, poll,
                    f"circular fix detected: {strategy} already tried "
                    f"{CIRCULAR_THRESHOLD} times for {category.kind.value} failures "
                    f"in {', '.join(category.file_set) or 'the same files'}",
                )

            attempts += 1
            logger.info(
                "merge.fixing.attempt_started",
                attempt=attempts,
                kind=category.kind.value,
                strategy=strategy,
                job=job_name,
            )
            result, landed_sha = await self._fix(context, category, job, attempts, strategy)
            if result.success and result.rerun_only:
                result = await self._request_rerun(context, result)

            if not result.success or (not result.rerun_only and not result.files_changed):
                detail = result.output or "fix produced no changes"
                attempt = FixAttempt(
                    attempt_number=attempts,
                    category=category,
                    strategy_applied=result.strategy,
                    files=result.files_changed,
                    outcome=FixOutcome.FIX_FAILED,
                    detail=detail,
                )
                history.append(attempt)
                self._record(context, attempt)
                return self._finish(
                    LoopStatus.FIX_APPLICATION_FAILED, context, attempts, history,
                    category, job, poll,
                    f"fix application failed: {result.strategy} for "
                    f"{category.kind.value} failure in job '{job_name}'",
                )

            poll, attempt = await self._land_and_repoll(
                context, category, job, attempts, result, landed_sha, token
            )
            history.append(attempt)
            self._record(context, attempt)

            if poll.status == PollStatus.PASSED:
                return self._finish(
                    LoopStatus.SUCCESS, context, attempts, history, category, job, poll,
                    f"pipeline passed after {attempts} auto-fix attempt(s)",
                )
            if poll.status == PollStatus.TIMED_OUT:
                return self._finish(
                    LoopStatus.TIMED_OUT, context, attempts, history, category, job, poll,
                    poll.reason,
                )
            logger.info("merge.fixing.attempt_failed", attempt=attempts)

    async def _fix(
        self,
        context: MergeAttemptContext,
        category: FailureCategory,
        job: Optional[Job],
        attempt_number: int,
        strategy: str,
    ) -> Tuple[FixResult, Optional[str]]:
        """
        Run the fix on the attempt's branch and commit what it changed.

        The working copy is shared between attempts, so checkout, fixer and
        commit run under the workspace lock on a tree that starts clean.
        Changes that are not committed are rolled back before the lock is
        released. Returns the fix result and the pushed SHA, if any.
        """
        if category.kind in RERUN_ONLY_KINDS:
            return await self._apply(category, job, attempt_number, strategy, context.branch), None

        async with self.workspace.exclusive():
            dirty = await self.workspace.changed_files()
            if dirty:
                return FixResult(
                    success=False,
                    strategy=strategy,
                    output="workspace has uncommitted changes: " + ", ".join(dirty[:10]),
                ), None
            await self.workspace.checkout(context.branch)
            result = await self._apply(category, job, attempt_number, strategy, context.branch)
            if not result.success or result.rerun_only or not result.files_changed:
                await self.workspace.discard_changes()
                return result, None
            try:
                sha = await self.workspace.commit_and_push(
                    result.files_changed,
                    self._commit_message(
                        category, job, attempt_number, result.strategy, context.revision
                    ),
                    context.branch,
                )
            except Exception:
                await self.workspace.discard_changes()
                # Keep the audit trail when the fix cannot be landed
                self._record(
                    context,
                    self._attempt(attempt_number, category, result, None, FixOutcome.FIXED),
                )
                raise
        return result, sha

    async def _apply(
        self,
        category: FailureCategory,
        job: Optional[Job],
        attempt_number: int,
        strategy: str,
        branch: str,
    ) -> FixResult:
        fix_context = FixContext(
            workspace=self.workspace,
            branch=branch,
            attempt_number=attempt_number,
            job=job,
            category=category,
        )
        try:
            return await asyncio.wait_for(
                self.fix_provider.apply_fix(category, fix_context),
                timeout=self.settings.fix_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "merge.fixing.timed_out", attempt=attempt_number, timeout=self.settings.fix_timeout
            )
            return FixResult(
                success=False,
                strategy=strategy,
                output=f"fix application exceeded {self.settings.fix_timeout:.0f}s",
            )

    async def _request_rerun(self, context: MergeAttemptContext, result: FixResult) -> FixResult:
        run = context.pipeline_run
        if run is not None and await self.backend.rerun_failed_jobs(run.id):
            logger.info("merge.fixing.rerun_requested", run_id=run.id)
            return result
        return FixResult(
            success=False,
            strategy=result.strategy,
            output="CI refused to re-run the failed jobs",
            rerun_only=True,
        )

    async def _land_and_repoll(
        self,
        context: MergeAttemptContext,
        category: FailureCategory,
        job: Optional[Job],
        attempt_number: int,
        result: FixResult,
        landed_sha: Optional[str],
        token: Optional[CancellationToken],
    ) -> Tuple[PollResult, FixAttempt]:
        """Track the pushed fix (or reuse the revision for a rerun) and poll the resulting run."""
        revision = context.revision
        run = context.pipeline_run
        if result.rerun_only:
            landed_sha = revision.sha
        try:
            if not result.rerun_only:
                revision = await self.tracker.capture(landed_sha, context.branch)
                context.bind_revision(revision)
            await wait(self.clock, self.settings.fix_cooldown, token)
            if not result.rerun_only:
                run = await self.tracker.find_pipeline(revision, token=token)
                context.record_pipeline_run(run)

            poll = await self.poller.poll(run, revision, token)
        except Exception:
            # Keep the audit trail when tracking or polling aborts the loop
            self._record(
                context,
                self._attempt(attempt_number, category, result, landed_sha, FixOutcome.FIXED),
            )
            raise

        if poll.run is not None:
            context.record_pipeline_run(poll.run)
        outcome = (
            FixOutcome.RE_CI_PASSED if poll.status == PollStatus.PASSED else FixOutcome.RE_CI_FAILED
        )
        detail = poll.reason if poll.status == PollStatus.TIMED_OUT else result.output
        return poll, self._attempt(attempt_number, category, result, landed_sha, outcome, detail)

    def _attempt(
        self,
        attempt_number: int,
        category: FailureCategory,
        result: FixResult,
        sha: Optional[str],
        outcome: FixOutcome,
        detail: str = "",
    ) -> FixAttempt:
        return FixAttempt(
            attempt_number=attempt_number,
            category=category,
            strategy_applied=result.strategy,
            files=result.files_changed,
            resulting_commit_sha=sha,
            outcome=outcome,
            detail=detail[-2000:],
        )

    def _is_circular(
        self, context: MergeAttemptContext, category: FailureCategory, strategy: str
    ) -> bool:
        fingerprint = (category.kind.value, strategy, category.file_set)
        repeats = [
            a
            for a in context.fix_history
            if a.fingerprint() == fingerprint and a.outcome != FixOutcome.RE_CI_PASSED
        ]
        return len(repeats) >= CIRCULAR_THRESHOLD

    def _record(self, context: MergeAttemptContext, attempt: FixAttempt) -> None:
        context.record_fix_attempt(attempt)
        if self.store is not None:
            self.store.save(context)

    @staticmethod
    def _commit_message(
        category: FailureCategory,
        job: Optional[Job],
        attempt_number: int,
        strategy: str,
        revision: Revision,
    ) -> str:
        job_name = job.name if job else "CI"
        lines = [
            f"fix(ci): {strategy.replace('_', ' ')} for {job_name}",
            "",
            f"Automated {category.kind.value} fix, attempt {attempt_number}, "
            f"on top of {revision.short_sha}.",
        ]
        if category.signature:
            lines.append(f"Failure signature: {category.signature}")
        return "\n".join(lines)

    def _finish(
        self,
        status: LoopStatus,
        context: MergeAttemptContext,
        attempts: int,
        history: List[FixAttempt],
        category: FailureCategory,
        job: Optional[Job],
        poll: PollResult,
        reason: str,
    ) -> LoopResult:
        log = logger.info if status == LoopStatus.SUCCESS else logger.warning
        log(
            "merge.fixing.finished",
            status=status.value,
            attempts=attempts,
            kind=category.kind.value,
            reason=reason,
        )
        return LoopResult(
            status=status,
            attempts=attempts,
            history=list(history),
            category=category,
            failing_job=job,
            final_poll=poll,
            revision=context.revision,
            reason=reason,
        )


