"""
Status Poller

Drives a pipeline run to a terminal state with exponential backoff under a
hard wall-clock budget. Every read is pinned to the tracked revision and the
verdict is always computed from job-level detail.
"""

import random
from typing import List, Optional

import structlog

from mergegate.core.config import Settings, settings as default_settings

from .backends import CIBackend
from .errors import CIBackendUnavailable
from .job_status import aggregate_jobs, first_failure
from .merge_types import PipelineRun, PipelineStatus, PollResult, PollStatus, Revision
from .timing import CancellationToken, Clock, SystemClock, jittered, next_interval, wait

logger = structlog.get_logger(__name__)


class StatusPoller:
    def __init__(
        self,
        backend: CIBackend,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.backend = backend
        self.clock = clock or SystemClock()
        self.settings = settings or default_settings
        self.rng = rng

    async def poll(
        self,
        run: PipelineRun,
        revision: Revision,
        token: Optional[CancellationToken] = None,
    ) -> PollResult:
        """
        Poll a run until its jobs pass, one fails, or the budget runs out.

        A response for any SHA other than the revision's is discarded and
        counted as a pending read, as is a read the backend reports as
        temporarily unavailable.
        """
        cfg = self.settings
        started = self.clock.monotonic()
        interval = cfg.poll_initial_interval
        polls = 0
        intervals: List[float] = []
        latest: Optional[PipelineRun] = None

        logger.info(
            "merge.polling.started",
            run_id=run.id,
            sha=revision.sha,
            budget=cfg.poll_timeout,
        )

        while polls < cfg.poll_max_attempts:
            elapsed = self.clock.monotonic() - started
            if elapsed >= cfg.poll_timeout:
                break
            if token is not None:
                token.raise_if_cancelled()

            try:
                fresh: Optional[PipelineRun] = await self.backend.get_run(run.id)
            except CIBackendUnavailable as e:
                # Counts as a pending read; the budget still bounds the loop
                fresh = None
                logger.warning(
                    "merge.polling.read_failed", run_id=run.id, poll=polls + 1, error=e.reason
                )
            polls += 1

            if fresh is not None and fresh.sha != revision.sha:
                logger.warning(
                    "merge.polling.stale_read_discarded",
                    run_id=run.id,
                    read_sha=fresh.sha,
                    expected_sha=revision.sha,
                )
            elif fresh is not None:
                aggregate = aggregate_jobs(fresh.jobs)
                latest = fresh.with_status(aggregate)
                if aggregate == PipelineStatus.SUCCESS:
                    return self._result(PollStatus.PASSED, latest, started, polls, intervals)
                if aggregate == PipelineStatus.FAILURE:
                    return self._result(PollStatus.FAILED, latest, started, polls, intervals)

            if polls >= cfg.poll_max_attempts:
                break
            remaining = cfg.poll_timeout - (self.clock.monotonic() - started)
            if remaining <= 0:
                break
            delay = min(jittered(interval, cfg.poll_jitter, self.rng), remaining)
            intervals.append(delay)
            logger.debug(
                "merge.polling.waiting",
                run_id=run.id,
                poll=polls,
                delay=round(delay, 2),
            )
            await wait(self.clock, delay, token)
            interval = next_interval(interval, cfg.poll_backoff_factor, cfg.poll_max_interval)

        elapsed = self.clock.monotonic() - started
        reason = (
            f"CI polling timed out after {elapsed:.0f}s ({polls} polls) "
            f"waiting for {revision.short_sha}"
        )
        logger.warning("merge.polling.timed_out", run_id=run.id, sha=revision.sha, polls=polls)
        result = self._result(PollStatus.TIMED_OUT, latest, started, polls, intervals)
        result.reason = reason
        return result

    def _result(
        self,
        status: PollStatus,
        run: Optional[PipelineRun],
        started: float,
        polls: int,
        intervals: List[float],
    ) -> PollResult:
        jobs = list(run.jobs) if run is not None else []
        failed_job = first_failure(jobs) if status == PollStatus.FAILED else None
        result = PollResult(
            status=status,
            run=run,
            jobs=jobs,
            first_failure=failed_job,
            elapsed_seconds=self.clock.monotonic() - started,
            polls=polls,
            intervals=list(intervals),
        )
        if status != PollStatus.TIMED_OUT:
            logger.info(
                "merge.polling.finished",
                status=status.value,
                run_id=run.id if run else None,
                polls=polls,
                failing_job=failed_job.name if failed_job else None,
            )
        return result
