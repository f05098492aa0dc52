"""
Commit Tracker

Binds a merge attempt to one immutable revision and discovers the CI run
that revision triggered. Runs for any other SHA are ignored: after a
force-push or a quick follow-up commit the newest run on a branch is not
necessarily ours.
"""

from typing import Optional

import structlog

from mergegate.core.config import Settings, settings as default_settings

from .backends import CIBackend
from .errors import CIBackendUnavailable, NoPipelineTriggered, RevisionUnavailable
from .merge_types import PipelineRun, Revision
from .timing import CancellationToken, Clock, SystemClock, wait

logger = structlog.get_logger(__name__)


class CommitTracker:
    def __init__(
        self,
        backend: CIBackend,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
    ):
        self.backend = backend
        self.clock = clock or SystemClock()
        self.settings = settings or default_settings

    async def capture(self, revision_sha: str, branch: str) -> Revision:
        """Record the pushed SHA after confirming the remote knows it."""
        try:
            resolved = await self.backend.get_commit(revision_sha)
        except Exception as e:
            raise RevisionUnavailable(
                f"revision {revision_sha} could not be resolved: {e}",
                {"sha": revision_sha, "branch": branch},
            ) from e

        if not resolved:
            raise RevisionUnavailable(
                f"revision {revision_sha} not found on remote",
                {"sha": revision_sha, "branch": branch},
            )

        revision = Revision(sha=resolved, branch=branch)
        logger.info("merge.revision_captured", branch=branch, sha=revision.sha)
        return revision

    async def find_pipeline(
        self,
        revision: Revision,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> PipelineRun:
        """
        Wait for the CI run triggered by exactly this revision.

        Args:
            revision: Pinned revision
            timeout: Seconds to wait for a run to appear (default 60)
            interval: Seconds between "list runs" calls (default 2)
            token: Optional cancellation token

        Returns:
            The matching run with job-level detail

        Raises:
            NoPipelineTriggered: no matching run within the timeout
        """
        timeout = self.settings.pipeline_discovery_timeout if timeout is None else timeout
        interval = (
            self.settings.pipeline_discovery_interval if interval is None else interval
        )
        started = self.clock.monotonic()
        lookups = 0

        while True:
            if token is not None:
                token.raise_if_cancelled()

            lookups += 1
            try:
                run = await self._lookup(revision)
            except CIBackendUnavailable as e:
                run = None
                logger.warning("merge.pipeline_lookup_failed", sha=revision.sha, error=e.reason)
            if run is not None:
                logger.info(
                    "merge.pipeline_found",
                    run_id=run.id,
                    sha=revision.sha,
                    lookups=lookups,
                )
                return run

            elapsed = self.clock.monotonic() - started
            remaining = timeout - elapsed
            if remaining <= 0:
                break
            await wait(self.clock, min(interval, remaining), token)

        logger.warning(
            "merge.no_pipeline",
            sha=revision.sha,
            branch=revision.branch,
            timeout=timeout,
        )
        raise NoPipelineTriggered(
            f"no CI pipeline triggered for {revision.short_sha} on "
            f"{revision.branch} within {timeout:.0f}s",
            {"sha": revision.sha, "branch": revision.branch, "lookups": lookups},
        )

    async def _lookup(self, revision: Revision) -> Optional[PipelineRun]:
        for summary in await self.backend.list_runs(revision.branch):
            if summary.sha != revision.sha:
                logger.debug(
                    "merge.pipeline_ignored",
                    run_id=summary.id,
                    run_sha=summary.sha,
                    expected_sha=revision.sha,
                )
                continue
            run = await self.backend.get_run(summary.id)
            if run.sha == revision.sha:
                return run
        return None
