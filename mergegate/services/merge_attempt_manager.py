"""
Background merge attempts

Runs MergeExecutor.execute as asyncio tasks so the HTTP API can return an
attempt id immediately and report progress from the context store.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import structlog

from mergegate.execution_engine.errors import BranchLocked
from mergegate.execution_engine.merge_executor import MergeExecutor
from mergegate.execution_engine.merge_types import (
    MergeAttemptContext,
    MergeDecision,
    MergeStrategy,
)
from mergegate.execution_engine.timing import CancellationToken

from .context_store import ContextNotFound, ContextStore, InMemoryContextStore

logger = structlog.get_logger(__name__)

# repository ("owner/name") -> executor writing to the manager's store
ExecutorFactory = Callable[[str, ContextStore], MergeExecutor]


@dataclass
class RunningAttempt:
    attempt_id: str
    task: "asyncio.Task[MergeDecision]"
    token: CancellationToken


class MergeAttemptManager:
    def __init__(
        self,
        executor_factory: ExecutorFactory,
        store: Optional[ContextStore] = None,
    ):
        self.executor_factory = executor_factory
        self.store: ContextStore = store or InMemoryContextStore()
        self._running: Dict[str, RunningAttempt] = {}

    async def start(
        self,
        repository: str,
        branch: str,
        target_branch: Optional[str] = None,
        strategy: Optional[MergeStrategy] = None,
    ) -> str:
        executor = self.executor_factory(repository, self.store)
        if await executor.locks.is_locked(repository, branch):
            # Fail fast; the executor would abort on the lock anyway
            raise BranchLocked(
                f"merge already in progress for {repository}:{branch}",
                {"repository": repository, "branch": branch},
            )
        context = executor.new_context(branch, target_branch, strategy)
        self.store.save(context)
        token = CancellationToken()
        task = asyncio.create_task(
            executor.execute(
                branch,
                target_branch=context.target_branch,
                strategy=context.strategy,
                token=token,
                context=context,
            ),
            name=f"merge:{context.attempt_id}",
        )
        self._running[context.attempt_id] = RunningAttempt(context.attempt_id, task, token)
        task.add_done_callback(lambda _: self._finished(context.attempt_id))
        logger.info(
            "merge.attempt_started",
            attempt_id=context.attempt_id,
            repository=repository,
            branch=branch,
        )
        return context.attempt_id

    def get(self, attempt_id: str) -> MergeAttemptContext:
        """Latest saved context; raises ContextNotFound."""
        return self.store.load(attempt_id)

    def is_running(self, attempt_id: str) -> bool:
        running = self._running.get(attempt_id)
        return running is not None and not running.task.done()

    def cancel(self, attempt_id: str, reason: str = "cancelled by user") -> bool:
        """Request cooperative cancellation; False if the attempt already finished."""
        running = self._running.get(attempt_id)
        if running is None:
            # Raises ContextNotFound for unknown ids
            self.store.load(attempt_id)
            return False
        if running.task.done():
            return False
        running.token.cancel(reason)
        logger.info("merge.cancel_requested", attempt_id=attempt_id, reason=reason)
        return True

    async def wait(self, attempt_id: str) -> MergeDecision:
        running = self._running.get(attempt_id)
        if running is None:
            context = self.store.load(attempt_id)
            if context.decision is None:
                raise ContextNotFound(attempt_id)
            return context.decision
        return await running.task

    def _finished(self, attempt_id: str) -> None:
        """Forget a finished task; its decision lives on in the store."""
        running = self._running.pop(attempt_id, None)
        if running is None or running.task.cancelled():
            return
        error = running.task.exception()
        if error is not None:
            logger.error("merge.attempt_crashed", attempt_id=attempt_id, error=str(error))
