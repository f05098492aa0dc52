"""
Advisory per-branch merge lock

Serializes merge attempts against the same repository branch. With a Redis
URL configured the lock is shared across processes (SET NX PX, renewed while
held and released only by its owner token); otherwise it is an in-process
owner-token table.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional
from uuid import uuid4

import redis.asyncio as redis
import structlog

from mergegate.core.config import Settings, settings as default_settings
from mergegate.execution_engine.errors import BranchLocked, MergeGateError

logger = structlog.get_logger(__name__)

_RELEASE_LOCK_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
else
  return 0
end
"""

_RENEW_LOCK_LUA = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('PEXPIRE', KEYS[1], ARGV[2])
else
  return 0
end
"""


class LockUnavailable(MergeGateError):
    """Redis is configured but could not be reached; the lock fails closed."""

    default_reason = "branch lock backend unavailable"


class BranchLockManager:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[redis.Redis] = None,
        namespace: str = "mergegate",
    ):
        self.settings = settings or default_settings
        self.namespace = namespace
        self.ttl_seconds = self.settings.lock_ttl_seconds
        # Renewed three times per TTL while held
        self.renew_interval = self.ttl_seconds / 3
        self._redis = client
        if self._redis is None and self.settings.redis_url:
            self._redis = redis.from_url(
                self.settings.redis_url, encoding="utf-8", decode_responses=True
            )
        self._local_owners: Dict[str, str] = {}
        self._local_guard = asyncio.Lock()

    @property
    def _ttl_ms(self) -> int:
        return max(1, int(self.ttl_seconds * 1000))

    @property
    def distributed(self) -> bool:
        return self._redis is not None

    def lock_key(self, repository: str, branch: str) -> str:
        return f"{self.namespace}:{repository}:{branch}:merge_lock"

    async def acquire(self, repository: str, branch: str, owner_token: str) -> bool:
        key = self.lock_key(repository, branch)
        if self._redis is None:
            async with self._local_guard:
                if key in self._local_owners:
                    return False
                self._local_owners[key] = owner_token
                return True
        try:
            acquired = await self._redis.set(
                key, owner_token, px=self._ttl_ms, nx=True
            )
        except redis.RedisError as exc:
            raise LockUnavailable(
                f"could not acquire merge lock for {repository}:{branch}: {exc}"
            ) from exc
        return bool(acquired)

    async def release(self, repository: str, branch: str, owner_token: str) -> None:
        key = self.lock_key(repository, branch)
        if self._redis is None:
            async with self._local_guard:
                if self._local_owners.get(key) == owner_token:
                    del self._local_owners[key]
            return
        try:
            await self._redis.eval(_RELEASE_LOCK_LUA, 1, key, owner_token)
        except redis.RedisError as exc:
            # The TTL frees the lock eventually; the merge outcome stands
            logger.error(
                "merge.lock.release_failed",
                repository=repository,
                branch=branch,
                error=str(exc),
            )

    async def renew(self, repository: str, branch: str, owner_token: str) -> bool:
        """Extend the lock TTL; False once the lock is no longer ours."""
        if self._redis is None:
            return self._local_owners.get(self.lock_key(repository, branch)) == owner_token
        key = self.lock_key(repository, branch)
        renewed = await self._redis.eval(_RENEW_LOCK_LUA, 1, key, owner_token, self._ttl_ms)
        return bool(renewed)

    async def _keep_alive(self, repository: str, branch: str, owner_token: str) -> None:
        while True:
            await asyncio.sleep(self.renew_interval)
            try:
                still_ours = await self.renew(repository, branch, owner_token)
            except redis.RedisError as exc:
                logger.warning(
                    "merge.lock.renew_failed",
                    repository=repository,
                    branch=branch,
                    error=str(exc),
                )
                continue
            if not still_ours:
                logger.error("merge.lock.lost", repository=repository, branch=branch)
                return

    async def is_locked(self, repository: str, branch: str) -> bool:
        key = self.lock_key(repository, branch)
        if self._redis is None:
            return key in self._local_owners
        try:
            return bool(await self._redis.get(key))
        except redis.RedisError as exc:
            raise LockUnavailable(
                f"could not read merge lock for {repository}:{branch}: {exc}"
            ) from exc

    @asynccontextmanager
    async def hold(self, repository: str, branch: str) -> AsyncIterator[str]:
        """Hold the branch lock for the duration of the block, or raise BranchLocked."""
        owner_token = uuid4().hex
        if not await self.acquire(repository, branch, owner_token):
            logger.warning("merge.lock.busy", repository=repository, branch=branch)
            raise BranchLocked(
                f"merge already in progress for {repository}:{branch}",
                {"repository": repository, "branch": branch},
            )
        logger.debug("merge.lock.acquired", repository=repository, branch=branch)
        keep_alive = None
        if self.distributed:
            keep_alive = asyncio.create_task(
                self._keep_alive(repository, branch, owner_token),
                name=f"merge-lock:{repository}:{branch}",
            )
        try:
            yield owner_token
        finally:
            if keep_alive is not None:
                keep_alive.cancel()
                await asyncio.gather(keep_alive, return_exceptions=True)
            await self.release(repository, branch, owner_token)
