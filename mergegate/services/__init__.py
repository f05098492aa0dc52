"""Workspace, locking and persistence services used by the merge executor."""

from .branch_lock import BranchLockManager, LockUnavailable
from .context_store import (
    ContextNotFound,
    ContextStore,
    InMemoryContextStore,
    JsonFileContextStore,
)
from .git_service import GitCommandError, GitService
from .merge_attempt_manager import MergeAttemptManager

__all__ = [
    "BranchLockManager",
    "LockUnavailable",
    "ContextNotFound",
    "ContextStore",
    "InMemoryContextStore",
    "JsonFileContextStore",
    "GitCommandError",
    "GitService",
    "MergeAttemptManager",
]
