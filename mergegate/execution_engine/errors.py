"""
Merge pipeline error taxonomy

Every fatal condition of a merge attempt is a MergeGateError carrying a
human-readable reason and a diagnostics dict. The merge executor turns any
of them into an aborted MergeDecision; nothing below the executor swallows
them.
"""

from typing import Any, Dict, Optional


class MergeGateError(Exception):
    """Base class for fatal merge-attempt conditions."""

    default_reason = "merge aborted"

    def __init__(
        self,
        reason: Optional[str] = None,
        diagnostics: Optional[Dict[str, Any]] = None,
    ):
        self.reason = reason or self.default_reason
        self.diagnostics: Dict[str, Any] = dict(diagnostics or {})
        super().__init__(self.reason)


class RevisionUnavailable(MergeGateError):
    default_reason = "revision could not be resolved against the remote"


class NoPipelineTriggered(MergeGateError):
    default_reason = "no CI pipeline was triggered for the revision"


class PollingTimedOut(MergeGateError):
    default_reason = "CI polling timed out"


class RequiresHumanIntervention(MergeGateError):
    default_reason = "failure requires human intervention"


class CircularFixDetected(MergeGateError):
    default_reason = "circular fix detected"


class FixApplicationFailed(MergeGateError):
    default_reason = "fix application failed"


class MaxAttemptsExceeded(MergeGateError):
    default_reason = "auto-fix attempts exhausted"


class VerificationFailed(MergeGateError):
    default_reason = "pipeline success could not be verified"


class PreMergeTestFailed(MergeGateError):
    default_reason = "pre-merge test failed"


class MergeConflict(MergeGateError):
    default_reason = "merge conflict"


class MergeRequestNotFound(MergeGateError):
    default_reason = "no open merge request for branch"


class CIBackendUnavailable(MergeGateError):
    """A read from the CI host failed in a way that is worth retrying."""

    default_reason = "CI backend temporarily unavailable"


class MergeCancelled(MergeGateError):
    default_reason = "merge cancelled"


class BranchLocked(MergeGateError):
    default_reason = "merge already in progress for branch"


class WorkspaceMismatch(MergeGateError):
    default_reason = "repository is not served by the configured workspace"


class OverrideNotAuthorized(MergeGateError):
    default_reason = "force-merge override not authorized"


class InvalidTransitionError(ValueError):
    pass
