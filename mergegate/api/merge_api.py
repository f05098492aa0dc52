"""
Merge attempt API: start a CI-gated merge, inspect it, cancel it.
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from mergegate.execution_engine.errors import BranchLocked, WorkspaceMismatch
from mergegate.execution_engine.merge_types import MergeStrategy
from mergegate.services.context_store import ContextNotFound
from mergegate.services.merge_attempt_manager import MergeAttemptManager

router = APIRouter(prefix="/api/merge", tags=["merge"])
logger = structlog.get_logger(__name__)


class MergeStartRequest(BaseModel):
    repository: str = Field(..., description="owner/repo", pattern=r"^[\w.-]+/[\w.-]+$")
    branch: str = Field(..., min_length=1, description="Source branch to merge")
    target_branch: Optional[str] = Field(None, description="Defaults to the configured target")
    strategy: Optional[MergeStrategy] = Field(None, description="squash, merge or rebase")


class MergeCancelRequest(BaseModel):
    reason: str = Field("cancelled by user", min_length=1)


def get_attempt_manager(request: Request) -> MergeAttemptManager:
    manager = getattr(request.app.state, "merge_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Merge service not initialized")
    return manager


@router.post("", status_code=202)
async def start_merge(
    req: MergeStartRequest,
    manager: MergeAttemptManager = Depends(get_attempt_manager),
) -> Dict[str, Any]:
    """Start a merge attempt in the background and return its id."""
    try:
        attempt_id = await manager.start(
            req.repository,
            req.branch,
            target_branch=req.target_branch,
            strategy=req.strategy,
        )
    except BranchLocked as e:
        raise HTTPException(status_code=409, detail=e.reason)
    except WorkspaceMismatch as e:
        raise HTTPException(status_code=422, detail=e.reason)
    return {"attempt_id": attempt_id, "status": "started"}


@router.get("/{attempt_id}")
async def get_merge(
    attempt_id: str,
    manager: MergeAttemptManager = Depends(get_attempt_manager),
) -> Dict[str, Any]:
    try:
        context = manager.get(attempt_id)
    except ContextNotFound:
        raise HTTPException(status_code=404, detail=f"Unknown merge attempt {attempt_id}")
    payload = context.model_dump(mode="json")
    payload["running"] = manager.is_running(attempt_id)
    return payload


@router.post("/{attempt_id}/cancel")
async def cancel_merge(
    attempt_id: str,
    req: Optional[MergeCancelRequest] = None,
    manager: MergeAttemptManager = Depends(get_attempt_manager),
) -> Dict[str, Any]:
    reason = req.reason if req else "cancelled by user"
    try:
        cancelled = manager.cancel(attempt_id, reason)
    except ContextNotFound:
        raise HTTPException(status_code=404, detail=f"Unknown merge attempt {attempt_id}")
    if not cancelled:
        logger.info("merge.cancel_ignored", attempt_id=attempt_id)
    return {"attempt_id": attempt_id, "cancelled": cancelled}
