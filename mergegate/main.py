"""
MergeGate application wiring

build_executor() assembles a production MergeExecutor (GitHub backend, local
git workspace, subprocess fix provider); create_app() exposes merge attempts
over HTTP.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from mergegate import __version__
from mergegate.api.merge_api import router as merge_router
from mergegate.core.config import Settings, settings as default_settings
from mergegate.core.logging import setup_logging
from mergegate.execution_engine.errors import WorkspaceMismatch
from mergegate.execution_engine.fix_strategies import SubprocessFixProvider
from mergegate.execution_engine.merge_executor import MergeExecutor
from mergegate.integrations.github_actions_client import GitHubActionsClient
from mergegate.integrations.github_ci_backend import GitHubCIBackend
from mergegate.services.branch_lock import BranchLockManager
from mergegate.services.context_store import (
    ContextStore,
    InMemoryContextStore,
    JsonFileContextStore,
)
from mergegate.services.git_service import GitService
from mergegate.services.merge_attempt_manager import MergeAttemptManager

logger = structlog.get_logger(__name__)


def build_store(settings: Settings) -> ContextStore:
    if settings.context_store_dir:
        return JsonFileContextStore(settings.context_store_dir)
    return InMemoryContextStore()


def build_client(settings: Settings) -> GitHubActionsClient:
    return GitHubActionsClient(
        settings.github_token,
        timeout=settings.github_timeout_seconds,
        base_url=settings.github_api_url,
    )


def check_repository(repository: str, settings: Settings) -> None:
    """Refuse repositories other than the one checked out at workspace_root."""
    served = settings.repository
    if served and repository.lower() != served.lower():
        raise WorkspaceMismatch(
            f"repository {repository} is not served by this workspace ({served})",
            {"repository": repository, "workspace_repository": served},
        )


def build_executor(
    repository: str,
    client: GitHubActionsClient,
    settings: Settings,
    store: Optional[ContextStore] = None,
    lock_manager: Optional[BranchLockManager] = None,
    workspace: Optional[GitService] = None,
    fix_provider: Optional[SubprocessFixProvider] = None,
) -> MergeExecutor:
    """
    Production executor; ``client`` must already be entered.

    Pass the same ``workspace`` to every executor of a process so attempts on
    different branches serialize their working-tree changes.
    """
    check_repository(repository, settings)
    return MergeExecutor(
        repository,
        GitHubCIBackend(client, repository, settings),
        workspace or GitService(settings.workspace_root, settings=settings),
        fix_provider or SubprocessFixProvider(settings.workspace_root, settings),
        settings=settings,
        store=store,
        lock_manager=lock_manager,
    )


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[MergeAttemptManager] = None,
) -> FastAPI:
    """
    Create the HTTP application.

    Args:
        settings: Configuration (defaults to the environment)
        manager: Pre-built attempt manager; when omitted one backed by GitHub
            is created for the lifetime of the app
    """
    cfg = settings or default_settings
    setup_logging(cfg.log_level, cfg.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manager is not None:
            app.state.merge_manager = manager
            yield
            return

        locks = BranchLockManager(cfg)
        workspace = GitService(cfg.workspace_root, settings=cfg)
        fix_provider = SubprocessFixProvider(cfg.workspace_root, cfg)
        if not cfg.repository:
            logger.warning("app.workspace_repository_unset", workspace=cfg.workspace_root)
        async with build_client(cfg) as client:
            app.state.merge_manager = MergeAttemptManager(
                lambda repository, store: build_executor(
                    repository,
                    client,
                    cfg,
                    store=store,
                    lock_manager=locks,
                    workspace=workspace,
                    fix_provider=fix_provider,
                ),
                store=build_store(cfg),
            )
            logger.info("app.started", workspace=cfg.workspace_root, version=__version__)
            yield
        logger.info("app.stopped")

    app = FastAPI(title="MergeGate - CI-gated merges", version=__version__, lifespan=lifespan)
    app.include_router(merge_router)

    @app.get("/health")
    def health():
        return {"status": "ok", "service": "mergegate", "version": __version__}

    return app
