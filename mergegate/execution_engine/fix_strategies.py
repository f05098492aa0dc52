"""
Fix strategy providers

The auto-fix loop never edits code itself. It hands a classified failure to
a FixStrategyProvider and only looks at the outcome: did the provider
succeed, and which files did it change.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Tuple, Union

import structlog

from mergegate.core.config import Settings, settings as default_settings

from .backends import VCSWorkspace
from .merge_types import FailureCategory, FailureKind, Job

logger = structlog.get_logger(__name__)

STRATEGY_NAMES = {
    FailureKind.LINT: "apply_linter_autofix",
    FailureKind.TYPE: "apply_type_checker_suggestions",
    FailureKind.TEST: "update_test_expectations",
    FailureKind.BUILD: "fix_import_statements",
    FailureKind.DEPENDENCY: "resolve_dependencies",
    FailureKind.INFRASTRUCTURE: "rerun_failed_jobs",
}

# Strategies that change nothing locally and ask CI to run the same revision again
RERUN_ONLY_KINDS = {FailureKind.INFRASTRUCTURE}

_OUTPUT_LIMIT = 4000


def strategy_for(kind: FailureKind) -> str:
    return STRATEGY_NAMES.get(kind, "manual_intervention")


@dataclass
class FixContext:
    workspace: VCSWorkspace
    branch: str
    attempt_number: int
    job: Optional[Job] = None
    category: Optional[FailureCategory] = None


@dataclass
class FixResult:
    success: bool
    strategy: str
    files_changed: List[str] = field(default_factory=list)
    output: str = ""
    rerun_only: bool = False


class FixStrategyProvider(Protocol):
    async def apply_fix(self, category: FailureCategory, context: FixContext) -> FixResult: ...


class SubprocessFixProvider:
    """
    Runs the shell commands configured for a failure kind in the workspace.

    Commands come from ``Settings.fix_commands`` (e.g. ``{"lint": ["ruff check
    --fix ."]}``). Changed files are read back from the workspace afterwards.
    """

    def __init__(
        self,
        workspace_root: Union[str, Path],
        settings: Optional[Settings] = None,
    ):
        self.workspace_root = Path(workspace_root)
        self.settings = settings or default_settings

    async def apply_fix(self, category: FailureCategory, context: FixContext) -> FixResult:
        strategy = strategy_for(category.kind)

        if category.kind in RERUN_ONLY_KINDS:
            return FixResult(success=True, strategy=strategy, rerun_only=True)

        commands = self.settings.fix_commands.get(category.kind.value) or []
        if not commands:
            return FixResult(
                success=False,
                strategy=strategy,
                output=f"no fix command configured for {category.kind.value} failures",
            )

        outputs: List[str] = []
        all_ok = True
        for command in commands:
            code, output = await self._run(command)
            outputs.append(f"$ {command}\n{output}".rstrip())
            logger.info(
                "merge.fix.command_finished",
                command=command,
                exit_code=code,
                attempt=context.attempt_number,
            )
            if code != 0:
                all_ok = False

        files_changed = await context.workspace.changed_files()
        combined = "\n".join(outputs)[-_OUTPUT_LIMIT:]
        return FixResult(
            # Linters exit non-zero when unfixable issues remain but may still have fixed some
            success=all_ok or bool(files_changed),
            strategy=strategy,
            files_changed=files_changed,
            output=combined,
        )

    async def _run(self, command: str) -> Tuple[int, str]:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.workspace_root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            # The loop's fix timeout cancels us; do not leave the tool running
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return process.returncode or 0, stdout.decode("utf-8", errors="replace")
