"""
Async git workspace

Local working-copy operations the merge executor needs: resolving the branch
head, committing and pushing fixes, the disposable trial merge used for the
pre-merge test run, and post-merge cleanup.
"""

import asyncio
import shutil
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, List, Optional, Sequence, Tuple, Union

import structlog

from mergegate.core.config import Settings, settings as default_settings
from mergegate.execution_engine.backends import DryRunResult

logger = structlog.get_logger(__name__)

_OUTPUT_LIMIT = 8000


class GitCommandError(RuntimeError):
    def __init__(self, args: Sequence[str], returncode: Optional[int], stderr: str):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"git {' '.join(self.command)} failed ({returncode}): {self.stderr}"
        )


class GitService:
    """
    One working copy shared by every merge attempt of a process.

    Callers that change the working tree (checkout, fixer runs, commits,
    cleanup) do so inside ``exclusive()``; trial merges use their own
    disposable worktrees and need no lock.
    """

    def __init__(
        self,
        repo_path: Union[str, Path],
        remote: str = "origin",
        settings: Optional[Settings] = None,
    ):
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.settings = settings or default_settings
        self._tree_lock = asyncio.Lock()

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        if self._tree_lock.locked():
            logger.info("git.workspace_busy", repo=str(self.repo_path))
        async with self._tree_lock:
            yield

    async def _run(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        check: bool = True,
    ) -> Tuple[int, str, str]:
        """Run a git command and return (exit code, stdout, stderr)."""
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd or self.repo_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.settings.git_command_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitCommandError(
                args, None, f"timed out after {self.settings.git_command_timeout:.0f}s"
            ) from None
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")
        if check and process.returncode != 0:
            logger.error("git.command_failed", args=list(args), stderr=err.strip()[:500])
            raise GitCommandError(args, process.returncode, err)
        return process.returncode, out, err

    async def rev_parse(self, ref: str) -> str:
        _, out, _ = await self._run(["rev-parse", "--verify", f"{ref}^{{commit}}"])
        return out.strip()

    async def resolve_branch_head(self, branch: str) -> str:
        return await self.rev_parse(f"refs/heads/{branch}")

    async def current_branch(self) -> str:
        _, out, _ = await self._run(["branch", "--show-current"])
        return out.strip()

    async def has_remote(self) -> bool:
        code, _, _ = await self._run(["remote", "get-url", self.remote], check=False)
        return code == 0

    async def changed_files(self) -> List[str]:
        """Paths with staged, unstaged or untracked changes."""
        _, out, _ = await self._run(["status", "--porcelain", "--untracked-files=all"])
        files: List[str] = []
        for line in out.splitlines():
            if len(line) < 4:
                continue
            path = line[3:]
            if " -> " in path:
                path = path.split(" -> ", 1)[1]
            path = path.strip().strip('"')
            if path and path not in files:
                files.append(path)
        return files

    async def discard_changes(self) -> None:
        await self._run(["reset", "--hard", "HEAD"])
        await self._run(["clean", "-fd"])

    async def commit_and_push(self, files: List[str], message: str, branch: str) -> str:
        """Commit the given files on the branch, push it, and return the new head SHA."""
        if await self.current_branch() != branch:
            await self.checkout(branch)
        await self._run(["add", "--all", "--", *files])
        await self._run(["commit", "-m", message])
        sha = await self.rev_parse("HEAD")
        if await self.has_remote():
            await self._run(["push", self.remote, f"HEAD:refs/heads/{branch}"])
        logger.info("git.fix_committed", branch=branch, sha=sha, files=len(files))
        return sha

    async def _merge_base_ref(self, branch: str) -> str:
        """Prefer the remote-tracking tip of a branch when there is one."""
        if await self.has_remote():
            code, _, err = await self._run(["fetch", self.remote, branch], check=False)
            if code != 0:
                logger.warning("git.fetch_failed", branch=branch, stderr=err.strip()[:300])
            code, _, _ = await self._run(
                ["rev-parse", "--verify", "--quiet", f"refs/remotes/{self.remote}/{branch}"],
                check=False,
            )
            if code == 0:
                return f"{self.remote}/{branch}"
        return branch

    async def dry_run_merge(
        self, source_ref: str, target_branch: str, test_command: Optional[str]
    ) -> DryRunResult:
        """
        Trial-merge ``source_ref`` (the verified SHA) into the target tip in a
        disposable worktree and run the test command there. The trial is
        always thrown away.
        """
        target_ref = await self._merge_base_ref(target_branch)
        scratch = Path(tempfile.mkdtemp(prefix="mergegate-dryrun-"))
        worktree = scratch / "worktree"
        added = False
        try:
            await self._run(["worktree", "add", "--detach", str(worktree), target_ref])
            added = True

            code, out, err = await self._run(
                ["merge", "--no-commit", "--no-ff", source_ref], cwd=worktree, check=False
            )
            if code != 0:
                _, conflicted, _ = await self._run(
                    ["diff", "--name-only", "--diff-filter=U"], cwd=worktree, check=False
                )
                files = [f for f in conflicted.splitlines() if f.strip()]
                logger.warning(
                    "git.dry_run_conflict",
                    source=source_ref,
                    target=target_ref,
                    files=files,
                )
                return DryRunResult(
                    success=False,
                    conflict=bool(files),
                    conflicting_files=files,
                    output=(out + err)[-_OUTPUT_LIMIT:],
                )

            if not test_command:
                return DryRunResult(success=True)

            exit_code, output = await self._run_tests(test_command, worktree)
            logger.info(
                "git.dry_run_tests_finished",
                source=source_ref,
                target=target_ref,
                exit_code=exit_code,
            )
            return DryRunResult(
                success=exit_code == 0,
                test_exit_code=exit_code,
                output=output[-_OUTPUT_LIMIT:],
            )
        finally:
            if added:
                await self._run(["merge", "--abort"], cwd=worktree, check=False)
                await self._run(["worktree", "remove", "--force", str(worktree)], check=False)
            shutil.rmtree(scratch, ignore_errors=True)
            await self._run(["worktree", "prune"], check=False)

    async def _run_tests(self, command: str, cwd: Path) -> Tuple[int, str]:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return process.returncode or 0, stdout.decode("utf-8", errors="replace")

    async def checkout(self, branch: str) -> None:
        await self._run(["checkout", branch])

    async def pull(self, branch: str) -> None:
        if await self.has_remote():
            await self._run(["pull", "--ff-only", self.remote, branch])

    async def delete_local_branch(self, branch: str) -> None:
        await self._run(["branch", "-D", branch])
