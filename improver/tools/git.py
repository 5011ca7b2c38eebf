"""Local git operations through the ``git`` executable."""

import asyncio
import os
from collections.abc import Sequence
from pathlib import Path

import structlog

from improver.errors import GitError
from improver.log import redact

logger = structlog.get_logger()

DEFAULT_AUTHOR_NAME = "Coverage Improver"
DEFAULT_AUTHOR_EMAIL = "coverage-improver@users.noreply.github.com"


class LocalGit:
    """Async wrapper around ``git`` commands.

    Command output can echo remote URLs, so every error message is redacted
    before it is raised or logged.
    """

    def __init__(
        self,
        git_bin: str = "git",
        author_name: str = DEFAULT_AUTHOR_NAME,
        author_email: str = DEFAULT_AUTHOR_EMAIL,
        timeout: float = 300,
    ) -> None:
        self.git_bin = git_bin
        self.author_name = author_name
        self.author_email = author_email
        self.timeout = timeout

    async def _run_git(self, args: Sequence[str], cwd: Path | None = None) -> str:
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_bin,
                *args,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GitError(f"Unable to run git: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise GitError(f"git {args[0]} timed out after {self.timeout}s") from None

        out = stdout.decode("utf-8", errors="replace")
        if process.returncode != 0:
            err = stderr.decode("utf-8", errors="replace")
            message = err.strip() or out.strip() or "unknown git error"
            raise GitError(redact(f"git {args[0]} failed: {message}"))
        return out

    async def clone(self, url: str, dest: Path) -> None:
        logger.info("Cloning repository", dest=str(dest))
        await self._run_git(["clone", "--quiet", url, str(dest)])
        logger.info("Repository cloned successfully", dest=str(dest))

    async def checkout_new_branch(self, repo_dir: Path, name: str) -> None:
        logger.info("Creating branch", branch=name)
        await self._run_git(["checkout", "-b", name], cwd=repo_dir)

    async def has_changes(self, repo_dir: Path) -> bool:
        status = await self._run_git(["status", "--porcelain"], cwd=repo_dir)
        return bool(status.strip())

    async def commit_all(self, repo_dir: Path, message: str) -> None:
        """Stage everything and commit; a clean tree is an error."""
        await self._run_git(["add", "--all"], cwd=repo_dir)
        if not await self.has_changes(repo_dir):
            raise GitError("Nothing to commit")
        await self._run_git(
            [
                "-c",
                f"user.name={self.author_name}",
                "-c",
                f"user.email={self.author_email}",
                "commit",
                "--quiet",
                "-m",
                message,
            ],
            cwd=repo_dir,
        )
        logger.info("Changes committed successfully")

    async def push(self, repo_dir: Path, branch: str) -> None:
        logger.info("Pushing branch", branch=branch)
        await self._run_git(["push", "--quiet", "--set-upstream", "origin", branch], cwd=repo_dir)
        logger.info("Branch pushed successfully", branch=branch)
