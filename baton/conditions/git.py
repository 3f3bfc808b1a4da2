"""Version-control access used by ``GIT_STATUS`` conditions."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from ..errors import ExternalToolError

logger = logging.getLogger(__name__)


class GitStatus(BaseModel):
    is_clean: bool
    current_branch: str
    has_uncommitted_changes: bool
    has_untracked_files: bool
    status_details: list[str] = Field(default_factory=list)
    untracked_files: list[str] = Field(default_factory=list)


class GitClient(Protocol):
    """Minimal view of a working copy."""

    async def get_branch(self) -> str:
        """Name of the checked-out branch, ``HEAD`` when detached."""

    async def get_status(self) -> list[str]:
        """Porcelain status lines, empty when the tree is clean."""

    async def get_untracked_files(self) -> list[str]:
        """Untracked paths that are not ignored."""


async def read_git_status(client: GitClient) -> GitStatus:
    branch = await client.get_branch()
    status_lines = await client.get_status()
    untracked = await client.get_untracked_files()
    return GitStatus(
        is_clean=not status_lines,
        current_branch=branch,
        has_uncommitted_changes=any(not line.startswith("??") for line in status_lines),
        has_untracked_files=bool(untracked),
        status_details=status_lines,
        untracked_files=untracked,
    )


class SubprocessGitClient(GitClient):
    """Run the ``git`` binary in ``cwd`` with a per-command timeout."""

    def __init__(self, cwd: str | Path | None = None, timeout: float = 10.0) -> None:
        self.cwd = str(cwd) if cwd is not None else None
        self.timeout = timeout

    async def _run(self, *args: str, allowed_codes: tuple[int, ...] = (0,)) -> tuple[int, str]:
        command = ["git", *args]
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExternalToolError(
                f"Unable to run git: {exc}",
                service="git",
                operation=" ".join(args),
            ) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ExternalToolError(
                f"git {' '.join(args)} timed out after {self.timeout}s",
                service="git",
                operation=" ".join(args),
                context={"cwd": self.cwd},
            ) from exc

        if proc.returncode not in allowed_codes:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise ExternalToolError(
                f"git {' '.join(args)} failed: {message or f'exit code {proc.returncode}'}",
                service="git",
                operation=" ".join(args),
                context={"cwd": self.cwd, "returncode": proc.returncode},
            )
        return proc.returncode, stdout.decode("utf-8", errors="replace")

    async def get_branch(self) -> str:
        # symbolic-ref also resolves unborn branches; exit 1 means detached HEAD
        code, out = await self._run("symbolic-ref", "--short", "-q", "HEAD", allowed_codes=(0, 1))
        if code == 1:
            return "HEAD"
        return out.strip()

    async def get_status(self) -> list[str]:
        _, out = await self._run("status", "--porcelain")
        return [line for line in out.splitlines() if line.strip()]

    async def get_untracked_files(self) -> list[str]:
        _, out = await self._run("ls-files", "--others", "--exclude-standard")
        return [line for line in out.splitlines() if line.strip()]


class StaticGitClient(GitClient):
    """Fixed answers, for tests and dry runs."""

    def __init__(
        self,
        branch: str = "main",
        status: Optional[list[str]] = None,
        untracked: Optional[list[str]] = None,
        error: Optional[ExternalToolError] = None,
    ) -> None:
        self.branch = branch
        self.status = list(status or [])
        self.untracked = list(untracked or [])
        self.error = error

    async def get_branch(self) -> str:
        if self.error:
            raise self.error
        return self.branch

    async def get_status(self) -> list[str]:
        if self.error:
            raise self.error
        return list(self.status)

    async def get_untracked_files(self) -> list[str]:
        if self.error:
            raise self.error
        return list(self.untracked)
