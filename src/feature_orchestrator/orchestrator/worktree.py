"""Git worktree discovery and creation for per-feature isolation."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from feature_orchestrator.orchestrator.errors import InvalidBranchNameError, IsolationToolError

logger = logging.getLogger(__name__)

WORKTREES_DIR_NAME = ".worktrees"

_SAFE_BRANCH_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")
_INVALID_REF_CHARS = re.compile(r"[\s~^:\\?*\[\]]")
_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9_-]")


@dataclass(slots=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str


@dataclass(slots=True)
class WorktreeEntry:
    """One block of ``git worktree list --porcelain`` output."""

    path: Path
    branch: str | None
    head: str | None = None
    detached: bool = False


@dataclass(slots=True)
class WorktreeInfo:
    path: Path
    branch: str
    is_new: bool


class IsolationTool(Protocol):
    """Opaque command interface to the version-control tool."""

    async def run(self, project_path: Path, *args: str) -> CommandResult:
        """Run one command in ``project_path`` and return its captured output."""


class GitIsolationTool:
    """Runs ``git`` subcommands as asyncio subprocesses."""

    def __init__(self, executable: str = "git", *, timeout_seconds: float = 120.0) -> None:
        self.executable = executable
        self.timeout_seconds = timeout_seconds

    async def run(self, project_path: Path, *args: str) -> CommandResult:
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                cwd=str(project_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise IsolationToolError(f"Isolation tool not found: {self.executable}") from error
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            process.kill()
            await process.wait()
            raise IsolationToolError(
                f"{self.executable} {' '.join(args)} timed out after {self.timeout_seconds}s",
            ) from error
        return CommandResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


def parse_worktree_listing(output: str, project_path: Path) -> list[WorktreeEntry]:
    """Parse porcelain listing into entries with absolute paths.

    Blocks are separated by blank lines; the last block may not be terminated.
    Relative paths are resolved against ``project_path``.
    """

    entries: list[WorktreeEntry] = []
    current: dict[str, str | bool] = {}

    def _flush() -> None:
        raw_path = current.get("worktree")
        if isinstance(raw_path, str) and raw_path:
            branch = current.get("branch")
            head = current.get("HEAD")
            entries.append(
                WorktreeEntry(
                    path=_absolute(Path(raw_path), project_path),
                    branch=branch if isinstance(branch, str) else None,
                    head=head if isinstance(head, str) else None,
                    detached=bool(current.get("detached", False)),
                ),
            )
        current.clear()

    for raw_line in output.splitlines():
        line = raw_line.rstrip("\r")
        if not line.strip():
            _flush()
            continue
        key, _, value = line.partition(" ")
        if key == "branch":
            current["branch"] = value.removeprefix("refs/heads/")
        elif key == "detached":
            current["detached"] = True
        elif key in {"worktree", "HEAD"}:
            current[key] = value
    _flush()
    return entries


def is_safe_branch_name(branch_name: str) -> bool:
    """Reject names that could be parsed as options or are not valid git refs."""

    if not branch_name or not branch_name.strip():
        return False
    if branch_name.startswith("-"):
        return False
    if branch_name.startswith(".") or branch_name.endswith("."):
        return False
    if ".." in branch_name or "//" in branch_name:
        return False
    if branch_name.endswith(".lock"):
        return False
    if not _SAFE_BRANCH_PATTERN.match(branch_name):
        return False
    return not _INVALID_REF_CHARS.search(branch_name)


def sanitize_branch_name(branch_name: str) -> str:
    return _SANITIZE_PATTERN.sub("-", branch_name)


class WorktreeLocator:
    """Finds or creates the worktree bound to a branch."""

    def __init__(self, tool: IsolationTool) -> None:
        self.tool = tool

    async def list_worktrees(self, project_path: Path) -> list[WorktreeEntry]:
        result = await self.tool.run(project_path, "worktree", "list", "--porcelain")
        if result.returncode != 0:
            raise IsolationToolError(
                "git worktree list failed",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return parse_worktree_listing(result.stdout, project_path)

    async def find(self, project_path: Path, branch_name: str) -> Path | None:
        try:
            entries = await self.list_worktrees(project_path)
        except IsolationToolError as error:
            logger.warning("Cannot list worktrees in %s: %s", project_path, error)
            return None
        for entry in entries:
            if entry.branch == branch_name:
                return entry.path
        return None

    async def create(
        self,
        project_path: Path,
        branch_name: str,
        base_branch: str | None = None,
    ) -> WorktreeInfo:
        existing = await self.find(project_path, branch_name)
        if existing is not None:
            logger.info("Found existing worktree for branch %s at %s", branch_name, existing)
            return WorktreeInfo(path=existing, branch=branch_name, is_new=False)

        if not is_safe_branch_name(branch_name):
            raise InvalidBranchNameError(branch_name)
        if base_branch is not None and not is_safe_branch_name(base_branch):
            raise InvalidBranchNameError(base_branch)

        worktrees_dir = _absolute(project_path, Path.cwd()) / WORKTREES_DIR_NAME
        worktree_path = worktrees_dir / sanitize_branch_name(branch_name)
        worktrees_dir.mkdir(parents=True, exist_ok=True)

        verify = await self.tool.run(project_path, "rev-parse", "--verify", branch_name)
        branch_exists = verify.returncode == 0
        if branch_exists:
            args = ("worktree", "add", str(worktree_path), branch_name)
        else:
            args = (
                "worktree",
                "add",
                "-b",
                branch_name,
                str(worktree_path),
                base_branch or "HEAD",
            )
        result = await self.tool.run(project_path, *args)
        if result.returncode != 0:
            raise IsolationToolError(
                f"git worktree add failed for branch {branch_name}: {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        logger.info("Created worktree for branch %s at %s", branch_name, worktree_path)
        return WorktreeInfo(path=worktree_path, branch=branch_name, is_new=not branch_exists)


def _absolute(path: Path, base: Path) -> Path:
    if path.is_absolute():
        return path.resolve()
    return (base / path).resolve()
