"""Git operations used as workflow collaborators."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from commitflow.models.workflow import ChangeKind, ChangeSet, FileChange

logger = logging.getLogger(__name__)

_LOCK_PATTERN = re.compile(
    r"index\.lock|unable to create '.*\.lock'|another git process seems to be running",
    re.IGNORECASE,
)
_SHORTSTAT_PATTERN = re.compile(r"(\d+) (insertion|deletion)s?\([+-]\)")
_STATUS_KINDS = {
    "A": ChangeKind.ADDED,
    "M": ChangeKind.MODIFIED,
    "D": ChangeKind.DELETED,
    "R": ChangeKind.RENAMED,
    "C": ChangeKind.COPIED,
    "T": ChangeKind.TYPE_CHANGED,
    "U": ChangeKind.UNMERGED,
}


@dataclass(slots=True)
class GitResult:
    """Result from running a git command."""

    command: str
    output: str


class GitCommandError(RuntimeError):
    """A git command exited non-zero."""

    def __init__(self, command: str, output: str, returncode: int | None) -> None:
        super().__init__(f"{command} failed: {output}" if output else f"{command} failed")
        self.command = command
        self.output = output
        self.returncode = returncode


class RepositoryLockedError(GitCommandError):
    """Another git process holds the repository lock."""


class GitManager:
    """Thin async wrapper around the git CLI."""

    def __init__(self, executable: str = "git", *, terminate_grace: float = 5.0) -> None:
        self._executable = executable
        self._terminate_grace = terminate_grace

    async def detect_changes(self, repo_path: Path, *, stage_all: bool = True) -> ChangeSet:
        """Stage the working tree (unless told not to) and read the staged change set."""
        await self._run_git(repo_path, "rev-parse", "--git-dir")
        if stage_all:
            await self._run_git(repo_path, "add", "--all")
        status = await self._run_git(repo_path, "diff", "--cached", "--name-status", "-z")
        files = parse_name_status(status.output)
        if not files:
            return ChangeSet()
        stat = await self._run_git(repo_path, "diff", "--cached", "--shortstat")
        insertions, deletions = parse_shortstat(stat.output)
        diff = await self._run_git(repo_path, "diff", "--cached")
        return ChangeSet(
            files=files,
            diff=diff.output,
            insertions=insertions,
            deletions=deletions,
        )

    async def commit(self, repo_path: Path, message: str) -> str:
        """Commit staged changes and return the new commit id."""
        await self._run_git(repo_path, "commit", "--quiet", "--file", "-", stdin=message)
        head = await self._run_git(repo_path, "rev-parse", "HEAD")
        return head.output

    async def push(
        self,
        repo_path: Path,
        *,
        remote: str = "origin",
        branch: str = "HEAD",
    ) -> GitResult:
        return await self._run_git(repo_path, "push", remote, branch)

    async def has_commit(self, repo_path: Path, commit_id: str) -> bool:
        try:
            await self._run_git(repo_path, "cat-file", "-e", f"{commit_id}^{{commit}}")
        except GitCommandError:
            return False
        return True

    async def _run_git(self, repo_path: Path, *args: str, stdin: str | None = None) -> GitResult:
        command = [self._executable, *args]
        display = " ".join(command[:2]) if len(command) > 1 else command[0]
        logger.debug("running %s in %s", " ".join(command), repo_path)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=repo_path,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, NotADirectoryError) as exc:
            raise GitCommandError(display, str(exc), None) from exc

        try:
            stdout, stderr = await process.communicate(
                stdin.encode("utf-8") if stdin is not None else None
            )
        except asyncio.CancelledError:
            if process.returncode is None:
                await self._stop(process, display)
            raise

        output = (
            stdout.decode("utf-8", errors="replace") + stderr.decode("utf-8", errors="replace")
        ).strip()
        if process.returncode != 0:
            if _LOCK_PATTERN.search(output):
                raise RepositoryLockedError(display, output, process.returncode)
            raise GitCommandError(display, output, process.returncode)
        return GitResult(command=" ".join(command), output=output)

    async def _stop(self, process: asyncio.subprocess.Process, display: str) -> None:
        """Ask git to exit so it can remove its lock files; kill only if it ignores that."""
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), self._terminate_grace)
        except TimeoutError:
            logger.warning("%s ignored SIGTERM for %.1fs, killing it", display, self._terminate_grace)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()


def parse_name_status(output: str) -> list[FileChange]:
    """Parse NUL-separated ``git diff --name-status -z`` output into ordered file changes."""
    changes: list[FileChange] = []
    tokens = [token for token in output.split("\0") if token]
    index = 0
    while index < len(tokens):
        kind = _STATUS_KINDS.get(tokens[index][:1], ChangeKind.MODIFIED)
        if kind in (ChangeKind.RENAMED, ChangeKind.COPIED):
            if index + 2 >= len(tokens):
                break
            changes.append(
                FileChange(path=tokens[index + 2], kind=kind, old_path=tokens[index + 1])
            )
            index += 3
        else:
            if index + 1 >= len(tokens):
                break
            changes.append(FileChange(path=tokens[index + 1], kind=kind))
            index += 2
    return changes


def parse_shortstat(output: str) -> tuple[int, int]:
    """Return ``(insertions, deletions)`` from ``git diff --shortstat`` output."""
    insertions = deletions = 0
    for count, kind in _SHORTSTAT_PATTERN.findall(output):
        if kind == "insertion":
            insertions = int(count)
        else:
            deletions = int(count)
    return insertions, deletions


def is_lock_contention(exc: Exception) -> bool:
    return isinstance(exc, RepositoryLockedError)
