"""Thin git subprocess wrapper that reports failures as data."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GitResult:
    """Outcome of one git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def message(self) -> str:
        detail = self.stderr.strip() or self.stdout.strip()
        if detail:
            return detail
        return f"git {' '.join(self.args)} exited with {self.returncode}"


class GitRunner:
    """Runs git commands with a timeout; never raises for command failures."""

    def __init__(self, *, timeout_seconds: float = 120.0, executable: str = "git") -> None:
        self.timeout_seconds = timeout_seconds
        self.executable = executable

    def run(self, args: Sequence[str], *, cwd: Path) -> GitResult:
        command = [self.executable, *args]
        logger.debug("git %s (cwd=%s)", " ".join(args), cwd)
        try:
            completed = subprocess.run(
                command,
                cwd=cwd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            return GitResult(tuple(args), 127, stderr=f"{self.executable} executable not found")
        except subprocess.TimeoutExpired:
            return GitResult(
                tuple(args),
                124,
                stderr=f"git {' '.join(args)} timed out after {self.timeout_seconds}s",
            )
        except OSError as error:
            return GitResult(tuple(args), 126, stderr=str(error))
        return GitResult(tuple(args), completed.returncode, completed.stdout, completed.stderr)

    def current_branch(self, cwd: Path) -> str | None:
        result = self.run(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
        if not result.success:
            return None
        branch = result.stdout.strip()
        return branch if branch and branch != "HEAD" else None

    def toplevel(self, cwd: Path) -> Path | None:
        result = self.run(["rev-parse", "--show-toplevel"], cwd=cwd)
        if not result.success:
            return None
        return Path(result.stdout.strip())

    def has_staged_changes(self, cwd: Path) -> bool:
        # `diff --cached --quiet` exits 1 when the index differs from HEAD.
        return self.run(["diff", "--cached", "--quiet"], cwd=cwd).returncode == 1


@dataclass(slots=True)
class RepoStatus:
    """Branch and working-tree summary for the dashboard."""

    success: bool
    branch: str | None = None
    upstream: str | None = None
    ahead: int = 0
    behind: int = 0
    changed_files: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def clean(self) -> bool:
        return not self.changed_files


@dataclass(slots=True)
class CommitPushResult:
    success: bool
    committed: bool = False
    pushed: bool = False
    commit: str | None = None
    message: str = ""


def repo_status(root: Path, *, runner: GitRunner | None = None) -> RepoStatus:
    git = runner or GitRunner()
    result = git.run(["status", "--porcelain=v1", "--branch"], cwd=root)
    if not result.success:
        return RepoStatus(success=False, message=result.message)

    status = RepoStatus(success=True)
    for line in result.stdout.splitlines():
        if line.startswith("## "):
            _apply_branch_header(status, line)
        elif line.strip():
            status.changed_files.append(line[3:].strip())
    status.message = (
        f"{status.branch or '(detached)'}: "
        f"{len(status.changed_files)} changed, ahead {status.ahead}, behind {status.behind}"
    )
    return status


def commit_and_push(
    root: Path,
    message: str,
    *,
    exclude: Iterable[str] = (),
    runner: GitRunner | None = None,
) -> CommitPushResult:
    """Stage everything except ``exclude``, commit if anything is staged, then push."""

    git = runner or GitRunner()
    pathspec = [".", *(f":(exclude){item}" for item in exclude)]
    staged = git.run(["add", "-A", "--", *pathspec], cwd=root)
    if not staged.success:
        return CommitPushResult(success=False, message=staged.message)

    committed = False
    commit: str | None = None
    if git.has_staged_changes(root):
        result = git.run(["commit", "-m", message], cwd=root)
        if not result.success:
            return CommitPushResult(success=False, message=result.message)
        committed = True
        head = git.run(["rev-parse", "HEAD"], cwd=root)
        commit = head.stdout.strip() if head.success else None

    branch = git.current_branch(root)
    has_upstream = git.run(
        ["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{u}"],
        cwd=root,
    ).success
    if has_upstream:
        pushed = git.run(["push"], cwd=root)
    elif branch is not None:
        pushed = git.run(["push", "-u", "origin", branch], cwd=root)
    else:
        return CommitPushResult(
            success=False,
            committed=committed,
            commit=commit,
            message="HEAD is detached; nothing to push.",
        )
    if not pushed.success:
        return CommitPushResult(
            success=False,
            committed=committed,
            commit=commit,
            message=pushed.message,
        )
    return CommitPushResult(
        success=True,
        committed=committed,
        pushed=True,
        commit=commit,
        message="Committed and pushed." if committed else "Nothing to commit; pushed.",
    )


def _apply_branch_header(status: RepoStatus, line: str) -> None:
    header = line[3:].strip()
    for prefix in ("No commits yet on ", "Initial commit on "):
        if header.startswith(prefix):
            header = header[len(prefix) :]
    header, _, tracking = header.partition(" [")
    branch, _, upstream = header.partition("...")
    branch = branch.split(" ", 1)[0]
    status.branch = None if branch == "HEAD" else branch
    status.upstream = upstream or None
    for part in tracking.rstrip("]").split(","):
        key, _, value = part.strip().partition(" ")
        if key == "ahead" and value.isdigit():
            status.ahead = int(value)
        elif key == "behind" and value.isdigit():
            status.behind = int(value)
