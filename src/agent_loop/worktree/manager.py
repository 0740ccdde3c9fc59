"""Per-task git worktrees: creation, squash-merge completion and orphan cleanup.

Each task gets a branch ``task/<short_id>-<slug>`` checked out in a sibling
directory ``<parent>/<repo>-worktrees/<short_id>-<slug>``. The task-queue and
control directories are mounted into the worktree so the agent running there
sees the same shared state as every loop. The task-to-worktree mapping lives in
``worktree-map.json`` under the control directory.
"""

from __future__ import annotations

import fnmatch
import logging
import re
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Protocol

from agent_loop.config import PathSettings, WorktreeSettings
from agent_loop.storage import read_json_or_none, utc_now, write_json_atomic
from agent_loop.tasks.models import ACTIVE_STATUSES, TaskStatus
from agent_loop.worktree.git import GitRunner
from agent_loop.worktree.junctions import (
    JunctionError,
    create_junction,
    is_junction,
    remove_junction,
)

logger = logging.getLogger(__name__)

SLUG_MAX_LENGTH = 50
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    """Lower-case, collapse non-alphanumerics to ``-``, trim, cap at 50 chars."""

    slug = _NON_ALNUM_RE.sub("-", name.lower()).strip("-")
    slug = slug[:SLUG_MAX_LENGTH].rstrip("-")
    return slug or "untitled"


def branch_name(task_id: str, task_name: str) -> str:
    return f"task/{task_id[:8]}-{slugify(task_name)}"


class GitFailure(str, Enum):
    REBASE_CONFLICT = "rebase_conflict"
    MERGE_FAILED = "merge_failed"
    COMMAND_FAILED = "command_failed"


@dataclass(slots=True)
class WorktreeEntry:
    """One row of the worktree map."""

    task_id: str
    worktree_path: Path
    branch_name: str
    task_name: str
    created_at: str
    base_branch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "worktree_path": str(self.worktree_path),
            "branch_name": self.branch_name,
            "task_name": self.task_name,
            "created_at": self.created_at,
            "base_branch": self.base_branch,
        }

    @classmethod
    def from_dict(cls, task_id: str, payload: dict[str, Any]) -> WorktreeEntry:
        return cls(
            task_id=task_id,
            worktree_path=Path(payload["worktree_path"]),
            branch_name=str(payload["branch_name"]),
            task_name=str(payload.get("task_name", "")),
            created_at=str(payload.get("created_at", "")),
            base_branch=payload.get("base_branch"),
        )


@dataclass(slots=True)
class WorktreeResult:
    success: bool
    task_id: str
    worktree_path: Path | None = None
    branch_name: str | None = None
    created: bool = False
    copied_files: list[str] = field(default_factory=list)
    failure: GitFailure | None = None
    message: str = ""


@dataclass(slots=True)
class MergeResult:
    success: bool
    task_id: str
    merge_commit: str | None = None
    conflict_files: list[str] = field(default_factory=list)
    failure: GitFailure | None = None
    message: str = ""

    @property
    def recoverable(self) -> bool:
        return self.failure is GitFailure.REBASE_CONFLICT


class TaskStatusLookup(Protocol):
    def status_of(self, task_id: str) -> TaskStatus | None: ...


class WorktreeManager:
    """Creates, completes and reconciles task worktrees of one repository."""

    def __init__(
        self,
        paths: PathSettings,
        settings: WorktreeSettings | None = None,
        *,
        runner: GitRunner | None = None,
    ) -> None:
        self.paths = paths
        self.settings = settings or WorktreeSettings()
        self.git = runner or GitRunner(timeout_seconds=self.settings.git_timeout_seconds)
        self.project_root = paths.project_root
        self.map_path = paths.control_dir / "worktree-map.json"

    @property
    def worktrees_root(self) -> Path:
        return self.project_root.parent / f"{self.project_root.name}-worktrees"

    def worktree_path(self, task_id: str, task_name: str) -> Path:
        return self.worktrees_root / f"{task_id[:8]}-{slugify(task_name)}"

    def base_branch(self) -> str:
        return self.settings.base_branch or self.git.current_branch(self.project_root) or "main"

    def list(self) -> list[WorktreeEntry]:
        return sorted(self._load_map().values(), key=lambda entry: entry.created_at)

    def get(self, task_id: str) -> WorktreeEntry | None:
        return self._load_map().get(task_id)

    # -- create -----------------------------------------------------------

    def create(self, task_id: str, task_name: str) -> WorktreeResult:
        """Create (or reuse) the worktree for a task and record the mapping."""

        entries = self._load_map()
        branch = branch_name(task_id, task_name)
        path = self.worktree_path(task_id, task_name)

        if path.exists():
            entry = entries.get(task_id) or WorktreeEntry(
                task_id=task_id,
                worktree_path=path,
                branch_name=branch,
                task_name=task_name,
                created_at=utc_now().isoformat(),
                base_branch=self.base_branch(),
            )
            try:
                self._mount_shared(path)
            except OSError as error:
                return self._create_failure(task_id, path, branch, f"Mount failed: {error}")
            entries[task_id] = entry
            self._save_map(entries)
            logger.info("Reusing worktree %s for task %s", path, task_id[:8])
            return WorktreeResult(
                success=True,
                task_id=task_id,
                worktree_path=path,
                branch_name=entry.branch_name,
            )

        base = self.base_branch()
        path.parent.mkdir(parents=True, exist_ok=True)
        self.git.run(["worktree", "prune"], cwd=self.project_root)
        added = self.git.run(
            ["worktree", "add", "-b", branch, str(path), base],
            cwd=self.project_root,
        )
        if not added.success:
            # The branch survives an interrupted earlier run; attach it instead.
            attached = self.git.run(["worktree", "add", str(path), branch], cwd=self.project_root)
            if not attached.success:
                return self._create_failure(
                    task_id,
                    path,
                    branch,
                    f"git worktree add failed: {added.message}; {attached.message}",
                )
            logger.info("Attached existing branch %s", branch)

        try:
            self._mount_shared(path)
        except OSError as error:
            return self._create_failure(task_id, path, branch, f"Mount failed: {error}")
        copied = self._copy_ignored_files(path)

        entries[task_id] = WorktreeEntry(
            task_id=task_id,
            worktree_path=path,
            branch_name=branch,
            task_name=task_name,
            created_at=utc_now().isoformat(),
            base_branch=base,
        )
        self._save_map(entries)
        logger.info("Created worktree %s on %s (%d files copied)", path, branch, len(copied))
        return WorktreeResult(
            success=True,
            task_id=task_id,
            worktree_path=path,
            branch_name=branch,
            created=True,
            copied_files=copied,
        )

    # -- complete ---------------------------------------------------------

    def complete(self, task_id: str) -> MergeResult:  # noqa: PLR0911
        """Rebase the task branch onto base, squash-merge it and tear the worktree down.

        A rebase conflict is aborted and reported; it is never resolved here.
        """

        entry = self._load_map().get(task_id)
        if entry is None:
            return MergeResult(
                success=False,
                task_id=task_id,
                failure=GitFailure.COMMAND_FAILED,
                message=f"No worktree registered for task {task_id}",
            )
        worktree = entry.worktree_path
        if not worktree.exists():
            return MergeResult(
                success=False,
                task_id=task_id,
                failure=GitFailure.COMMAND_FAILED,
                message=f"Worktree path is missing: {worktree}",
            )
        short_id = task_id[:8]
        base = entry.base_branch or self.base_branch()

        pending = self._commit_pending(worktree, f"WIP: {entry.task_name} [{short_id}]")
        if pending is not None:
            return MergeResult(
                success=False,
                task_id=task_id,
                failure=GitFailure.COMMAND_FAILED,
                message=pending,
            )

        checkout = self.git.run(["checkout", base], cwd=self.project_root)
        if not checkout.success:
            return MergeResult(
                success=False,
                task_id=task_id,
                failure=GitFailure.COMMAND_FAILED,
                message=f"checkout {base} failed: {checkout.message}",
            )

        rebase = self.git.run(["rebase", base], cwd=worktree)
        if not rebase.success:
            conflicts = self.git.run(["diff", "--name-only", "--diff-filter=U"], cwd=worktree)
            conflict_files = [line for line in conflicts.stdout.splitlines() if line.strip()]
            if self._rebase_in_progress(worktree):
                self.git.run(["rebase", "--abort"], cwd=worktree)
            if not conflict_files:
                # Refused before starting, e.g. on a dirty worktree.
                logger.error(
                    "Rebase of %s onto %s failed: %s",
                    entry.branch_name,
                    base,
                    rebase.message,
                )
                return MergeResult(
                    success=False,
                    task_id=task_id,
                    failure=GitFailure.COMMAND_FAILED,
                    message=f"rebase onto {base} failed: {rebase.message}",
                )
            logger.warning(
                "Rebase of %s onto %s conflicted: %s",
                entry.branch_name,
                base,
                ", ".join(conflict_files),
            )
            return MergeResult(
                success=False,
                task_id=task_id,
                conflict_files=conflict_files,
                failure=GitFailure.REBASE_CONFLICT,
                message=f"Rebase onto {base} conflicted; resolve manually and retry.",
            )

        merge = self.git.run(["merge", "--squash", entry.branch_name], cwd=self.project_root)
        if not merge.success:
            self.git.run(["reset", "--merge"], cwd=self.project_root)
            return MergeResult(
                success=False,
                task_id=task_id,
                failure=GitFailure.MERGE_FAILED,
                message=f"Squash merge failed: {merge.message}",
            )

        merge_commit: str | None = None
        if self.git.has_staged_changes(self.project_root):
            commit = self.git.run(
                ["commit", "-m", f"{entry.task_name} [{short_id}]"],
                cwd=self.project_root,
            )
            if not commit.success:
                self.git.run(["reset", "--merge"], cwd=self.project_root)
                return MergeResult(
                    success=False,
                    task_id=task_id,
                    failure=GitFailure.MERGE_FAILED,
                    message=f"Commit of squash merge failed: {commit.message}",
                )
            head = self.git.run(["rev-parse", "HEAD"], cwd=self.project_root)
            merge_commit = head.stdout.strip() if head.success else None
        else:
            logger.info("Task %s produced no changes; nothing to commit", short_id)

        self._teardown(entry)
        self._forget(task_id)
        return MergeResult(
            success=True,
            task_id=task_id,
            merge_commit=merge_commit,
            message=f"Merged {entry.branch_name} into {base}"
            + (f" as {merge_commit[:10]}" if merge_commit else " (no changes)"),
        )

    # -- cleanup ----------------------------------------------------------

    def remove(self, task_id: str) -> bool:
        entry = self._load_map().get(task_id)
        if entry is None:
            return False
        self._teardown(entry)
        self._forget(task_id)
        return True

    def reconcile_orphans(self, task_store: TaskStatusLookup) -> list[str]:
        """Tear down worktrees whose task is missing or no longer active."""

        removed: list[str] = []
        for entry in self.list():
            status = task_store.status_of(entry.task_id)
            if status in ACTIVE_STATUSES:
                continue
            logger.info(
                "Removing orphaned worktree for task %s (%s)",
                entry.task_id[:8],
                status.value if status else "missing",
            )
            self._teardown(entry)
            self._forget(entry.task_id)
            removed.append(entry.task_id)
        return removed

    # -- internals --------------------------------------------------------

    def _mount_points(self, worktree: Path) -> list[tuple[Path, Path]]:
        state = worktree / self.paths.state_dir_name
        return [
            (state / self.paths.tasks_dir.name, self.paths.tasks_dir),
            (state / self.paths.control_dir.name, self.paths.control_dir),
        ]

    def _mount_relpaths(self) -> list[str]:
        state = PurePosixPath(self.paths.state_dir_name)
        return [
            str(state / self.paths.tasks_dir.name),
            str(state / self.paths.control_dir.name),
        ]

    def _mount_shared(self, worktree: Path) -> None:
        self._hide_mounted_placeholders(worktree)
        for link, target in self._mount_points(worktree):
            create_junction(link, target)

    def _hide_mounted_placeholders(self, worktree: Path) -> None:
        """Mark tracked files under a mount point skip-worktree.

        The mount replaces them, so git would otherwise report them deleted and
        refuse to rebase the task branch.
        """

        listed = self.git.run(["ls-files", "-z"], cwd=worktree)
        if not listed.success:
            raise JunctionError(f"Listing tracked files failed: {listed.message}")
        prefixes = tuple(f"{relpath}/" for relpath in self._mount_relpaths())
        tracked = [path for path in listed.stdout.split("\0") if path.startswith(prefixes)]
        if not tracked:
            return
        hidden = self.git.run(["update-index", "--skip-worktree", "--", *tracked], cwd=worktree)
        if not hidden.success:
            raise JunctionError(f"Hiding tracked files under mounts failed: {hidden.message}")
        logger.debug("Marked %d tracked files under shared mounts skip-worktree", len(tracked))

    def _commit_pending(self, worktree: Path, message: str) -> str | None:
        pathspec = [".", *(f":(exclude){relpath}" for relpath in self._mount_relpaths())]
        added = self.git.run(["add", "-A", "--", *pathspec], cwd=worktree)
        if not added.success:
            return f"Staging worktree changes failed: {added.message}"
        if not self.git.has_staged_changes(worktree):
            return None
        committed = self.git.run(["commit", "-m", message], cwd=worktree)
        if not committed.success:
            return f"Committing worktree changes failed: {committed.message}"
        return None

    def _rebase_in_progress(self, worktree: Path) -> bool:
        for name in ("rebase-merge", "rebase-apply"):
            located = self.git.run(["rev-parse", "--git-path", name], cwd=worktree)
            if located.success and (worktree / located.stdout.strip()).exists():
                return True
        return False

    def _teardown(self, entry: WorktreeEntry) -> None:
        worktree = entry.worktree_path
        for link, _ in self._mount_points(worktree):
            remove_junction(link)
        if worktree.exists():
            if any(is_junction(link) for link, _ in self._mount_points(worktree)):
                logger.error("Refusing to remove %s while shared mounts remain", worktree)
                return
            removed = self.git.run(
                ["worktree", "remove", "--force", str(worktree)],
                cwd=self.project_root,
            )
            if not removed.success:
                logger.warning("git worktree remove failed for %s: %s", worktree, removed.message)
        self.git.run(["worktree", "prune"], cwd=self.project_root)
        deleted = self.git.run(["branch", "-D", entry.branch_name], cwd=self.project_root)
        if not deleted.success:
            logger.debug("Branch %s not deleted: %s", entry.branch_name, deleted.message)

    def _copy_ignored_files(self, worktree: Path) -> list[str]:
        """Copy gitignored files matching the allow-list into a fresh worktree."""

        if self.settings.max_copy_files <= 0 or not self.settings.copy_patterns:
            return []
        listing = self.git.run(
            ["ls-files", "--others", "--ignored", "--exclude-standard", "--directory"],
            cwd=self.project_root,
        )
        if not listing.success:
            logger.warning("Listing ignored files failed: %s", listing.message)
            return []

        copied: list[str] = []
        for relpath in self._ignored_candidates(listing.stdout.splitlines()):
            if len(copied) >= self.settings.max_copy_files:
                logger.warning("Stopped copying ignored files at %d", len(copied))
                break
            source = self.project_root / relpath
            destination = worktree / relpath
            if destination.exists() or not source.is_file():
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
            copied.append(relpath)
        return copied

    def _ignored_candidates(self, lines: list[str]) -> list[str]:
        candidates: list[str] = []
        for raw in lines:
            entry = raw.strip()
            if not entry or self._excluded(entry.rstrip("/")):
                continue
            if entry.endswith("/"):
                directory = self.project_root / entry
                for path in sorted(directory.rglob("*")):
                    relpath = path.relative_to(self.project_root).as_posix()
                    if path.is_file() and not self._excluded(relpath) and self._allowed(relpath):
                        candidates.append(relpath)
            elif self._allowed(entry):
                candidates.append(entry)
        return candidates

    def _excluded(self, relpath: str) -> bool:
        parts = PurePosixPath(relpath).parts
        if parts and parts[0] == self.paths.state_dir_name:
            return True
        denylist = set(self.settings.copy_denylist)
        return any(part in denylist for part in parts)

    def _allowed(self, relpath: str) -> bool:
        name = PurePosixPath(relpath).name
        return any(
            fnmatch.fnmatch(relpath, pattern) or fnmatch.fnmatch(name, pattern)
            for pattern in self.settings.copy_patterns
        )

    def _create_failure(
        self,
        task_id: str,
        path: Path,
        branch: str,
        message: str,
    ) -> WorktreeResult:
        logger.error("Worktree for task %s not ready: %s", task_id[:8], message)
        return WorktreeResult(
            success=False,
            task_id=task_id,
            worktree_path=path,
            branch_name=branch,
            failure=GitFailure.COMMAND_FAILED,
            message=message,
        )

    def _load_map(self) -> dict[str, WorktreeEntry]:
        payload = read_json_or_none(self.map_path) or {}
        entries: dict[str, WorktreeEntry] = {}
        for task_id, raw in payload.items():
            if not isinstance(raw, dict):
                continue
            try:
                entries[task_id] = WorktreeEntry.from_dict(task_id, raw)
            except (KeyError, TypeError) as error:
                logger.warning("Skipping malformed worktree map entry %s: %s", task_id, error)
        return entries

    def _save_map(self, entries: dict[str, WorktreeEntry]) -> None:
        write_json_atomic(
            self.map_path,
            {task_id: entry.to_dict() for task_id, entry in sorted(entries.items())},
        )

    def _forget(self, task_id: str) -> None:
        entries = self._load_map()
        if entries.pop(task_id, None) is not None:
            self._save_map(entries)
