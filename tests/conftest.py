"""Shared test fixtures."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path

import pytest

from agent_loop.config import LoopSettings, PathSettings, Settings, WorkerSettings
from agent_loop.control.session import SessionStore
from agent_loop.control.signals import ControlSignalStore
from agent_loop.registry import ProcessRegistry
from agent_loop.tasks.models import TaskCreate
from agent_loop.tasks.store import TaskStore

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m agent_loop.orchestrator.backend.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Fast, worktree-free settings rooted in a temporary project."""

    project_root = tmp_path / "project"
    project_root.mkdir()
    return Settings(
        paths=PathSettings(project_root=project_root),
        loop=LoopSettings(
            cooldown_seconds=0,
            idle_poll_seconds=0.01,
            use_worktrees=False,
        ),
        worker=WorkerSettings(command_template=ECHO_AGENT_COMMAND_TEMPLATE, timeout_seconds=30),
    )


@pytest.fixture()
def task_store(settings: Settings) -> TaskStore:
    store = TaskStore(settings.paths.tasks_dir, max_skips=settings.loop.max_skips)
    store.ensure_layout()
    return store


@pytest.fixture()
def registry(settings: Settings) -> ProcessRegistry:
    return ProcessRegistry(
        settings.paths.control_dir / "processes",
        project_root=settings.paths.project_root,
        is_alive=lambda pid: pid is not None,
    )


@pytest.fixture()
def signals(settings: Settings) -> ControlSignalStore:
    return ControlSignalStore(settings.paths.control_dir / "signals", sleep=lambda _: None)


@pytest.fixture()
def sessions(settings: Settings) -> SessionStore:
    return SessionStore(settings.paths.control_dir / "session")


@pytest.fixture()
def make_task(task_store: TaskStore):
    """Factory creating todo tasks with sensible defaults."""

    def _make(name: str = "Task", **fields):
        return task_store.create(TaskCreate(name=name, **fields))

    return _make


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """A committed git repository on branch ``main`` that ignores the state dir."""

    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init", "-b", "main")
    _git(repo, "config", "user.email", "loop@example.com")
    _git(repo, "config", "user.name", "Agent Loop")
    _git(repo, "config", "commit.gpgsign", "false")
    (repo / ".gitignore").write_text(".agent-loop/\n.env\n", "utf-8")
    (repo / "README.md").write_text("# demo\n", "utf-8")
    _git(repo, "add", "-A")
    _git(repo, "commit", "-m", "initial")
    return repo


def _git(cwd: Path, *args: str) -> str:
    completed = subprocess.run(  # noqa: S603
        ["git", *args],  # noqa: S607
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout


@pytest.fixture()
def git():
    return _git
