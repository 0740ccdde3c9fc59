from __future__ import annotations

import os
import sys
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner, Result

from agent_loop import __version__
from agent_loop.main import agent_loop
from agent_loop.registry import ProcessRegistry, ProcessStatus
from agent_loop.tasks.models import TaskStatus
from agent_loop.tasks.store import TaskStore

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Tasks, Processes, Control"),
]


@pytest.fixture()
def project(tmp_path: Path, monkeypatch) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    monkeypatch.delenv("AGENT_LOOP_PROJECT_ROOT", raising=False)
    return root


def _cli(root: Path, *args: str) -> Result:
    return CliRunner().invoke(agent_loop, [*args, "--project-root", str(root)])


def _store(root: Path) -> TaskStore:
    return TaskStore(root / ".agent-loop" / "tasks")


def test_version_option() -> None:
    result = CliRunner().invoke(agent_loop, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_create_list_show_done(project: Path) -> None:
    created = _cli(
        project,
        "tasks",
        "create",
        "Ship it",
        "--id",
        "abc123",
        "--priority",
        "5",
        "--criterion",
        "Users can log in",
        "--step",
        "Write the form",
    )
    assert created.exit_code == 0, created.output
    assert "Task created: task_id=abc123 status=todo priority=5" in created.output

    listed = _cli(project, "tasks", "list")
    assert "Tasks: 1" in listed.output
    assert "abc123 status=todo priority=5 skips=0 name=Ship it" in listed.output

    shown = _cli(project, "tasks", "show", "abc123")
    assert "Name: Ship it" in shown.output
    assert "criterion: Users can log in" in shown.output
    assert "step: Write the form" in shown.output

    done = _cli(project, "tasks", "done", "abc123")
    assert done.exit_code == 0
    assert "Task done: abc123" in done.output
    assert "Tasks: 1" in _cli(project, "tasks", "list", "--status", "done").output
    assert "Tasks: 0" in _cli(project, "tasks", "list", "--status", "todo").output


def test_unknown_task_is_reported(project: Path) -> None:
    shown = _cli(project, "tasks", "show", "nope")
    assert shown.exit_code == 0
    assert "Task not found: nope" in shown.output

    done = _cli(project, "tasks", "done", "nope")
    assert done.exit_code == 1
    assert "nope" in done.output


def test_duplicate_id_is_an_operator_error(project: Path) -> None:
    _cli(project, "tasks", "create", "First", "--id", "dup")

    again = _cli(project, "tasks", "create", "Second", "--id", "dup")

    assert again.exit_code == 1
    assert "Error" in again.output


def test_question_round_trip(project: Path) -> None:
    _cli(project, "tasks", "create", "Pick a database", "--id", "db1")
    _store(project).mark_analysing("db1")

    asked = _cli(
        project,
        "tasks",
        "ask",
        "db1",
        "Which database?",
        "--option",
        "postgres",
        "--option",
        "sqlite",
    )
    assert "Question recorded: task_id=db1 status=needs_input" in asked.output

    pending = _cli(project, "tasks", "action-required")
    assert "Action required: 1" in pending.output
    assert "db1 question (Pick a database): Which database?" in pending.output
    assert "* postgres" in pending.output

    answered = _cli(project, "tasks", "answer", "db1", "postgres", "--custom-text", "v16")
    assert "Answer recorded: task_id=db1 status=todo" in answered.output
    task = _store(project).get("db1")
    assert task.questions_resolved[0]["answer"] == "postgres"
    assert task.questions_resolved[0]["custom_text"] == "v16"


def test_split_proposal_approved(project: Path) -> None:
    _cli(project, "tasks", "create", "Big feature", "--id", "big")
    _store(project).mark_analysing("big")

    proposed = _cli(
        project,
        "tasks",
        "propose-split",
        "big",
        "--reason",
        "too large",
        "--sub-task",
        "Backend",
        "--sub-task",
        "Frontend",
    )
    assert "Split proposed: task_id=big sub_tasks=2 status=needs_input" in proposed.output

    approved = _cli(project, "tasks", "approve-split", "big")
    assert "Split approved: task_id=big status=cancelled" in approved.output
    names = sorted(task.name for task in _store(project).list(TaskStatus.TODO))
    assert names == ["Backend", "Frontend"]


def test_split_proposal_needs_sub_tasks(project: Path) -> None:
    _cli(project, "tasks", "create", "Big feature", "--id", "big")
    _store(project).mark_analysing("big")

    result = _cli(project, "tasks", "propose-split", "big", "--reason", "too large")

    assert result.exit_code == 1
    assert "--sub-task" in result.output


def test_analysed_callback_merges_extra_fields(project: Path) -> None:
    _cli(project, "tasks", "create", "Analyse me", "--id", "an1")
    _store(project).mark_analysing("an1")

    result = _cli(
        project,
        "tasks",
        "analysed",
        "an1",
        "--summary",
        "small change",
        "--analysis-json",
        '{"risk": "low"}',
    )

    assert "Task analysed: an1" in result.output
    task = _store(project).get("an1")
    assert task.status == TaskStatus.ANALYSED
    assert task.analysis == {"summary": "small change", "risk": "low"}


def test_analysed_callback_rejects_non_object_json(project: Path) -> None:
    _cli(project, "tasks", "create", "Analyse me", "--id", "an1")
    _store(project).mark_analysing("an1")

    result = _cli(project, "tasks", "analysed", "an1", "--summary", "x", "--analysis-json", "[1]")

    assert result.exit_code == 1
    assert "JSON object" in result.output


def test_reset_returns_stuck_tasks(project: Path) -> None:
    _cli(project, "tasks", "create", "Stuck", "--id", "stuck")
    _store(project).mark_in_progress("stuck")

    result = _cli(project, "tasks", "reset")

    assert "In-progress tasks reset: 1" in result.output
    assert _store(project).status_of("stuck") == TaskStatus.TODO


def test_pause_status_resume(project: Path) -> None:
    paused = _cli(project, "control", "pause")
    assert "Control pause (both)" in paused.output
    assert "Pause asserted." in paused.output
    assert "Signals: pause" in _cli(project, "control", "status").output

    _cli(project, "control", "resume")

    status = _cli(project, "control", "status").output
    assert "pause" not in status.splitlines()[0]
    assert "Live processes: 0" in status


def test_whisper_and_output(project: Path) -> None:
    registry = ProcessRegistry(
        project / ".agent-loop" / "control" / "processes",
        project_root=project,
    )
    record = registry.register(
        "execution",
        process_id="execution-cli",
        pid=os.getpid(),
        status=ProcessStatus.RUNNING,
    )
    registry.log_activity(record.id, "loop_started", "execution loop started")

    listed = _cli(project, "proc", "list")
    assert "Processes: 1" in listed.output
    assert "execution-cli type=execution status=running" in listed.output

    whispered = _cli(project, "proc", "whisper", "execution", "skip the docs", "--priority", "high")
    assert "Whisper queued for: execution-cli" in whispered.output
    entries, _ = registry.read_whispers("execution-cli")
    assert entries[0]["message"] == "skip the docs"
    assert entries[0]["priority"] == "high"

    nobody = _cli(project, "proc", "whisper", "analysis", "hello")
    assert "No live process matches analysis" in nobody.output

    output = _cli(project, "proc", "output", "execution-cli")
    assert "loop_started: execution loop started" in output.output
    assert "Next position: " in output.output


def test_stop_without_target_is_an_error(project: Path) -> None:
    result = _cli(project, "proc", "stop")

    assert result.exit_code == 1
    assert "--all" in result.output


def test_run_processes_queue_with_echo_agent(project: Path, monkeypatch) -> None:
    monkeypatch.setenv(
        "AGENT_LOOP_WORKER_COMMAND_TEMPLATE",
        f"{sys.executable} -m agent_loop.orchestrator.backend.echo_agent "
        "--prompt-file {prompt_file}",
    )
    monkeypatch.setenv("AGENT_LOOP_USE_WORKTREES", "false")
    monkeypatch.setenv("AGENT_LOOP_COOLDOWN_SECONDS", "0")
    _cli(project, "tasks", "create", "Echo me", "--id", "echo1")

    result = _cli(project, "run", "--no-wait")

    assert result.exit_code == 0, result.output
    assert "finished: idle" in result.output
    assert "processed=1 succeeded=1" in result.output
    assert _store(project).status_of("echo1") == TaskStatus.DONE
