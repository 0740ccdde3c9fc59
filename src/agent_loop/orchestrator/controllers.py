"""Controllers for agent-loop CLI commands."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from agent_loop.config import Settings
from agent_loop.control.plane import ControlPlane
from agent_loop.control.session import SessionStore
from agent_loop.control.signals import ControlSignalStore
from agent_loop.orchestrator.backend import CliAgentWorker
from agent_loop.orchestrator.loop import ExecutionLoop
from agent_loop.registry import PROCESS_ID_ENV, ProcessRegistry, ProcessStatus
from agent_loop.tasks.models import Task, TaskCreate, TaskStatus
from agent_loop.tasks.store import TaskStore
from agent_loop.worktree.git import GitRunner, commit_and_push, repo_status
from agent_loop.worktree.manager import WorktreeManager


@dataclass(slots=True)
class RunLoopCommand:
    """CLI input for running one loop in the foreground."""

    project_root: Path | None
    loop_type: str
    max_tasks: int | None
    wait_for_tasks: bool = True


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    project_root: Path | None
    status: str | None


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for commands addressing one task."""

    project_root: Path | None
    task_id: str


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for adding a task to the queue."""

    project_root: Path | None
    task: TaskCreate


@dataclass(slots=True)
class TaskAnswerCommand:
    """CLI input for answering a pending analysis question."""

    project_root: Path | None
    task_id: str
    answers: tuple[str, ...]
    custom_text: str | None


@dataclass(slots=True)
class TaskSplitDecisionCommand:
    """CLI input for approving or rejecting a split proposal."""

    project_root: Path | None
    task_id: str
    approved: bool


@dataclass(slots=True)
class TaskAnalysedCommand:
    """Agent callback: analysis finished."""

    project_root: Path | None
    task_id: str
    summary: str
    analysis_json: str | None = None


@dataclass(slots=True)
class TaskAskCommand:
    """Agent callback: analysis needs an operator answer."""

    project_root: Path | None
    task_id: str
    question: str
    options: tuple[str, ...]


@dataclass(slots=True)
class TaskProposeSplitCommand:
    """Agent callback: the task should become several smaller ones."""

    project_root: Path | None
    task_id: str
    reason: str
    sub_tasks: tuple[str, ...]


@dataclass(slots=True)
class ProcListCommand:
    """CLI input for registry listing."""

    project_root: Path | None
    process_type: str | None
    status: str | None


@dataclass(slots=True)
class ProcLaunchCommand:
    """CLI input for launching a detached loop process."""

    project_root: Path | None
    loop_type: str
    max_tasks: int | None
    no_wait: bool


@dataclass(slots=True)
class ProcTargetCommand:
    """CLI input for stop/kill; target is a process id or a loop type."""

    project_root: Path | None
    target: str | None
    all_processes: bool


@dataclass(slots=True)
class ProcWhisperCommand:
    """CLI input for sending an operator instruction to running processes."""

    project_root: Path | None
    target: str
    message: str
    priority: str


@dataclass(slots=True)
class ProcOutputCommand:
    """CLI input for reading a process activity log."""

    project_root: Path | None
    process_id: str
    position: int
    tail: int | None


@dataclass(slots=True)
class ControlCommand:
    """CLI input for control-plane actions."""

    project_root: Path | None
    action: str
    mode: str


@dataclass(slots=True)
class ProjectCommand:
    """CLI input for commands that only need the project root."""

    project_root: Path | None


@dataclass(slots=True)
class GitCommitPushCommand:
    """CLI input for committing and pushing the main checkout."""

    project_root: Path | None
    message: str


@dataclass(slots=True)
class Workspace:
    """Every file-backed store of one project checkout."""

    settings: Settings
    tasks: TaskStore
    registry: ProcessRegistry
    signals: ControlSignalStore
    sessions: SessionStore
    worktrees: WorktreeManager

    @classmethod
    def from_settings(cls, settings: Settings) -> Workspace:
        control_dir = settings.paths.control_dir
        tasks = TaskStore(settings.paths.tasks_dir, max_skips=settings.loop.max_skips)
        tasks.ensure_layout()
        return cls(
            settings=settings,
            tasks=tasks,
            registry=ProcessRegistry(
                control_dir / "processes",
                ttl=timedelta(seconds=settings.registry.ttl_seconds),
                launch_timeout_seconds=settings.registry.launch_timeout_seconds,
                project_root=settings.paths.project_root,
            ),
            signals=ControlSignalStore(control_dir / "signals"),
            sessions=SessionStore(control_dir / "session"),
            worktrees=WorktreeManager(settings.paths, settings.worktree),
        )

    def control_plane(self) -> ControlPlane:
        return ControlPlane(signals=self.signals, registry=self.registry, sessions=self.sessions)


class AgentLoopCliController:
    """Coordinates loop, task queue, registry, control and git CLI operations."""

    # -- loop -------------------------------------------------------------

    def run_loop(self, command: RunLoopCommand) -> list[str]:
        settings = Settings.from_env(project_root=command.project_root)
        settings.validate()
        workspace = Workspace.from_settings(settings)
        loop = ExecutionLoop(
            loop_type=command.loop_type,
            settings=settings,
            tasks=workspace.tasks,
            registry=workspace.registry,
            signals=workspace.signals,
            sessions=workspace.sessions,
            worker=CliAgentWorker(),
            worktrees=workspace.worktrees if settings.loop.use_worktrees else None,
            process_id=os.getenv(PROCESS_ID_ENV) or None,
        )
        summary = loop.run(max_tasks=command.max_tasks, wait_for_tasks=command.wait_for_tasks)
        return [
            f"Loop {loop.process_id} finished: {summary.exit_reason or 'error'}",
            "Loop summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} skipped={summary.skipped} "
            f"released={summary.released} retried={summary.retried} "
            f"rate_limited={summary.rate_limited} timeouts={summary.timeouts} "
            f"idle_polls={summary.idle_polls}",
        ]

    # -- tasks ------------------------------------------------------------

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        status = TaskStatus(command.status.strip().lower()) if command.status else None
        tasks = workspace.tasks.list(status)
        tasks.sort(key=lambda task: (task.status.value, task.priority, task.created_at or ""))

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.id} status={task.status.value} priority={task.priority} "
                f"skips={len(task.skip_history)} name={task.name}",
            )
        return lines

    def show_task(self, command: TaskRefCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        task = workspace.tasks.get(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]
        return _task_lines(task)

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        task = workspace.tasks.create(command.task)
        return [
            f"Task created: task_id={task.id} status={task.status.value} "
            f"priority={task.priority}",
        ]

    def action_required(self, command: ProjectCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        items = workspace.tasks.action_required()
        lines = [f"Action required: {len(items)}"]
        for item in items:
            if item.type == "split":
                proposal = item.split_proposal or {}
                names = [str(sub.get("name", "")) for sub in proposal.get("sub_tasks", [])]
                lines.append(
                    f"  {item.task_id} split ({item.task_name}): {proposal.get('reason', '')}",
                )
                lines.extend(f"    - {name}" for name in names)
            else:
                question = item.question or {}
                lines.append(
                    f"  {item.task_id} question ({item.task_name}): "
                    f"{question.get('question', '')}",
                )
                lines.extend(f"    * {option}" for option in question.get("options", []))
        return lines

    def answer_task(self, command: TaskAnswerCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        answer: str | list[str] = (
            command.answers[0] if len(command.answers) == 1 else list(command.answers)
        )
        task = workspace.tasks.answer_question(
            command.task_id,
            answer,
            custom_text=command.custom_text,
        )
        return [f"Answer recorded: task_id={task.id} status={task.status.value}"]

    def decide_split(self, command: TaskSplitDecisionCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        parent, children = workspace.tasks.approve_split(
            command.task_id,
            approved=command.approved,
        )
        if not command.approved:
            return [f"Split rejected: task_id={parent.id} status={parent.status.value}"]
        lines = [f"Split approved: task_id={parent.id} status={parent.status.value}"]
        lines.extend(f"  created {child.id} {child.name}" for child in children)
        return lines

    def mark_done(self, command: TaskRefCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        task = workspace.tasks.mark_done(command.task_id)
        return [f"Task done: {task.id}"]

    def cancel_task(self, command: TaskRefCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        task = workspace.tasks.mark_cancelled(command.task_id)
        return [f"Task cancelled: {task.id}"]

    def reset_tasks(self, command: ProjectCommand) -> list[str]:
        """Return stuck in-progress and orphaned analysing tasks to the queue."""

        workspace = _workspace(command.project_root)
        in_progress = workspace.tasks.reset_in_progress()
        analysing = workspace.tasks.reset_analysing(
            live_task_ids=workspace.registry.live_task_ids(),
            safety_buffer=timedelta(seconds=workspace.settings.loop.analysing_safety_seconds),
        )
        return [
            f"In-progress tasks reset: {len(in_progress)}",
            f"Orphaned analysing tasks reset: {len(analysing)}",
        ]

    def mark_analysed(self, command: TaskAnalysedCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        analysis: dict[str, Any] = {"summary": command.summary}
        if command.analysis_json:
            extra = json.loads(command.analysis_json)
            if not isinstance(extra, dict):
                raise ValueError("--analysis-json must be a JSON object.")
            analysis.update(extra)
        task = workspace.tasks.mark_analysed(command.task_id, analysis)
        return [f"Task analysed: {task.id}"]

    def ask(self, command: TaskAskCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        task = workspace.tasks.mark_needs_input(
            command.task_id,
            question={"question": command.question, "options": list(command.options)},
        )
        return [f"Question recorded: task_id={task.id} status={task.status.value}"]

    def propose_split(self, command: TaskProposeSplitCommand) -> list[str]:
        if not command.sub_tasks:
            raise ValueError("A split proposal needs at least one --sub-task.")
        workspace = _workspace(command.project_root)
        task = workspace.tasks.mark_needs_input(
            command.task_id,
            split_proposal={
                "reason": command.reason,
                "sub_tasks": [{"name": name} for name in command.sub_tasks],
            },
        )
        return [
            f"Split proposed: task_id={task.id} sub_tasks={len(command.sub_tasks)} "
            f"status={task.status.value}",
        ]

    # -- processes --------------------------------------------------------

    def list_processes(self, command: ProcListCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        status = ProcessStatus(command.status) if command.status else None
        records = workspace.registry.list(command.process_type, status)
        records.sort(key=lambda record: record.started_at or "")

        lines = [f"Processes: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.id} type={record.type} status={record.status.value} "
                f"pid={record.pid or '-'} task={record.task_id or '-'} "
                f"heartbeat={record.heartbeat_status or '-'} "
                f"completed={record.tasks_completed}",
            )
        return lines

    def launch_process(self, command: ProcLaunchCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        args = ["run", "--type", command.loop_type]
        if command.max_tasks is not None:
            args.extend(["--max-tasks", str(command.max_tasks)])
        if command.no_wait:
            args.append("--no-wait")
        process_id = workspace.registry.launch(
            command.loop_type,
            args,
            description=f"{command.loop_type} loop",
        )
        record = workspace.registry.get(process_id)
        status = record.status.value if record is not None else "unknown"
        return [f"Process launched: {process_id} status={status}"]

    def stop_processes(self, command: ProcTargetCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        registry = workspace.registry
        if command.all_processes:
            stopped = registry.stop_all()
        elif command.target is None:
            raise ValueError("Pass a process id, a loop type or --all.")
        elif registry.get(command.target) is not None:
            stopped = [command.target] if registry.stop(command.target) else []
        else:
            stopped = registry.stop_by_type(command.target)
        return [f"Stop requested: {len(stopped)}", *(f"  {item}" for item in stopped)]

    def kill_processes(self, command: ProcTargetCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        registry = workspace.registry
        if command.all_processes:
            killed = registry.kill_all()
        elif command.target is None:
            raise ValueError("Pass a process id, a loop type or --all.")
        elif registry.get(command.target) is not None:
            killed = [command.target] if registry.kill(command.target) else []
        else:
            killed = registry.kill_by_type(command.target)
        return [f"Killed: {len(killed)}", *(f"  {item}" for item in killed)]

    def whisper(self, command: ProcWhisperCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        recipients = workspace.registry.whisper(
            command.target,
            command.message,
            priority=command.priority,
        )
        if not recipients:
            return [f"No live process matches {command.target}"]
        return [f"Whisper queued for: {', '.join(recipients)}"]

    def process_output(self, command: ProcOutputCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        entries, position = workspace.registry.read_activity(
            command.process_id,
            position=command.position,
            tail=command.tail,
        )
        lines: list[str] = []
        for entry in entries:
            line = f"{entry.get('timestamp', '-')} {entry.get('event', '-')}: "
            line += str(entry.get("message", ""))
            lines.append(line)
        lines.append(f"Next position: {position}")
        return lines

    # -- control ----------------------------------------------------------

    def control(self, command: ControlCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        result = workspace.control_plane().apply(command.action, command.mode)
        return [f"Control {result.action.value} ({result.mode.value})", *result.messages]

    def control_status(self, command: ProjectCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        snapshot = workspace.signals.snapshot()
        lines = [f"Signals: {', '.join(sorted(snapshot)) or 'none'}"]
        for name, payload in sorted(snapshot.items()):
            if payload.get("reason"):
                lines.append(f"  {name}: {payload['reason']}")
        for session in workspace.sessions.list():
            lines.append(
                f"Session {session.loop_type}: status={session.status.value} "
                f"completed={session.tasks_completed} failed={session.tasks_failed} "
                f"skipped={session.tasks_skipped} "
                f"consecutive_failures={session.consecutive_failures}",
            )
        live = [record for record in workspace.registry.list() if record.is_live]
        lines.append(f"Live processes: {len(live)}")
        lines.extend(
            f"  {record.id} type={record.type} task={record.task_id or '-'}" for record in live
        )
        return lines

    # -- worktrees and git ------------------------------------------------

    def list_worktrees(self, command: ProjectCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        entries = workspace.worktrees.list()
        lines = [f"Worktrees: {len(entries)}"]
        for entry in entries:
            status = workspace.tasks.status_of(entry.task_id)
            lines.append(
                f"  {entry.task_id} branch={entry.branch_name} "
                f"task_status={status.value if status else 'missing'} path={entry.worktree_path}",
            )
        return lines

    def reconcile_worktrees(self, command: ProjectCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        removed = workspace.worktrees.reconcile_orphans(workspace.tasks)
        return [f"Orphaned worktrees removed: {len(removed)}", *(f"  {item}" for item in removed)]

    def complete_worktree(self, command: TaskRefCommand) -> list[str]:
        workspace = _workspace(command.project_root)
        result = workspace.worktrees.complete(command.task_id)
        if not result.success:
            failure = result.failure.value if result.failure else "merge_failed"
            lines = [f"Merge failed ({failure}): {result.message}"]
            lines.extend(f"  conflict: {path}" for path in result.conflict_files)
            raise ValueError("\n".join(lines))
        return [f"Merged {command.task_id}: {result.merge_commit or 'no changes'}"]

    def git_status(self, command: ProjectCommand) -> list[str]:
        settings = Settings.from_env(project_root=command.project_root)
        status = repo_status(
            settings.paths.project_root,
            runner=GitRunner(timeout_seconds=settings.worktree.git_timeout_seconds),
        )
        if not status.success:
            raise ValueError(f"git status failed: {status.message}")
        lines = [
            f"Branch: {status.branch or '(detached)'}",
            f"Upstream: {status.upstream or '-'}",
            f"Ahead/behind: {status.ahead}/{status.behind}",
            f"Changed files: {len(status.changed_files)}",
        ]
        lines.extend(f"  {path}" for path in status.changed_files)
        return lines

    def git_commit_push(self, command: GitCommitPushCommand) -> list[str]:
        settings = Settings.from_env(project_root=command.project_root)
        result = commit_and_push(
            settings.paths.project_root,
            command.message,
            exclude=(settings.paths.state_dir_name,),
            runner=GitRunner(timeout_seconds=settings.worktree.git_timeout_seconds),
        )
        if not result.success:
            raise ValueError(f"commit-push failed: {result.message}")
        return [result.message, f"Commit: {result.commit or '-'}"]


def _workspace(project_root: Path | None) -> Workspace:
    return Workspace.from_settings(Settings.from_env(project_root=project_root))


def _task_lines(task: Task) -> list[str]:
    lines = [
        f"Task: {task.id}",
        f"Name: {task.name}",
        f"Status: {task.status.value}",
        f"Priority: {task.priority}",
        f"Category: {task.category or '-'}",
        f"Effort: {task.effort or '-'}",
        f"Dependencies: {', '.join(task.dependencies) or '-'}",
        f"Created: {task.created_at or '-'}",
        f"Started: {task.started_at or '-'}",
        f"Completed: {task.completed_at or '-'}",
        f"Analysed: {task.analysed_at or '-'}",
    ]
    if task.description:
        lines.append(f"Description: {task.description}")
    lines.extend(f"  criterion: {item}" for item in task.acceptance_criteria)
    lines.extend(f"  step: {item}" for item in task.steps)
    if task.pending_question:
        lines.append(f"Pending question: {task.pending_question.get('question', '')}")
    if task.split_proposal:
        lines.append(f"Split proposal: {task.split_proposal.get('reason', '')}")
    if task.split_into:
        lines.append(f"Split into: {', '.join(task.split_into)}")
    for entry in task.skip_history:
        lines.append(
            f"  skipped {entry.get('skipped_at', '-')} from={entry.get('from_status', '-')}: "
            f"{entry.get('reason', '')}",
        )
    return lines
