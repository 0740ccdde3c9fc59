"""CLI entrypoint for agent-loop."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from agent_loop import __version__
from agent_loop.control.plane import ControlAction, ControlMode
from agent_loop.orchestrator.controllers import (
    AgentLoopCliController,
    ControlCommand,
    GitCommitPushCommand,
    ProcLaunchCommand,
    ProcListCommand,
    ProcOutputCommand,
    ProcTargetCommand,
    ProcWhisperCommand,
    ProjectCommand,
    RunLoopCommand,
    TaskAnalysedCommand,
    TaskAnswerCommand,
    TaskAskCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskProposeSplitCommand,
    TaskRefCommand,
    TaskSplitDecisionCommand,
)
from agent_loop.registry import LoopType, ProcessStatus
from agent_loop.tasks.models import TaskCreate, TaskStatus
from agent_loop.tasks.store import TaskStoreError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = AgentLoopCliController()

LOOP_TYPES = [item.value for item in LoopType]
CONTROL_MODES = [item.value for item in ControlMode]

project_root_option = click.option(
    "--project-root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project checkout (defaults to AGENT_LOOP_PROJECT_ROOT or the current directory).",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-loop")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Console log level.",
)
def agent_loop(log_level: str) -> None:
    """Autonomous coding-agent loops coordinated through the filesystem."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_loop.command("run")
@project_root_option
@click.option(
    "--type",
    "loop_type",
    type=click.Choice(LOOP_TYPES),
    default=LoopType.EXECUTION.value,
    show_default=True,
    help="Which loop to run.",
)
@click.option("--once", is_flag=True, help="Process a single task and exit.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks.",
)
@click.option("--no-wait", is_flag=True, help="Exit when the queue is empty instead of polling.")
def run(
    project_root: Path | None,
    loop_type: str,
    once: bool,
    max_tasks: int | None,
    no_wait: bool,
) -> None:
    """Run an analysis or execution loop in the foreground."""

    with _operator_errors():
        lines = CONTROLLER.run_loop(
            RunLoopCommand(
                project_root=project_root,
                loop_type=loop_type,
                max_tasks=1 if once else max_tasks,
                wait_for_tasks=not (no_wait or once),
            ),
        )
    _emit_lines(lines)


# -- tasks -------------------------------------------------------------------


@agent_loop.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("list")
@project_root_option
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus]),
    default=None,
    help="Only tasks in this status.",
)
def tasks_list(project_root: Path | None, status: str | None) -> None:
    """List tasks across all status directories."""

    _emit_lines(CONTROLLER.list_tasks(TaskListCommand(project_root=project_root, status=status)))


@tasks.command("show")
@project_root_option
@click.argument("task_id")
def tasks_show(project_root: Path | None, task_id: str) -> None:
    """Show one task record."""

    _emit_lines(CONTROLLER.show_task(TaskRefCommand(project_root=project_root, task_id=task_id)))


@tasks.command("create")
@project_root_option
@click.argument("name")
@click.option("--id", "task_id", default=None, help="Explicit task id (default: random).")
@click.option("--description", default="", help="What needs to be done.")
@click.option("--category", default="", help="Free-form category.")
@click.option(
    "--priority",
    type=int,
    default=100,
    show_default=True,
    help="Lower runs first.",
)
@click.option("--effort", default="", help="Effort estimate.")
@click.option(
    "--criterion",
    "criteria",
    multiple=True,
    help="Acceptance criterion. Can be repeated.",
)
@click.option("--step", "steps", multiple=True, help="Implementation step. Can be repeated.")
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Task id that must be done first. Can be repeated.",
)
def tasks_create(  # noqa: PLR0913
    project_root: Path | None,
    name: str,
    task_id: str | None,
    description: str,
    category: str,
    priority: int,
    effort: str,
    criteria: tuple[str, ...],
    steps: tuple[str, ...],
    dependencies: tuple[str, ...],
) -> None:
    """Add a task to the todo queue."""

    with _operator_errors():
        lines = CONTROLLER.create_task(
            TaskCreateCommand(
                project_root=project_root,
                task=TaskCreate(
                    name=name,
                    task_id=task_id,
                    description=description,
                    category=category,
                    priority=priority,
                    effort=effort,
                    acceptance_criteria=list(criteria),
                    steps=list(steps),
                    dependencies=list(dependencies),
                ),
            ),
        )
    _emit_lines(lines)


@tasks.command("action-required")
@project_root_option
def tasks_action_required(project_root: Path | None) -> None:
    """List questions and split proposals waiting for an operator."""

    _emit_lines(CONTROLLER.action_required(ProjectCommand(project_root=project_root)))


@tasks.command("answer")
@project_root_option
@click.argument("task_id")
@click.argument("answers", nargs=-1, required=True)
@click.option("--custom-text", default=None, help="Free-text note attached to the answer.")
def tasks_answer(
    project_root: Path | None,
    task_id: str,
    answers: tuple[str, ...],
    custom_text: str | None,
) -> None:
    """Answer the pending question of a needs-input task."""

    with _operator_errors():
        lines = CONTROLLER.answer_task(
            TaskAnswerCommand(
                project_root=project_root,
                task_id=task_id,
                answers=answers,
                custom_text=custom_text,
            ),
        )
    _emit_lines(lines)


@tasks.command("approve-split")
@project_root_option
@click.argument("task_id")
@click.option("--reject", is_flag=True, help="Reject the proposal instead of applying it.")
def tasks_approve_split(project_root: Path | None, task_id: str, reject: bool) -> None:
    """Apply (or reject) a proposed split into sub-tasks."""

    with _operator_errors():
        lines = CONTROLLER.decide_split(
            TaskSplitDecisionCommand(
                project_root=project_root,
                task_id=task_id,
                approved=not reject,
            ),
        )
    _emit_lines(lines)


@tasks.command("done")
@project_root_option
@click.argument("task_id")
def tasks_done(project_root: Path | None, task_id: str) -> None:
    """Mark a task done (agents call this when finished)."""

    with _operator_errors():
        lines = CONTROLLER.mark_done(TaskRefCommand(project_root=project_root, task_id=task_id))
    _emit_lines(lines)


@tasks.command("cancel")
@project_root_option
@click.argument("task_id")
def tasks_cancel(project_root: Path | None, task_id: str) -> None:
    """Cancel a task that is not finished yet."""

    with _operator_errors():
        lines = CONTROLLER.cancel_task(TaskRefCommand(project_root=project_root, task_id=task_id))
    _emit_lines(lines)


@tasks.command("reset")
@project_root_option
def tasks_reset(project_root: Path | None) -> None:
    """Return stuck in-progress and orphaned analysing tasks to the queue."""

    _emit_lines(CONTROLLER.reset_tasks(ProjectCommand(project_root=project_root)))


@tasks.command("analysed")
@project_root_option
@click.argument("task_id")
@click.option("--summary", required=True, help="One-paragraph analysis summary.")
@click.option("--analysis-json", default=None, help="Extra analysis fields as a JSON object.")
def tasks_analysed(
    project_root: Path | None,
    task_id: str,
    summary: str,
    analysis_json: str | None,
) -> None:
    """Record a finished analysis (agent callback)."""

    with _operator_errors():
        lines = CONTROLLER.mark_analysed(
            TaskAnalysedCommand(
                project_root=project_root,
                task_id=task_id,
                summary=summary,
                analysis_json=analysis_json,
            ),
        )
    _emit_lines(lines)


@tasks.command("ask")
@project_root_option
@click.argument("task_id")
@click.argument("question")
@click.option("--option", "options", multiple=True, help="Answer choice. Can be repeated.")
def tasks_ask(
    project_root: Path | None,
    task_id: str,
    question: str,
    options: tuple[str, ...],
) -> None:
    """Park an analysing task until an operator answers (agent callback)."""

    with _operator_errors():
        lines = CONTROLLER.ask(
            TaskAskCommand(
                project_root=project_root,
                task_id=task_id,
                question=question,
                options=options,
            ),
        )
    _emit_lines(lines)


@tasks.command("propose-split")
@project_root_option
@click.argument("task_id")
@click.option("--reason", required=True, help="Why the task should be split.")
@click.option("--sub-task", "sub_tasks", multiple=True, help="Sub-task name. Can be repeated.")
def tasks_propose_split(
    project_root: Path | None,
    task_id: str,
    reason: str,
    sub_tasks: tuple[str, ...],
) -> None:
    """Propose splitting an analysing task (agent callback)."""

    with _operator_errors():
        lines = CONTROLLER.propose_split(
            TaskProposeSplitCommand(
                project_root=project_root,
                task_id=task_id,
                reason=reason,
                sub_tasks=sub_tasks,
            ),
        )
    _emit_lines(lines)


# -- processes ---------------------------------------------------------------


@agent_loop.group()
def proc() -> None:
    """Process registry commands."""


@proc.command("list")
@project_root_option
@click.option("--type", "process_type", default=None, help="Only processes of this type.")
@click.option(
    "--status",
    type=click.Choice([item.value for item in ProcessStatus]),
    default=None,
    help="Only processes in this status.",
)
def proc_list(project_root: Path | None, process_type: str | None, status: str | None) -> None:
    """List registered processes (sweeps dead and expired records first)."""

    _emit_lines(
        CONTROLLER.list_processes(
            ProcListCommand(project_root=project_root, process_type=process_type, status=status),
        ),
    )


@proc.command("launch")
@project_root_option
@click.option(
    "--type",
    "loop_type",
    type=click.Choice(LOOP_TYPES),
    required=True,
    help="Which loop to launch.",
)
@click.option("--max-tasks", type=click.IntRange(min=1), default=None, help="Cap for tasks.")
@click.option("--no-wait", is_flag=True, help="Let the loop exit when the queue is empty.")
def proc_launch(
    project_root: Path | None,
    loop_type: str,
    max_tasks: int | None,
    no_wait: bool,
) -> None:
    """Launch a detached loop process and wait for it to register."""

    _emit_lines(
        CONTROLLER.launch_process(
            ProcLaunchCommand(
                project_root=project_root,
                loop_type=loop_type,
                max_tasks=max_tasks,
                no_wait=no_wait,
            ),
        ),
    )


@proc.command("stop")
@project_root_option
@click.argument("target", required=False)
@click.option("--all", "all_processes", is_flag=True, help="Stop every live process.")
def proc_stop(project_root: Path | None, target: str | None, all_processes: bool) -> None:
    """Ask a process (by id) or every process of a type to stop after its current step."""

    with _operator_errors():
        lines = CONTROLLER.stop_processes(
            ProcTargetCommand(
                project_root=project_root,
                target=target,
                all_processes=all_processes,
            ),
        )
    _emit_lines(lines)


@proc.command("kill")
@project_root_option
@click.argument("target", required=False)
@click.option("--all", "all_processes", is_flag=True, help="Kill every live process.")
def proc_kill(project_root: Path | None, target: str | None, all_processes: bool) -> None:
    """Terminate a process tree immediately and mark its record stopped."""

    with _operator_errors():
        lines = CONTROLLER.kill_processes(
            ProcTargetCommand(
                project_root=project_root,
                target=target,
                all_processes=all_processes,
            ),
        )
    _emit_lines(lines)


@proc.command("whisper")
@project_root_option
@click.argument("target")
@click.argument("message")
@click.option(
    "--priority",
    type=click.Choice(["normal", "high"]),
    default="normal",
    show_default=True,
    help="High-priority instructions are listed first in the next prompt.",
)
def proc_whisper(project_root: Path | None, target: str, message: str, priority: str) -> None:
    """Queue an operator instruction for a process id or every live process of a type."""

    _emit_lines(
        CONTROLLER.whisper(
            ProcWhisperCommand(
                project_root=project_root,
                target=target,
                message=message,
                priority=priority,
            ),
        ),
    )


@proc.command("output")
@project_root_option
@click.argument("process_id")
@click.option(
    "--position",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Byte offset returned by the previous call.",
)
@click.option("--tail", type=click.IntRange(min=1), default=None, help="Only the last N entries.")
def proc_output(
    project_root: Path | None,
    process_id: str,
    position: int,
    tail: int | None,
) -> None:
    """Read a process activity log from a byte-offset cursor."""

    _emit_lines(
        CONTROLLER.process_output(
            ProcOutputCommand(
                project_root=project_root,
                process_id=process_id,
                position=position,
                tail=tail,
            ),
        ),
    )


# -- control -----------------------------------------------------------------


@agent_loop.group()
def control() -> None:
    """Start, stop, pause, resume or reset the loops."""


def _control_command(action: ControlAction, help_text: str) -> None:
    @control.command(action.value, help=help_text)
    @project_root_option
    @click.option(
        "--mode",
        type=click.Choice(CONTROL_MODES),
        default=ControlMode.BOTH.value,
        show_default=True,
        help="Which loops the action applies to.",
    )
    def _command(project_root: Path | None, mode: str) -> None:
        _emit_lines(
            CONTROLLER.control(
                ControlCommand(project_root=project_root, action=action.value, mode=mode),
            ),
        )


_control_command(ControlAction.START, "Clear stop signals and launch the selected loops.")
_control_command(ControlAction.STOP, "Assert stop and ask running loops to exit.")
_control_command(ControlAction.PAUSE, "Pause the loops between steps.")
_control_command(ControlAction.RESUME, "Clear pause and scoped stop signals.")
_control_command(
    ControlAction.RESET,
    "Clear all signals, mark live processes stopped and drop session locks.",
)


@control.command("status")
@project_root_option
def control_status(project_root: Path | None) -> None:
    """Show asserted signals, loop sessions and live processes."""

    _emit_lines(CONTROLLER.control_status(ProjectCommand(project_root=project_root)))


# -- worktrees and git -------------------------------------------------------


@agent_loop.group()
def worktree() -> None:
    """Per-task git worktree commands."""


@worktree.command("list")
@project_root_option
def worktree_list(project_root: Path | None) -> None:
    """List mapped task worktrees."""

    _emit_lines(CONTROLLER.list_worktrees(ProjectCommand(project_root=project_root)))


@worktree.command("reconcile")
@project_root_option
def worktree_reconcile(project_root: Path | None) -> None:
    """Remove worktrees whose task is missing or already done."""

    _emit_lines(CONTROLLER.reconcile_worktrees(ProjectCommand(project_root=project_root)))


@worktree.command("complete")
@project_root_option
@click.argument("task_id")
def worktree_complete(project_root: Path | None, task_id: str) -> None:
    """Squash-merge a task worktree into the base branch and remove it."""

    with _operator_errors():
        lines = CONTROLLER.complete_worktree(
            TaskRefCommand(project_root=project_root, task_id=task_id),
        )
    _emit_lines(lines)


@agent_loop.group()
def git() -> None:
    """Main checkout git commands."""


@git.command("status")
@project_root_option
def git_status(project_root: Path | None) -> None:
    """Show branch, upstream drift and changed files."""

    with _operator_errors():
        lines = CONTROLLER.git_status(ProjectCommand(project_root=project_root))
    _emit_lines(lines)


@git.command("commit-push")
@project_root_option
@click.option("--message", "-m", required=True, help="Commit message.")
def git_commit_push(project_root: Path | None, message: str) -> None:
    """Commit everything outside the state directory and push."""

    with _operator_errors():
        lines = CONTROLLER.git_commit_push(
            GitCommitPushCommand(project_root=project_root, message=message),
        )
    _emit_lines(lines)


@contextmanager
def _operator_errors() -> Iterator[None]:
    try:
        yield
    except (TaskStoreError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_loop()
