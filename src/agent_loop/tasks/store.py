"""Directory-partitioned task queue.

Each task is one JSON file under ``<tasks_dir>/<status>/<task_id>.json``. A status
transition renames the file into the target directory and then rewrites it in
place; the rename is atomic, so when several loops race for the same task only
one of them wins the move. The directory is the source of truth for the status.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_loop.storage import (
    MalformedRecordError,
    from_iso,
    load_json,
    utc_now,
    write_json_atomic,
)
from agent_loop.tasks.models import (
    TERMINAL_STATUSES,
    ActionItem,
    Task,
    TaskCreate,
    TaskStatus,
)

logger = logging.getLogger(__name__)

ANALYSING_SAFETY_BUFFER = timedelta(minutes=5)


class TaskStoreError(RuntimeError):
    """Base error for operator-facing task mutations."""


class TaskNotFoundError(TaskStoreError):
    """Raised when no status directory holds the requested task."""


class InvalidTransitionError(TaskStoreError):
    """Raised when a task is not in a status the mutation accepts."""


class TaskStore:
    """Implements the task state machine on top of status directories."""

    def __init__(self, root_dir: Path, *, max_skips: int = 3) -> None:
        self.root_dir = root_dir
        self.max_skips = max_skips

    def ensure_layout(self) -> None:
        for status in TaskStatus:
            self._status_dir(status).mkdir(parents=True, exist_ok=True)

    # -- reads ------------------------------------------------------------

    def get(self, task_id: str) -> Task | None:
        located = self._locate(task_id)
        if located is None:
            return None
        status, path = located
        return self._read(path, status)

    def status_of(self, task_id: str) -> TaskStatus | None:
        located = self._locate(task_id)
        return None if located is None else located[0]

    def list(self, status: TaskStatus | Iterable[TaskStatus] | None = None) -> list[Task]:
        """Scan status directories; malformed records are logged and skipped."""

        if status is None:
            statuses: tuple[TaskStatus, ...] = tuple(TaskStatus)
        elif isinstance(status, TaskStatus):
            statuses = (status,)
        else:
            statuses = tuple(status)

        tasks: list[Task] = []
        for current in statuses:
            directory = self._status_dir(current)
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob("*.json")):
                task = self._read(path, current)
                if task is not None:
                    tasks.append(task)
        return tasks

    def fetch_next(
        self,
        statuses: Iterable[TaskStatus] = (TaskStatus.TODO,),
        *,
        exclude: Iterable[str] = (),
    ) -> Task | None:
        """Return the highest-priority eligible task without claiming it.

        Lower ``priority`` wins; ties go to the earliest ``created_at``. Tasks
        with dependencies that are not yet done are not eligible.
        """

        excluded = set(exclude)
        done_ids = self._ids_in(TaskStatus.DONE)
        candidates = [
            task
            for task in self.list(tuple(statuses))
            if task.id not in excluded and all(dep in done_ids for dep in task.dependencies)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda task: (task.priority, task.created_at or "", task.id))
        return candidates[0]

    def action_required(self) -> list[ActionItem]:
        items: list[ActionItem] = []
        for task in self.list(TaskStatus.NEEDS_INPUT):
            if task.split_proposal:
                items.append(
                    ActionItem(
                        type="split",
                        task_id=task.id,
                        task_name=task.name,
                        split_proposal=task.split_proposal,
                    ),
                )
            else:
                items.append(
                    ActionItem(
                        type="question",
                        task_id=task.id,
                        task_name=task.name,
                        question=task.pending_question,
                    ),
                )
        return items

    # -- creation ---------------------------------------------------------

    def create(self, command: TaskCreate) -> Task:
        task_id = command.task_id or uuid4().hex
        if self._locate(task_id) is not None:
            raise ValueError(f"Task already exists: {task_id}")
        now = utc_now().isoformat()
        task = Task(
            id=task_id,
            name=command.name,
            status=TaskStatus.TODO,
            description=command.description,
            category=command.category,
            priority=command.priority,
            effort=command.effort,
            acceptance_criteria=list(command.acceptance_criteria),
            steps=list(command.steps),
            dependencies=list(command.dependencies),
            applicable_agents=list(command.applicable_agents),
            applicable_standards=list(command.applicable_standards),
            created_at=now,
            updated_at=now,
        )
        write_json_atomic(self._path(TaskStatus.TODO, task_id), task.to_dict())
        logger.info("Task created: %s (%s) priority=%s", task.short_id, task.name, task.priority)
        return task

    # -- loop-facing transitions (return None when another process won) ---

    def mark_in_progress(
        self,
        task_id: str,
        *,
        from_statuses: Iterable[TaskStatus] = (TaskStatus.TODO, TaskStatus.ANALYSED),
    ) -> Task | None:
        """Claim a task for execution; the directory move is the claim."""

        def _claim(task: Task, now: datetime) -> None:
            task.started_at = now.isoformat()

        return self._claim(
            task_id,
            from_statuses=tuple(from_statuses),
            to_status=TaskStatus.IN_PROGRESS,
            mutate=_claim,
        )

    def mark_analysing(self, task_id: str) -> Task | None:
        def _open_session(task: Task, now: datetime) -> None:
            task.analysis_sessions.append({"started_at": now.isoformat(), "ended_at": None})

        return self._claim(
            task_id,
            from_statuses=(TaskStatus.TODO,),
            to_status=TaskStatus.ANALYSING,
            mutate=_open_session,
        )

    def mark_done(self, task_id: str) -> Task:
        """Move a task to done; already-done tasks are returned unchanged."""

        current = self._require(task_id)
        if current.status == TaskStatus.DONE:
            return current

        def _complete(task: Task, now: datetime) -> None:
            task.completed_at = now.isoformat()
            _close_open_sessions(task, now)

        return self._mutate(
            task_id,
            allowed_from=_non_terminal(),
            to_status=TaskStatus.DONE,
            mutate=_complete,
        )

    def mark_skipped(self, task_id: str, reason: str, *, reopen: bool = False) -> Task:
        """Record a skip and put the task back in ``todo``.

        Once ``skip_history`` holds ``max_skips`` entries the task parks in
        ``skipped`` instead of returning to the queue. ``reopen`` also accepts a
        task a worker already marked done, for work that failed to merge.
        """

        current = self._require(task_id)
        entry = {
            "reason": reason,
            "skipped_at": utc_now().isoformat(),
            "from_status": current.status.value,
        }
        to_status = (
            TaskStatus.SKIPPED
            if len(current.skip_history) + 1 >= self.max_skips
            else TaskStatus.TODO
        )

        def _skip(task: Task, now: datetime) -> None:
            task.skip_history.append(entry)
            task.started_at = None
            task.completed_at = None
            _close_open_sessions(task, now)

        allowed = _non_terminal() + ((TaskStatus.DONE,) if reopen else ())
        task = self._mutate(
            task_id,
            allowed_from=allowed,
            to_status=to_status,
            mutate=_skip,
        )
        logger.info(
            "Task %s skipped (%d/%d) -> %s: %s",
            task.short_id,
            len(task.skip_history),
            self.max_skips,
            task.status.value,
            reason,
        )
        return task

    def release(self, task_id: str) -> Task | None:
        """Hand a claimed task back to its queue without recording a skip."""

        current = self.get(task_id)
        if current is None:
            return None
        if current.status == TaskStatus.IN_PROGRESS:
            to_status = TaskStatus.ANALYSED if current.has_analysis else TaskStatus.TODO
        elif current.status == TaskStatus.ANALYSING:
            to_status = TaskStatus.TODO
        else:
            return current

        def _release(task: Task, now: datetime) -> None:
            task.started_at = None
            _close_open_sessions(task, now)

        return self._claim(
            task_id,
            from_statuses=(current.status,),
            to_status=to_status,
            mutate=_release,
        )

    def reset_in_progress(self) -> list[str]:
        """Return every in-progress task to analysed/todo, clearing ``started_at``."""

        reset_ids: list[str] = []
        for task in self.list(TaskStatus.IN_PROGRESS):
            to_status = TaskStatus.ANALYSED if task.has_analysis else TaskStatus.TODO

            def _reset(item: Task, _: datetime) -> None:
                item.started_at = None

            moved = self._claim(
                task.id,
                from_statuses=(TaskStatus.IN_PROGRESS,),
                to_status=to_status,
                mutate=_reset,
            )
            if moved is not None:
                reset_ids.append(moved.id)
                logger.info("Reset in-progress task %s -> %s", moved.short_id, to_status.value)
        return reset_ids

    def reset_analysing(
        self,
        *,
        live_task_ids: Iterable[str],
        safety_buffer: timedelta = ANALYSING_SAFETY_BUFFER,
        now: datetime | None = None,
    ) -> list[str]:
        """Return orphaned ``analysing`` tasks to ``todo``.

        A task is orphaned when no live process references it and it has not
        been touched within ``safety_buffer``; the buffer keeps a just-launched
        worker from losing its task before it registers.
        """

        live = set(live_task_ids)
        current_time = now or utc_now()
        reset_ids: list[str] = []
        for task in self.list(TaskStatus.ANALYSING):
            if task.id in live:
                continue
            updated_at = from_iso(task.updated_at)
            if updated_at is not None and current_time - updated_at < safety_buffer:
                continue

            moved = self._claim(
                task.id,
                from_statuses=(TaskStatus.ANALYSING,),
                to_status=TaskStatus.TODO,
                mutate=_close_open_sessions,
                now=current_time,
            )
            if moved is not None:
                reset_ids.append(moved.id)
                logger.warning("Recovered orphaned analysing task %s", moved.short_id)
        return reset_ids

    # -- analysis + operator transitions (raise on invalid input) ---------

    def mark_analysed(self, task_id: str, analysis: dict[str, Any] | None = None) -> Task:
        def _analysed(task: Task, now: datetime) -> None:
            task.analysis = dict(analysis or task.analysis or {"completed": True})
            task.analysed_at = now.isoformat()
            task.pending_question = None
            _close_open_sessions(task, now)

        return self._mutate(
            task_id,
            allowed_from=(TaskStatus.ANALYSING, TaskStatus.NEEDS_INPUT),
            to_status=TaskStatus.ANALYSED,
            mutate=_analysed,
        )

    def mark_needs_input(
        self,
        task_id: str,
        *,
        question: dict[str, Any] | None = None,
        split_proposal: dict[str, Any] | None = None,
    ) -> Task:
        if question is None and split_proposal is None:
            raise ValueError("needs-input requires a question or a split proposal.")

        def _needs_input(task: Task, now: datetime) -> None:
            task.pending_question = question
            task.split_proposal = split_proposal
            _close_open_sessions(task, now)

        return self._mutate(
            task_id,
            allowed_from=(TaskStatus.ANALYSING,),
            to_status=TaskStatus.NEEDS_INPUT,
            mutate=_needs_input,
        )

    def answer_question(
        self,
        task_id: str,
        answer: str | list[str],
        *,
        custom_text: str | None = None,
    ) -> Task:
        """Resolve the pending question and send the task back for analysis."""

        current = self._require(task_id)
        if current.status != TaskStatus.NEEDS_INPUT or current.pending_question is None:
            raise InvalidTransitionError(f"Task {task_id} has no pending question.")

        def _answer(task: Task, now: datetime) -> None:
            pending = task.pending_question or {}
            resolved: dict[str, Any] = {
                "question": pending.get("question", ""),
                "answer": answer,
                "answered_at": now.isoformat(),
            }
            if custom_text:
                resolved["custom_text"] = custom_text
            task.questions_resolved.append(resolved)
            task.pending_question = None

        return self._mutate(
            task_id,
            allowed_from=(TaskStatus.NEEDS_INPUT,),
            to_status=TaskStatus.TODO,
            mutate=_answer,
        )

    def approve_split(self, task_id: str, *, approved: bool) -> tuple[Task, list[Task]]:
        """Apply or reject a split proposal.

        Approval creates one ``todo`` task per proposed sub-task and cancels the
        parent. Rejection drops the proposal and returns the parent to the queue.
        """

        current = self._require(task_id)
        proposal = current.split_proposal
        if current.status != TaskStatus.NEEDS_INPUT or not proposal:
            raise InvalidTransitionError(f"Task {task_id} has no split proposal.")

        if not approved:
            to_status = TaskStatus.ANALYSED if current.has_analysis else TaskStatus.TODO

            def _reject(task: Task, _: datetime) -> None:
                task.split_proposal = None

            parent = self._mutate(
                task_id,
                allowed_from=(TaskStatus.NEEDS_INPUT,),
                to_status=to_status,
                mutate=_reject,
            )
            return parent, []

        children: list[Task] = []
        for sub_task in proposal.get("sub_tasks", []):
            if not isinstance(sub_task, dict) or not str(sub_task.get("name", "")).strip():
                continue
            children.append(
                self.create(
                    TaskCreate(
                        name=str(sub_task["name"]).strip(),
                        description=str(sub_task.get("description", "")),
                        category=current.category,
                        priority=int(sub_task.get("priority", current.priority)),
                        effort=str(sub_task.get("effort", "")),
                        acceptance_criteria=list(sub_task.get("acceptance_criteria", [])),
                        dependencies=list(current.dependencies),
                        applicable_agents=list(current.applicable_agents),
                        applicable_standards=list(current.applicable_standards),
                    ),
                ),
            )

        def _cancel_parent(task: Task, now: datetime) -> None:
            task.split_into = [child.id for child in children]
            task.split_proposal = None
            task.cancelled_at = now.isoformat()

        parent = self._mutate(
            task_id,
            allowed_from=(TaskStatus.NEEDS_INPUT,),
            to_status=TaskStatus.CANCELLED,
            mutate=_cancel_parent,
        )
        logger.info("Task %s split into %d sub-tasks", parent.short_id, len(children))
        return parent, children

    def mark_cancelled(self, task_id: str) -> Task:
        def _cancel(task: Task, now: datetime) -> None:
            task.cancelled_at = now.isoformat()
            task.started_at = None
            _close_open_sessions(task, now)

        return self._mutate(
            task_id,
            allowed_from=_non_terminal(),
            to_status=TaskStatus.CANCELLED,
            mutate=_cancel,
        )

    # -- internals --------------------------------------------------------

    def _status_dir(self, status: TaskStatus) -> Path:
        return self.root_dir / status.value

    def _path(self, status: TaskStatus, task_id: str) -> Path:
        return self._status_dir(status) / f"{task_id}.json"

    def _ids_in(self, status: TaskStatus) -> set[str]:
        directory = self._status_dir(status)
        if not directory.is_dir():
            return set()
        return {path.stem for path in directory.glob("*.json")}

    def _locate(self, task_id: str) -> tuple[TaskStatus, Path] | None:
        for status in TaskStatus:
            path = self._path(status, task_id)
            if path.is_file():
                return status, path
        return None

    def _require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def _read(self, path: Path, status: TaskStatus) -> Task | None:
        try:
            task = Task.from_dict(load_json(path))
        except FileNotFoundError:
            return None
        except (MalformedRecordError, ValueError, TypeError) as error:
            logger.warning("Skipping malformed task record %s: %s", path, error)
            return None
        task.status = status
        return task

    def _claim(
        self,
        task_id: str,
        *,
        from_statuses: tuple[TaskStatus, ...],
        to_status: TaskStatus,
        mutate: Callable[[Task, datetime], None] | None = None,
        now: datetime | None = None,
    ) -> Task | None:
        for status in from_statuses:
            source = self._path(status, task_id)
            if not source.is_file():
                continue
            moved = self._move_and_rewrite(
                source,
                task_id=task_id,
                to_status=to_status,
                mutate=mutate,
                now=now,
            )
            if moved is not None:
                return moved
        return None

    def _mutate(
        self,
        task_id: str,
        *,
        allowed_from: Iterable[TaskStatus],
        to_status: TaskStatus,
        mutate: Callable[[Task, datetime], None],
    ) -> Task:
        located = self._locate(task_id)
        if located is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        status, source = located
        allowed = tuple(allowed_from)
        if status not in allowed:
            raise InvalidTransitionError(
                f"Task {task_id} is {status.value}; expected one of "
                f"{', '.join(item.value for item in allowed)}.",
            )
        moved = self._move_and_rewrite(source, task_id=task_id, to_status=to_status, mutate=mutate)
        if moved is None:
            raise InvalidTransitionError(f"Task {task_id} changed status concurrently.")
        return moved

    def _move_and_rewrite(
        self,
        source: Path,
        *,
        task_id: str,
        to_status: TaskStatus,
        mutate: Callable[[Task, datetime], None] | None,
        now: datetime | None = None,
    ) -> Task | None:
        target = self._path(to_status, task_id)
        if source != target:
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                os.rename(source, target)
            except FileNotFoundError:
                return None
            except FileExistsError:
                logger.error("Refusing to overwrite existing task record %s", target)
                return None

        try:
            task = Task.from_dict(load_json(target))
        except FileNotFoundError:
            return None
        except (MalformedRecordError, ValueError, TypeError) as error:
            logger.warning("Task record %s is malformed after move: %s", target, error)
            return None

        current_time = now or utc_now()
        task.status = to_status
        if mutate is not None:
            mutate(task, current_time)
        task.updated_at = current_time.isoformat()
        write_json_atomic(target, task.to_dict())
        return task


def _close_open_sessions(task: Task, now: datetime) -> None:
    for session in task.analysis_sessions:
        if isinstance(session, dict) and not session.get("ended_at"):
            session["ended_at"] = now.isoformat()


def _non_terminal() -> tuple[TaskStatus, ...]:
    return tuple(status for status in TaskStatus if status not in TERMINAL_STATUSES)
