"""Long-running loop that dispatches queued tasks to a CLI coding agent."""

from __future__ import annotations

import logging
import shutil
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import timedelta
from enum import Enum
from typing import Any
from uuid import uuid4

from agent_loop.config import Settings
from agent_loop.control.session import SessionLock, SessionState, SessionStatus, SessionStore
from agent_loop.control.signals import ControlSignalStore, WaitOutcome
from agent_loop.orchestrator.backend import Worker, WorkerRequest, WorkerResult, WorkerRunError
from agent_loop.orchestrator.failure_classifier import (
    FailureClassification,
    FailureType,
    classify_worker_outcome,
)
from agent_loop.orchestrator.rate_limit import RateLimitPolicy
from agent_loop.registry import PROCESS_ID_ENV, LoopType, ProcessRegistry, ProcessStatus
from agent_loop.tasks.models import Task, TaskStatus
from agent_loop.tasks.prompts import (
    PromptBuildError,
    build_analysis_prompt,
    build_execution_prompt,
    load_template,
)
from agent_loop.tasks.store import InvalidTransitionError, TaskStore
from agent_loop.worktree.manager import WorktreeManager, WorktreeResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoopRunSummary:
    """Aggregate loop counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    released: int = 0
    retried: int = 0
    rate_limited: int = 0
    timeouts: int = 0
    idle_polls: int = 0
    pauses: int = 0
    exit_reason: str = ""


class TaskOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    RELEASED = "released"


@dataclass(slots=True)
class AttemptResult:
    """What one worker invocation produced."""

    session_id: str
    classification: FailureClassification | None
    output: str = ""
    exit_code: int | None = None
    interrupted: bool = False


class ExecutionLoop:
    """Fetch, dispatch, classify and retry/skip/succeed, one task at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        loop_type: str,
        settings: Settings,
        tasks: TaskStore,
        registry: ProcessRegistry,
        signals: ControlSignalStore,
        sessions: SessionStore,
        worker: Worker,
        worktrees: WorktreeManager | None = None,
        rate_limit: RateLimitPolicy | None = None,
        process_id: str | None = None,
    ) -> None:
        self.loop_type = LoopType(loop_type).value
        self.settings = settings
        self.tasks = tasks
        self.registry = registry
        self.signals = signals
        self.sessions = sessions
        self.worker = worker
        self.worktrees = worktrees
        self.rate_limit = rate_limit or RateLimitPolicy(settings.rate_limit)
        self.process_id = process_id or f"{self.loop_type}-{uuid4().hex[:8]}"
        self.runs_dir = settings.paths.control_dir / "runs" / self.loop_type
        self.session: SessionState | None = None
        self._template = load_template(settings.worker.prompt_template_path)
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._skipped_ids: set[str] = set()
        self._whisper_offset = 0
        self._whispers: list[dict[str, Any]] = []

    @property
    def is_analysis(self) -> bool:
        return self.loop_type == LoopType.ANALYSIS.value

    # -- public -----------------------------------------------------------

    def run(self, *, max_tasks: int | None = None, wait_for_tasks: bool = True) -> LoopRunSummary:
        """Run until stopped, idle (when not waiting) or ``max_tasks`` processed."""

        summary = LoopRunSummary()
        self.registry.register(
            self.loop_type,
            process_id=self.process_id,
            description=f"{self.loop_type} loop",
            model=self._model(),
        )
        lock = SessionLock(self.sessions.lock_path(self.loop_type))
        if not lock.acquire():
            summary.exit_reason = "session_locked"
            self.registry.set_status(self.process_id, ProcessStatus.STOPPED)
            self.registry.log_activity(
                self.process_id,
                "session_locked",
                f"Another {self.loop_type} loop holds the session lock",
            )
            return summary

        try:
            self._startup()
            with self._signal_handlers():
                summary.exit_reason = self._run_loop(
                    summary,
                    max_tasks=max_tasks,
                    wait_for_tasks=wait_for_tasks,
                )
        finally:
            self._shutdown(summary)
            lock.release()
        return summary

    # -- lifecycle --------------------------------------------------------

    def _startup(self) -> None:
        self._clean_runs_dir()
        if not self.is_analysis:
            reset = self.tasks.reset_in_progress()
            if reset:
                logger.info("Returned %d in-progress tasks to the queue", len(reset))
        recovered = self.tasks.reset_analysing(
            live_task_ids=self.registry.live_task_ids(),
            safety_buffer=timedelta(seconds=self.settings.loop.analysing_safety_seconds),
        )
        if recovered:
            logger.info("Recovered %d orphaned analysing tasks", len(recovered))
        if self._uses_worktrees() and self.worktrees is not None:
            removed = self.worktrees.reconcile_orphans(self.tasks)
            if removed:
                logger.info("Removed %d orphaned worktrees", len(removed))

        self.session = self.sessions.start(self.loop_type)
        self.registry.update(self.process_id, status=ProcessStatus.RUNNING)
        self.registry.log_activity(
            self.process_id,
            "loop_started",
            f"{self.loop_type} loop started",
            session_id=self.session.session_id,
        )
        logger.info("%s loop %s started", self.loop_type, self.process_id)

    def _shutdown(self, summary: LoopRunSummary) -> None:
        final_status = (
            ProcessStatus.COMPLETED
            if summary.exit_reason in {"idle", "max_tasks"}
            else ProcessStatus.STOPPED
        )
        self.registry.update(self.process_id, task_id=None, task_name=None)
        self.registry.set_status(self.process_id, final_status)
        self.registry.log_activity(
            self.process_id,
            "loop_finished",
            f"{self.loop_type} loop finished: {summary.exit_reason or 'error'}",
            **asdict(summary),
        )
        if self.session is not None:
            self.session.status = SessionStatus.STOPPED
            self._save_session()
        logger.info(
            "%s loop finished (%s): processed=%d succeeded=%d failed=%d skipped=%d",
            self.loop_type,
            summary.exit_reason or "error",
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.skipped,
        )

    def _run_loop(  # noqa: PLR0911
        self,
        summary: LoopRunSummary,
        *,
        max_tasks: int | None,
        wait_for_tasks: bool,
    ) -> str:
        while True:
            if self._should_stop():
                return "stopped"
            if self.signals.is_paused():
                summary.pauses += 1
                if self._wait_while_paused() is WaitOutcome.STOP:
                    return "stopped"
            if max_tasks is not None and summary.processed >= max_tasks:
                return "max_tasks"

            task = self.tasks.fetch_next(self._fetch_statuses(), exclude=self._skipped_ids)
            if task is None:
                summary.idle_polls += 1
                if not wait_for_tasks:
                    return "idle"
                self.registry.heartbeat(
                    self.process_id,
                    status="idle",
                    next_action="waiting for tasks",
                )
                outcome = self.signals.sleep(
                    self.settings.loop.idle_poll_seconds,
                    self.loop_type,
                    should_stop=self._should_stop,
                )
                if outcome is WaitOutcome.STOP:
                    return "stopped"
                continue

            outcome = self._process_task(task, summary)
            if outcome is None:
                continue
            summary.processed += 1
            if self._should_stop():
                return "stopped"
            if self.settings.loop.cooldown_seconds > 0:
                self.registry.heartbeat(self.process_id, status="cooldown", next_action="fetch")
                cooldown = self.signals.sleep(
                    self.settings.loop.cooldown_seconds,
                    self.loop_type,
                    should_stop=self._should_stop,
                )
                if cooldown is WaitOutcome.STOP:
                    return "stopped"

    def _wait_while_paused(self) -> WaitOutcome:
        session = self._require_session()
        session.status = SessionStatus.PAUSED
        session.pause_reason = self.signals.pause_reason()
        self._save_session()
        self.registry.heartbeat(self.process_id, status="paused", next_action="waiting for resume")
        self.registry.log_activity(self.process_id, "paused", session.pause_reason or "paused")
        logger.warning("%s loop paused: %s", self.loop_type, session.pause_reason or "operator")

        outcome = self.signals.wait_while_paused(self.loop_type, should_stop=self._should_stop)
        if outcome is WaitOutcome.CONTINUE:
            session.status = SessionStatus.RUNNING
            session.pause_reason = None
            session.reset_failures()
            self._save_session()
            self.registry.log_activity(self.process_id, "resumed", "Pause cleared")
            logger.info("%s loop resumed", self.loop_type)
        return outcome

    # -- per task ---------------------------------------------------------

    def _process_task(self, task: Task, summary: LoopRunSummary) -> TaskOutcome | None:
        claimed = (
            self.tasks.mark_analysing(task.id)
            if self.is_analysis
            else self.tasks.mark_in_progress(task.id, from_statuses=self._fetch_statuses())
        )
        if claimed is None:
            logger.debug("Task %s was claimed by another process", task.short_id)
            return None

        self._whispers = []
        self.registry.update(self.process_id, task_id=claimed.id, task_name=claimed.name)
        self.registry.log_activity(
            self.process_id,
            "task_claimed",
            f"Claimed {claimed.name} [{claimed.short_id}]",
            task_id=claimed.id,
            status=claimed.status.value,
        )
        logger.info("Claimed task %s (%s)", claimed.short_id, claimed.name)
        try:
            return self._dispatch(claimed, summary)
        finally:
            self.registry.update(self.process_id, task_id=None, task_name=None)

    def _dispatch(self, task: Task, summary: LoopRunSummary) -> TaskOutcome:  # noqa: PLR0911
        worktree: WorktreeResult | None = None
        if self._uses_worktrees() and self.worktrees is not None:
            worktree = self.worktrees.create(task.id, task.name)
            if not worktree.success:
                self._count_failure(summary, reason=f"worktree setup failed: {worktree.message}")
                return self._skip(task, f"worktree setup failed: {worktree.message}", summary)

        retries = 0
        rate_limit_waits = 0
        while True:
            if self._should_stop():
                return self._release(task, summary, reason="stop requested")

            attempt = self._run_attempt(task, worktree)
            if attempt.interrupted:
                return self._release(task, summary, reason="worker interrupted by stop request")

            classification = attempt.classification
            if classification is None:
                return self._succeed(task, worktree, attempt, summary)

            details = classification.to_event_details(exit_code=attempt.exit_code)
            if classification.failure_type is FailureType.RATE_LIMIT:
                if rate_limit_waits < self.settings.loop.max_rate_limit_waits:
                    rate_limit_waits += 1
                    if self._wait_out_rate_limit(task, attempt, details, summary):
                        continue
                    return self._release(task, summary, reason="stop during rate-limit wait")
                logger.warning(
                    "Task %s still rate limited after %d waits; treating as a failure",
                    task.short_id,
                    rate_limit_waits,
                )
            rate_limit_waits = 0

            if classification.failure_type is FailureType.TIMEOUT:
                summary.timeouts += 1
            self.registry.log_activity(
                self.process_id,
                "attempt_failed",
                f"{classification.failure_type.value}: {classification.suggested_action}",
                task_id=task.id,
                session_id=attempt.session_id,
                **details,
            )
            logger.warning(
                "Task %s attempt failed (%s, rule=%s)",
                task.short_id,
                classification.failure_type.value,
                classification.matched_rule,
            )
            pause_now = self._count_failure(summary, reason=classification.failure_type.value)

            if not classification.recoverable:
                return self._skip(
                    task,
                    f"{classification.failure_type.value} (non-recoverable)",
                    summary,
                )
            if retries >= self.settings.loop.max_retries:
                return self._skip(
                    task,
                    f"{classification.failure_type.value} after {retries + 1} attempts",
                    summary,
                )
            if pause_now:
                return self._release(task, summary, reason="session paused")
            retries += 1
            summary.retried += 1

    def _wait_out_rate_limit(
        self,
        task: Task,
        attempt: AttemptResult,
        details: dict[str, object],
        summary: LoopRunSummary,
    ) -> bool:
        """Sleep until the provider limit resets; ``False`` when a stop cut the wait."""

        summary.rate_limited += 1
        info = self.rate_limit.parse(attempt.output) or self.rate_limit.fallback()
        self.registry.log_activity(
            self.process_id,
            "rate_limited",
            f"Rate limited; waiting {info.wait_seconds}s",
            task_id=task.id,
            reset_time=info.reset_time.isoformat(),
            timezone=info.timezone,
            parse_error=info.parse_error,
            **details,
        )
        self.registry.heartbeat(
            self.process_id,
            status="rate_limited",
            next_action=f"retry at {info.reset_time:%H:%M}",
        )
        outcome = self.rate_limit.wait(
            info,
            self.signals,
            self.loop_type,
            should_stop=self._should_stop,
        )
        return outcome is not WaitOutcome.STOP

    def _run_attempt(self, task: Task, worktree: WorktreeResult | None) -> AttemptResult:
        # Every attempt gets a fresh agent session; workers never resume one.
        session_id = str(uuid4())
        entries, self._whisper_offset = self.registry.read_whispers(
            self.process_id,
            self._whisper_offset,
        )
        if entries:
            self._whispers.extend(entries)
            self.registry.log_activity(
                self.process_id,
                "whispers_received",
                f"{len(entries)} operator instruction(s) added to the prompt",
                task_id=task.id,
            )

        try:
            prompt = self._build_prompt(task, worktree)
        except PromptBuildError as error:
            return AttemptResult(
                session_id=session_id,
                classification=FailureClassification(
                    failure_type=FailureType.CRASH,
                    recoverable=False,
                    suggested_action="Fix the prompt template placeholders.",
                    matched_rule="prompt_build_error",
                ),
                output=str(error),
            )

        run_dir = self.runs_dir / f"{task.short_id}-{session_id[:8]}"
        cwd = (
            worktree.worktree_path
            if worktree is not None and worktree.worktree_path is not None
            else self.settings.paths.project_root
        )
        request = WorkerRequest(
            prompt=prompt,
            session_id=session_id,
            model=self._model(),
            command_template=self.settings.worker.command_template,
            timeout_seconds=self.settings.worker.timeout_seconds,
            cwd=cwd,
            run_dir=run_dir,
            env={
                "AGENT_LOOP_TASK_ID": task.id,
                "AGENT_LOOP_PROJECT_ROOT": str(self.settings.paths.project_root),
                PROCESS_ID_ENV: self.process_id,
            },
            shutdown_requested=self._should_stop,
            graceful_shutdown_seconds=self.settings.worker.graceful_shutdown_seconds,
        )
        self.registry.update(self.process_id, worker_session_id=session_id)
        self.registry.heartbeat(self.process_id, status="working", next_action="await worker")
        self.registry.log_activity(
            self.process_id,
            "attempt_started",
            f"Worker started for {task.short_id}",
            task_id=task.id,
            session_id=session_id,
        )

        try:
            result = self.worker.run(request)
        except WorkerRunError as error:
            logger.error("Worker failed to start: %s", error)
            return AttemptResult(
                session_id=session_id,
                classification=FailureClassification(
                    failure_type=FailureType.CRASH,
                    recoverable=error.transient,
                    suggested_action="Check AGENT_LOOP_WORKER_COMMAND_TEMPLATE and the agent CLI.",
                    matched_rule="worker_start_error",
                ),
                output=str(error),
            )

        if result.interrupted:
            return AttemptResult(
                session_id=session_id,
                classification=None,
                output=result.combined_output,
                exit_code=result.exit_code,
                interrupted=True,
            )
        return AttemptResult(
            session_id=session_id,
            classification=classify_worker_outcome(
                output=result.combined_output,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                completed=self._completed(task, result),
            ),
            output=result.combined_output,
            exit_code=result.exit_code,
        )

    def _completed(self, task: Task, result: WorkerResult) -> bool:
        marker = f"<promise>{self.settings.loop.completion_promise}</promise>"
        if result.exit_code == 0 and marker in result.combined_output:
            return True
        status = self.tasks.status_of(task.id)
        if self.is_analysis:
            return status in {TaskStatus.ANALYSED, TaskStatus.NEEDS_INPUT}
        return status == TaskStatus.DONE

    def _succeed(
        self,
        task: Task,
        worktree: WorktreeResult | None,
        attempt: AttemptResult,
        summary: LoopRunSummary,
    ) -> TaskOutcome:
        if worktree is not None and self.worktrees is not None:
            merge = self.worktrees.complete(task.id)
            if not merge.success:
                failure = merge.failure.value if merge.failure else "merge_failed"
                self.registry.log_activity(
                    self.process_id,
                    "merge_failed",
                    merge.message,
                    task_id=task.id,
                    failure=failure,
                    conflict_files=merge.conflict_files,
                    recoverable=merge.recoverable,
                )
                self._count_failure(summary, reason=failure)
                reason = f"{failure}: {merge.message}"
                if merge.conflict_files:
                    reason += f" ({', '.join(merge.conflict_files)})"
                return self._skip(task, reason, summary, reopen=True)
            self.registry.log_activity(
                self.process_id,
                "merged",
                merge.message,
                task_id=task.id,
                merge_commit=merge.merge_commit,
            )

        if self.is_analysis:
            if self.tasks.status_of(task.id) == TaskStatus.ANALYSING:
                self.tasks.mark_analysed(
                    task.id,
                    {"session_id": attempt.session_id, "summary": _tail(attempt.output)},
                )
        else:
            self.tasks.mark_done(task.id)

        session = self._require_session()
        session.record_success()
        self._save_session()
        summary.succeeded += 1
        self.registry.update(self.process_id, tasks_completed=session.tasks_completed)
        self.registry.log_activity(
            self.process_id,
            "task_completed",
            f"Completed {task.name} [{task.short_id}]",
            task_id=task.id,
            session_id=attempt.session_id,
        )
        logger.info("Task %s completed", task.short_id)
        return TaskOutcome.SUCCEEDED

    def _skip(
        self,
        task: Task,
        reason: str,
        summary: LoopRunSummary,
        *,
        reopen: bool = False,
    ) -> TaskOutcome:
        try:
            skipped = self.tasks.mark_skipped(task.id, reason, reopen=reopen)
        except InvalidTransitionError as error:
            logger.warning("Could not skip task %s: %s", task.short_id, error)
        else:
            self.registry.log_activity(
                self.process_id,
                "task_skipped",
                reason,
                task_id=task.id,
                status=skipped.status.value,
                skips=len(skipped.skip_history),
            )
        self._skipped_ids.add(task.id)
        session = self._require_session()
        session.record_skip()
        self._save_session()
        summary.skipped += 1
        return TaskOutcome.SKIPPED

    def _release(self, task: Task, summary: LoopRunSummary, *, reason: str) -> TaskOutcome:
        self.tasks.release(task.id)
        self.registry.log_activity(self.process_id, "task_released", reason, task_id=task.id)
        logger.info("Released task %s: %s", task.short_id, reason)
        summary.released += 1
        return TaskOutcome.RELEASED

    def _count_failure(self, summary: LoopRunSummary, *, reason: str) -> bool:
        """Count one failure; assert pause when the threshold is reached."""

        session = self._require_session()
        summary.failed += 1
        pause_now = session.record_failure(self.settings.loop.consecutive_failure_threshold)
        if pause_now:
            pause_reason = (
                f"{session.consecutive_failures} consecutive failures (last: {reason})"
            )
            self.signals.pause(reason=pause_reason)
            session.status = SessionStatus.PAUSED
            session.pause_reason = pause_reason
            self.registry.log_activity(self.process_id, "session_paused", pause_reason)
            logger.warning("Pausing %s loop: %s", self.loop_type, pause_reason)
        self._save_session()
        return pause_now

    # -- helpers ----------------------------------------------------------

    def _build_prompt(self, task: Task, worktree: WorktreeResult | None) -> str:
        promise = self.settings.loop.completion_promise
        if self.is_analysis:
            return build_analysis_prompt(
                task,
                promise=promise,
                whispers=self._whispers,
                template=self._template,
            )
        return build_execution_prompt(
            task,
            promise=promise,
            worktree_path=worktree.worktree_path if worktree else None,
            branch_name=worktree.branch_name if worktree else None,
            whispers=self._whispers,
            template=self._template,
        )

    def _fetch_statuses(self) -> tuple[TaskStatus, ...]:
        if self.is_analysis:
            return (TaskStatus.TODO,)
        if self.settings.loop.analysis_enabled:
            return (TaskStatus.ANALYSED,)
        return (TaskStatus.TODO,)

    def _uses_worktrees(self) -> bool:
        return not self.is_analysis and self.settings.loop.use_worktrees

    def _model(self) -> str:
        if self.is_analysis:
            return self.settings.worker.analysis_model or self.settings.worker.model
        return self.settings.worker.model

    def _should_stop(self) -> bool:
        return (
            self._stop_requested
            or self.signals.stop_requested(self.loop_type)
            or self.registry.stop_requested(self.process_id)
        )

    def _require_session(self) -> SessionState:
        if self.session is None:
            raise RuntimeError("Loop session has not been started.")
        return self.session

    def _save_session(self) -> None:
        if self.session is not None:
            self.sessions.save(self.session)

    def _clean_runs_dir(self) -> None:
        if not self.runs_dir.exists():
            return
        try:
            shutil.rmtree(self.runs_dir)
        except OSError as error:
            logger.warning("Could not remove stale run artifacts in %s: %s", self.runs_dir, error)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._stop_requested = True
            self._stop_signal_name = name
            logger.info("Received %s; finishing current step", name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def _tail(text: str, *, limit: int = 2000) -> str:
    return text.strip()[-limit:]
