from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from agent_loop.config import PathSettings, Settings
from agent_loop.control.session import SessionLock, SessionStatus, SessionStore
from agent_loop.control.signals import PAUSE, ControlSignalStore
from agent_loop.orchestrator.backend import WorkerRequest, WorkerResult
from agent_loop.orchestrator.loop import ExecutionLoop
from agent_loop.registry import ProcessRegistry, ProcessStatus
from agent_loop.tasks.models import TaskCreate, TaskStatus
from agent_loop.tasks.store import TaskStore
from agent_loop.worktree.manager import WorktreeManager

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Dispatch, Retry, Skip & Pause"),
]

MARKER = "<promise>COMPLETE</promise>"
Step = tuple[int, str] | Callable[[WorkerRequest], tuple[int, str]]


class _ScriptedWorker:
    """Replays scripted (exit_code, output) outcomes, one per attempt."""

    def __init__(self, *steps: Step, default: tuple[int, str] = (0, MARKER)) -> None:
        self.steps = list(steps)
        self.default = default
        self.requests: list[WorkerRequest] = []

    def run(self, request: WorkerRequest) -> WorkerResult:
        self.requests.append(request)
        step = self.steps.pop(0) if self.steps else self.default
        exit_code, output = step(request) if callable(step) else step
        request.run_dir.mkdir(parents=True, exist_ok=True)
        output_path = request.run_dir / "output.log"
        output_path.write_text(output, "utf-8")
        return WorkerResult(
            exit_code=exit_code,
            timed_out=False,
            output_path=output_path,
            combined_output=output,
        )


class _FakeTime:
    def __init__(self) -> None:
        self.now = 0.0

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    def monotonic(self) -> float:
        return self.now


def _loop(  # noqa: PLR0913
    settings: Settings,
    task_store: TaskStore,
    registry: ProcessRegistry,
    signals: ControlSignalStore,
    sessions: SessionStore,
    worker: _ScriptedWorker,
    *,
    loop_type: str = "execution",
    worktrees: WorktreeManager | None = None,
) -> ExecutionLoop:
    return ExecutionLoop(
        loop_type=loop_type,
        settings=settings,
        tasks=task_store,
        registry=registry,
        signals=signals,
        sessions=sessions,
        worker=worker,
        worktrees=worktrees,
        process_id=f"{loop_type}-test",
    )


def test_abc123_scenario_completes_and_resets_failures(
    settings,
    task_store,
    registry,
    signals,
    sessions,
) -> None:
    task_store.create(TaskCreate(name="Ship it", priority=5, task_id="abc123"))
    worker = _ScriptedWorker((0, f"all good\n{MARKER}\n"))
    loop = _loop(settings, task_store, registry, signals, sessions, worker)

    summary = loop.run(wait_for_tasks=False)

    assert summary.exit_reason == "idle"
    assert summary.succeeded == 1
    assert task_store.status_of("abc123") == TaskStatus.DONE
    assert "Task: Ship it [abc123]" in worker.requests[0].prompt
    assert worker.requests[0].env["AGENT_LOOP_TASK_ID"] == "abc123"
    session = sessions.load("execution")
    assert session is not None
    assert session.consecutive_failures == 0
    assert session.tasks_completed == 1
    assert session.status == SessionStatus.STOPPED
    record = registry.get("execution-test")
    assert record is not None
    assert record.status == ProcessStatus.COMPLETED
    assert record.tasks_completed == 1


def test_each_attempt_gets_a_fresh_session_id(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    task = make_task("flaky")
    worker = _ScriptedWorker((1, "boom"), (0, MARKER))

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
        wait_for_tasks=False,
    )

    assert summary.retried == 1
    assert summary.succeeded == 1
    assert task_store.status_of(task.id) == TaskStatus.DONE
    session_ids = [request.session_id for request in worker.requests]
    assert len(set(session_ids)) == 2
    assert sessions.load("execution").consecutive_failures == 0


def test_non_recoverable_failure_skips_immediately(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    task = make_task("ghost")
    worker = _ScriptedWorker((1, "Error: task not found"))

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
        wait_for_tasks=False,
    )

    assert len(worker.requests) == 1
    assert summary.skipped == 1
    skipped = task_store.get(task.id)
    assert skipped is not None
    assert skipped.status == TaskStatus.TODO
    assert "task_not_found" in skipped.skip_history[0]["reason"]


def test_retries_are_bounded_then_task_is_skipped(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    settings.loop.max_retries = 2
    settings.loop.consecutive_failure_threshold = 10
    task = make_task("always failing")
    worker = _ScriptedWorker(default=(1, "Segmentation fault"))

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
        wait_for_tasks=False,
    )

    assert len(worker.requests) == 3
    assert summary.retried == 2
    assert summary.skipped == 1
    assert summary.failed == 3
    assert len(task_store.get(task.id).skip_history) == 1


def test_consecutive_failures_pause_the_session(
    settings,
    task_store,
    registry,
    sessions,
    make_task,
    tmp_path: Path,
) -> None:
    settings.loop.max_retries = 5
    settings.loop.consecutive_failure_threshold = 2
    signals_dir = tmp_path / "pausing-signals"
    signals = ControlSignalStore(
        signals_dir,
        sleep=lambda _: signals.request_stop("execution"),
    )
    task = make_task("broken env")
    worker = _ScriptedWorker(default=(1, "Segmentation fault"))

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
        wait_for_tasks=False,
    )

    assert len(worker.requests) == 2
    assert summary.failed == 2
    assert summary.released == 1
    assert summary.pauses == 1
    assert summary.exit_reason == "stopped"
    assert "2 consecutive failures" in (signals.pause_reason() or "")
    released = task_store.get(task.id)
    assert released.status == TaskStatus.TODO
    assert released.skip_history == []
    events = [entry["event"] for entry in registry.read_activity("execution-test")[0]]
    assert "session_paused" in events
    assert registry.get("execution-test").status == ProcessStatus.STOPPED


def test_rate_limit_waits_without_consuming_a_retry(
    settings,
    task_store,
    registry,
    sessions,
    make_task,
    tmp_path: Path,
) -> None:
    settings.loop.max_retries = 0
    fake = _FakeTime()
    signals = ControlSignalStore(
        tmp_path / "rl-signals",
        sleep=fake.sleep,
        monotonic=fake.monotonic,
    )
    task = make_task("limited")
    worker = _ScriptedWorker(
        (1, "You've hit your limit · resets 10pm (Europe/Berlin)"),
        (0, MARKER),
    )

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
        wait_for_tasks=False,
    )

    assert summary.rate_limited == 1
    assert summary.retried == 0
    assert summary.failed == 0
    assert summary.succeeded == 1
    assert task_store.status_of(task.id) == TaskStatus.DONE
    assert fake.now >= 60


def test_persistent_rate_limit_degrades_to_the_retry_path(
    settings,
    task_store,
    registry,
    sessions,
    make_task,
    tmp_path: Path,
) -> None:
    settings.loop.max_retries = 0
    settings.loop.max_rate_limit_waits = 2
    settings.loop.consecutive_failure_threshold = 10
    fake = _FakeTime()
    signals = ControlSignalStore(
        tmp_path / "rl-cap-signals",
        sleep=fake.sleep,
        monotonic=fake.monotonic,
    )
    task = make_task("always limited")
    worker = _ScriptedWorker(default=(1, "API Error: Rate limit reached for requests"))

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
        wait_for_tasks=False,
    )

    assert len(worker.requests) == 3
    assert summary.rate_limited == 2
    assert summary.failed == 1
    assert summary.skipped == 1
    skipped = task_store.get(task.id)
    assert skipped.status == TaskStatus.TODO
    assert "rate_limit" in skipped.skip_history[0]["reason"]


def test_malformed_prompt_template_skips_instead_of_stranding_the_task(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
    tmp_path: Path,
) -> None:
    template = tmp_path / "prompt.md"
    template.write_text("Work on {name} } then print <promise>{promise}</promise>", "utf-8")
    settings.worker.prompt_template_path = template
    task = make_task("templated")
    worker = _ScriptedWorker()

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
        wait_for_tasks=False,
    )

    assert worker.requests == []
    assert summary.exit_reason == "idle"
    assert summary.skipped == 1
    skipped = task_store.get(task.id)
    assert skipped.status == TaskStatus.TODO
    assert "non-recoverable" in skipped.skip_history[0]["reason"]


def test_worker_callback_counts_as_completion(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    task = make_task("self reporting")

    def _mark_done(request: WorkerRequest) -> tuple[int, str]:
        task_store.mark_done(request.env["AGENT_LOOP_TASK_ID"])
        return 0, "finished without marker"

    summary = _loop(
        settings,
        task_store,
        registry,
        signals,
        sessions,
        _ScriptedWorker(_mark_done),
    ).run(wait_for_tasks=False)

    assert summary.succeeded == 1
    assert task_store.status_of(task.id) == TaskStatus.DONE


def test_clean_exit_without_marker_is_retried(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    task = make_task("forgetful")
    worker = _ScriptedWorker((0, "I think I'm done"), (0, MARKER))

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
        wait_for_tasks=False,
    )

    assert summary.retried == 1
    assert task_store.status_of(task.id) == TaskStatus.DONE


def test_whispers_reach_the_next_prompt(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    make_task("guided")

    def _fail_and_whisper(_: WorkerRequest) -> tuple[int, str]:
        registry.whisper("execution", "use the staging database", priority="high")
        return 1, "tests failed"

    worker = _ScriptedWorker(_fail_and_whisper, (0, MARKER))
    _loop(settings, task_store, registry, signals, sessions, worker).run(wait_for_tasks=False)

    assert "use the staging database" not in worker.requests[0].prompt
    assert "- [high] use the staging database" in worker.requests[1].prompt


def test_whispers_reach_the_analysis_prompt(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    make_task("needs review")

    def _fail_and_whisper(_: WorkerRequest) -> tuple[int, str]:
        registry.whisper("analysis", "prefer splitting by module", priority="high")
        return 1, "Segmentation fault"

    worker = _ScriptedWorker(_fail_and_whisper, (0, f"Looks fine.\n{MARKER}"))
    _loop(
        settings,
        task_store,
        registry,
        signals,
        sessions,
        worker,
        loop_type="analysis",
    ).run(wait_for_tasks=False)

    assert "- [high] prefer splitting by module" in worker.requests[1].prompt


def test_startup_returns_stuck_tasks_to_the_queue(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    task = make_task("left behind")
    task_store.mark_in_progress(task.id)
    worker = _ScriptedWorker((0, MARKER))

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
        wait_for_tasks=False,
    )

    assert summary.succeeded == 1
    assert task_store.status_of(task.id) == TaskStatus.DONE


def test_stop_signal_prevents_dispatch(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    task = make_task("waiting")
    signals.request_stop()
    worker = _ScriptedWorker()

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run()

    assert summary.exit_reason == "stopped"
    assert worker.requests == []
    assert task_store.status_of(task.id) == TaskStatus.TODO


def test_max_tasks_bounds_the_run(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    make_task("one", priority=1)
    second = make_task("two", priority=2)
    worker = _ScriptedWorker()

    summary = _loop(settings, task_store, registry, signals, sessions, worker).run(max_tasks=1)

    assert summary.exit_reason == "max_tasks"
    assert summary.processed == 1
    assert task_store.status_of(second.id) == TaskStatus.TODO


def test_held_session_lock_refuses_second_loop(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    make_task("contended")
    holder = SessionLock(sessions.lock_path("execution"))
    assert holder.acquire() is True
    worker = _ScriptedWorker()
    try:
        summary = _loop(settings, task_store, registry, signals, sessions, worker).run(
            wait_for_tasks=False,
        )
    finally:
        holder.release()

    assert summary.exit_reason == "session_locked"
    assert worker.requests == []
    assert registry.get("execution-test").status == ProcessStatus.STOPPED


def test_analysis_loop_marks_tasks_analysed(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    plain = make_task("clear task", priority=1)
    unclear = make_task("unclear task", priority=2)

    def _ask(request: WorkerRequest) -> tuple[int, str]:
        task_store.mark_needs_input(
            request.env["AGENT_LOOP_TASK_ID"],
            question={"question": "Which API?", "options": ["v1", "v2"]},
        )
        return 0, MARKER

    worker = _ScriptedWorker((0, f"Looks fine.\n{MARKER}"), _ask)

    summary = _loop(
        settings,
        task_store,
        registry,
        signals,
        sessions,
        worker,
        loop_type="analysis",
    ).run(wait_for_tasks=False)

    assert summary.succeeded == 2
    analysed = task_store.get(plain.id)
    assert analysed.status == TaskStatus.ANALYSED
    assert analysed.analysis_sessions[0]["ended_at"] is not None
    assert task_store.status_of(unclear.id) == TaskStatus.NEEDS_INPUT
    assert "agent-loop tasks ask" in worker.requests[0].prompt


def test_execution_fetches_analysed_tasks_when_analysis_enabled(
    settings,
    task_store,
    registry,
    signals,
    sessions,
    make_task,
) -> None:
    settings.loop.analysis_enabled = True
    raw = make_task("not analysed yet", priority=1)
    ready = make_task("analysed", priority=2)
    task_store.mark_analysing(ready.id)
    task_store.mark_analysed(ready.id, {"summary": "ok"})
    worker = _ScriptedWorker()

    _loop(settings, task_store, registry, signals, sessions, worker).run(wait_for_tasks=False)

    assert task_store.status_of(ready.id) == TaskStatus.DONE
    assert task_store.status_of(raw.id) == TaskStatus.TODO
    assert not signals.is_asserted(PAUSE)


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_worktree_changes_are_squash_merged(
    settings,
    registry,
    signals,
    sessions,
    git_repo: Path,
    git,
) -> None:
    settings = replace(settings, paths=PathSettings(project_root=git_repo))
    settings.loop.use_worktrees = True
    task_store = TaskStore(settings.paths.tasks_dir)
    task = task_store.create(TaskCreate(name="Add feature file"))

    def _write_file(request: WorkerRequest) -> tuple[int, str]:
        (request.cwd / "feature.txt").write_text("feature\n", "utf-8")
        return 0, MARKER

    worktrees = WorktreeManager(settings.paths, settings.worktree)
    summary = _loop(
        settings,
        task_store,
        registry,
        signals,
        sessions,
        _ScriptedWorker(_write_file),
        worktrees=worktrees,
    ).run(wait_for_tasks=False)

    assert summary.succeeded == 1
    assert task_store.status_of(task.id) == TaskStatus.DONE
    assert (git_repo / "feature.txt").read_text("utf-8") == "feature\n"
    assert f"[{task.short_id}]" in git(git_repo, "log", "-1", "--pretty=%s")
    assert worktrees.list() == []
