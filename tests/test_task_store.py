from __future__ import annotations

import json
from datetime import timedelta

import allure
import pytest

from agent_loop.storage import utc_now
from agent_loop.tasks.models import TaskCreate, TaskStatus
from agent_loop.tasks.store import InvalidTransitionError, TaskNotFoundError, TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Status Directories & Transitions"),
]


def test_abc123_scenario_moves_through_in_progress_to_done(task_store: TaskStore) -> None:
    task_store.create(TaskCreate(name="Ship it", priority=5, task_id="abc123"))

    fetched = task_store.fetch_next()
    assert fetched is not None
    assert fetched.id == "abc123"

    claimed = task_store.mark_in_progress("abc123")
    assert claimed is not None
    assert claimed.started_at is not None
    assert (task_store.root_dir / "in-progress" / "abc123.json").is_file()
    assert not (task_store.root_dir / "todo" / "abc123.json").exists()

    done = task_store.mark_done("abc123")
    assert done.status == TaskStatus.DONE
    assert done.completed_at is not None
    assert (task_store.root_dir / "done" / "abc123.json").is_file()


def test_fetch_next_prefers_lower_priority_value(make_task, task_store: TaskStore) -> None:
    make_task("low", priority=3)
    high = make_task("high", priority=1)

    fetched = task_store.fetch_next()

    assert fetched is not None
    assert fetched.id == high.id


def test_fetch_next_breaks_ties_by_creation_order(make_task, task_store: TaskStore) -> None:
    first = make_task("first", priority=2)
    make_task("second", priority=2)

    fetched = task_store.fetch_next()

    assert fetched is not None
    assert fetched.id == first.id


def test_fetch_next_waits_for_dependencies(make_task, task_store: TaskStore) -> None:
    base = make_task("base", priority=10)
    make_task("dependent", priority=1, dependencies=[base.id])

    fetched = task_store.fetch_next()
    assert fetched is not None
    assert fetched.id == base.id

    task_store.mark_in_progress(base.id)
    task_store.mark_done(base.id)
    unblocked = task_store.fetch_next()
    assert unblocked is not None
    assert unblocked.name == "dependent"


def test_fetch_next_honours_exclusions(make_task, task_store: TaskStore) -> None:
    only = make_task("only")

    assert task_store.fetch_next(exclude={only.id}) is None


def test_claim_is_exclusive(make_task, task_store: TaskStore) -> None:
    task = make_task("contended")

    first = task_store.mark_in_progress(task.id)
    second = task_store.mark_in_progress(task.id)

    assert first is not None
    assert second is None
    assert task_store.status_of(task.id) == TaskStatus.IN_PROGRESS


def test_reset_in_progress_is_idempotent(make_task, task_store: TaskStore) -> None:
    plain = make_task("plain")
    analysed = make_task("analysed")
    task_store.mark_analysing(analysed.id)
    task_store.mark_analysed(analysed.id, {"summary": "ready"})
    task_store.mark_in_progress(plain.id)
    task_store.mark_in_progress(analysed.id)

    first = task_store.reset_in_progress()
    snapshot = {task.id: task.to_dict() for task in task_store.list()}
    second = task_store.reset_in_progress()

    assert sorted(first) == sorted([plain.id, analysed.id])
    assert second == []
    assert {task.id: task.to_dict() for task in task_store.list()} == snapshot
    assert task_store.status_of(plain.id) == TaskStatus.TODO
    assert task_store.status_of(analysed.id) == TaskStatus.ANALYSED
    assert task_store.get(plain.id).started_at is None


def test_reset_analysing_respects_live_processes_and_buffer(
    make_task,
    task_store: TaskStore,
) -> None:
    orphan = make_task("orphan")
    live = make_task("live")
    for task in (orphan, live):
        task_store.mark_analysing(task.id)

    protected = task_store.reset_analysing(live_task_ids=set(), safety_buffer=timedelta(minutes=5))
    assert protected == []
    assert task_store.status_of(orphan.id) == TaskStatus.ANALYSING

    recovered = task_store.reset_analysing(
        live_task_ids={live.id},
        safety_buffer=timedelta(minutes=5),
        now=utc_now() + timedelta(minutes=10),
    )

    assert recovered == [orphan.id]
    assert task_store.status_of(live.id) == TaskStatus.ANALYSING
    restored = task_store.get(orphan.id)
    assert restored is not None
    assert restored.status == TaskStatus.TODO
    assert restored.analysis_sessions[0]["ended_at"] is not None
    assert restored.created_at == orphan.created_at


def test_mark_skipped_returns_task_to_todo_until_max_skips(
    make_task,
    task_store: TaskStore,
) -> None:
    task = make_task("flaky")

    for attempt in range(2):
        task_store.mark_in_progress(task.id)
        skipped = task_store.mark_skipped(task.id, f"failure {attempt}")
        assert skipped.status == TaskStatus.TODO
        assert skipped.started_at is None

    task_store.mark_in_progress(task.id)
    parked = task_store.mark_skipped(task.id, "failure 2")

    assert parked.status == TaskStatus.SKIPPED
    assert [entry["reason"] for entry in parked.skip_history] == [
        "failure 0",
        "failure 1",
        "failure 2",
    ]
    assert parked.skip_history[0]["from_status"] == "in-progress"


def test_mark_skipped_reopens_done_task_only_when_asked(make_task, task_store: TaskStore) -> None:
    task = make_task("merged badly")
    task_store.mark_in_progress(task.id)
    task_store.mark_done(task.id)

    with pytest.raises(InvalidTransitionError):
        task_store.mark_skipped(task.id, "merge failed")

    reopened = task_store.mark_skipped(task.id, "merge failed", reopen=True)
    assert reopened.status == TaskStatus.TODO
    assert reopened.completed_at is None


def test_release_returns_claim_without_skip(make_task, task_store: TaskStore) -> None:
    task = make_task("interrupted")
    task_store.mark_in_progress(task.id)

    released = task_store.release(task.id)

    assert released is not None
    assert released.status == TaskStatus.TODO
    assert released.skip_history == []


def test_malformed_record_is_skipped_during_scan(make_task, task_store: TaskStore) -> None:
    good = make_task("good")
    (task_store.root_dir / "todo" / "broken.json").write_text("{not json", "utf-8")
    (task_store.root_dir / "todo" / "list.json").write_text(json.dumps([1, 2]), "utf-8")

    tasks = task_store.list(TaskStatus.TODO)

    assert [task.id for task in tasks] == [good.id]
    fetched = task_store.fetch_next()
    assert fetched is not None
    assert fetched.id == good.id


def test_directory_is_source_of_truth_for_status(make_task, task_store: TaskStore) -> None:
    task = make_task("moved by hand")
    source = task_store.root_dir / "todo" / f"{task.id}.json"
    source.rename(task_store.root_dir / "cancelled" / f"{task.id}.json")

    loaded = task_store.get(task.id)

    assert loaded is not None
    assert loaded.status == TaskStatus.CANCELLED


def test_create_rejects_duplicate_id(task_store: TaskStore) -> None:
    task_store.create(TaskCreate(name="one", task_id="dup"))

    with pytest.raises(ValueError, match="already exists"):
        task_store.create(TaskCreate(name="two", task_id="dup"))


def test_question_round_trip_returns_task_to_todo(make_task, task_store: TaskStore) -> None:
    task = make_task("ambiguous")
    task_store.mark_analysing(task.id)
    task_store.mark_needs_input(
        task.id,
        question={"question": "Which database?", "options": ["sqlite", "postgres"]},
    )

    items = task_store.action_required()
    assert [(item.type, item.task_id) for item in items] == [("question", task.id)]

    answered = task_store.answer_question(task.id, "sqlite", custom_text="keep it simple")

    assert answered.status == TaskStatus.TODO
    assert answered.pending_question is None
    assert answered.questions_resolved[0]["question"] == "Which database?"
    assert answered.questions_resolved[0]["answer"] == "sqlite"
    assert answered.questions_resolved[0]["custom_text"] == "keep it simple"
    assert task_store.action_required() == []


def test_answer_requires_pending_question(make_task, task_store: TaskStore) -> None:
    task = make_task("plain")

    with pytest.raises(InvalidTransitionError):
        task_store.answer_question(task.id, "yes")


def test_approve_split_creates_children_and_cancels_parent(
    make_task,
    task_store: TaskStore,
) -> None:
    parent = make_task("big", priority=7, category="backend")
    task_store.mark_analysing(parent.id)
    task_store.mark_needs_input(
        parent.id,
        split_proposal={
            "reason": "too large",
            "sub_tasks": [{"name": "part one"}, {"name": "part two", "priority": 3}, {}],
        },
    )

    cancelled, children = task_store.approve_split(parent.id, approved=True)

    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.split_into == [child.id for child in children]
    assert [child.name for child in children] == ["part one", "part two"]
    assert [child.priority for child in children] == [7, 3]
    assert all(child.category == "backend" for child in children)
    assert all(task_store.status_of(child.id) == TaskStatus.TODO for child in children)


def test_rejected_split_returns_parent_to_queue(make_task, task_store: TaskStore) -> None:
    parent = make_task("big")
    task_store.mark_analysing(parent.id)
    task_store.mark_needs_input(parent.id, split_proposal={"reason": "r", "sub_tasks": []})

    returned, children = task_store.approve_split(parent.id, approved=False)

    assert children == []
    assert returned.status == TaskStatus.TODO
    assert returned.split_proposal is None


def test_cancel_rejects_terminal_and_missing_tasks(make_task, task_store: TaskStore) -> None:
    task = make_task("obsolete")
    cancelled = task_store.mark_cancelled(task.id)
    assert cancelled.cancelled_at is not None

    with pytest.raises(InvalidTransitionError):
        task_store.mark_cancelled(task.id)
    with pytest.raises(TaskNotFoundError):
        task_store.mark_cancelled("missing")


def test_mark_done_is_idempotent(make_task, task_store: TaskStore) -> None:
    task = make_task("done twice")
    first = task_store.mark_done(task.id)
    second = task_store.mark_done(task.id)

    assert first.completed_at == second.completed_at
