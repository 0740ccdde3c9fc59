"""Task records and the status vocabulary of the queue."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Queue states; each one is a directory under the tasks root."""

    TODO = "todo"
    ANALYSING = "analysing"
    NEEDS_INPUT = "needs-input"
    ANALYSED = "analysed"
    IN_PROGRESS = "in-progress"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    DONE = "done"


ACTIVE_STATUSES: frozenset[TaskStatus] = frozenset(
    {
        TaskStatus.TODO,
        TaskStatus.ANALYSING,
        TaskStatus.NEEDS_INPUT,
        TaskStatus.ANALYSED,
        TaskStatus.IN_PROGRESS,
    },
)
TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.DONE, TaskStatus.CANCELLED})


@dataclass(slots=True)
class Task:
    """One task record as stored on disk."""

    id: str
    name: str
    status: TaskStatus = TaskStatus.TODO
    description: str = ""
    category: str = ""
    priority: int = 100
    effort: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    applicable_agents: list[str] = field(default_factory=list)
    applicable_standards: list[str] = field(default_factory=list)
    questions_resolved: list[dict[str, Any]] = field(default_factory=list)
    analysis_sessions: list[dict[str, Any]] = field(default_factory=list)
    skip_history: list[dict[str, Any]] = field(default_factory=list)
    analysis: dict[str, Any] | None = None
    pending_question: dict[str, Any] | None = None
    split_proposal: dict[str, Any] | None = None
    split_into: list[str] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    analysed_at: str | None = None
    cancelled_at: str | None = None

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def has_analysis(self) -> bool:
        return bool(self.analysis) or self.analysed_at is not None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        """Build a task from a decoded record, ignoring unknown keys."""

        task_id = payload.get("id")
        name = payload.get("name")
        if not isinstance(task_id, str) or not task_id.strip():
            raise ValueError("Task record has no id.")
        if not isinstance(name, str):
            raise ValueError(f"Task record {task_id} has no name.")
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        values["status"] = TaskStatus(payload.get("status", TaskStatus.TODO.value))
        priority = values.get("priority", 100)
        values["priority"] = int(priority) if priority is not None else 100
        return cls(**values)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for adding a task to the queue."""

    name: str
    description: str = ""
    category: str = ""
    priority: int = 100
    effort: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    applicable_agents: list[str] = field(default_factory=list)
    applicable_standards: list[str] = field(default_factory=list)
    task_id: str | None = None


@dataclass(slots=True)
class ActionItem:
    """Operator-facing item for a task waiting in needs-input."""

    type: str
    task_id: str
    task_name: str
    question: dict[str, Any] | None = None
    split_proposal: dict[str, Any] | None = None
