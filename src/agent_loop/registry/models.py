"""Process records kept by the registry."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any


class ProcessStatus(str, Enum):
    """Lifecycle of a registered loop or worker process."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    COMPLETED = "completed"


LIVE_STATUSES: frozenset[ProcessStatus] = frozenset({ProcessStatus.STARTING, ProcessStatus.RUNNING})
EXPIRING_STATUSES: frozenset[ProcessStatus] = frozenset(
    {ProcessStatus.STOPPED, ProcessStatus.FAILED},
)


class LoopType(str, Enum):
    """Loop flavours the control plane can start and stop."""

    ANALYSIS = "analysis"
    EXECUTION = "execution"


@dataclass(slots=True)
class ProcessRecord:
    """One registry entry; the JSON file is named after ``id``."""

    id: str
    type: str
    status: ProcessStatus
    pid: int | None = None
    task_id: str | None = None
    task_name: str | None = None
    worker_session_id: str | None = None
    model: str | None = None
    description: str | None = None
    started_at: str | None = None
    updated_at: str | None = None
    failed_at: str | None = None
    completed_at: str | None = None
    heartbeat_at: str | None = None
    heartbeat_status: str | None = None
    heartbeat_next_action: str | None = None
    tasks_completed: int = 0

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProcessRecord:
        process_id = payload.get("id")
        process_type = payload.get("type")
        if not isinstance(process_id, str) or not process_id:
            raise ValueError("Process record has no id.")
        if not isinstance(process_type, str) or not process_type:
            raise ValueError(f"Process record {process_id} has no type.")
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        values["status"] = ProcessStatus(payload.get("status", ProcessStatus.STARTING.value))
        pid = values.get("pid")
        values["pid"] = int(pid) if pid is not None else None
        values["tasks_completed"] = int(values.get("tasks_completed") or 0)
        return cls(**values)
