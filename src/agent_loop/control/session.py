"""Per-loop-type session state and the advisory session lock."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from filelock import FileLock, Timeout

from agent_loop.storage import read_json_or_none, utc_now, write_json_atomic

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(slots=True)
class SessionState:
    """Counters of one loop session, persisted as ``session/<loop_type>.json``."""

    session_id: str
    loop_type: str
    status: SessionStatus = SessionStatus.RUNNING
    consecutive_failures: int = 0
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    started_at: str | None = None
    updated_at: str | None = None
    pause_reason: str | None = None

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.tasks_completed += 1

    def record_failure(self, threshold: int) -> bool:
        """Count one failure; return True when the session must pause."""

        self.consecutive_failures += 1
        self.tasks_failed += 1
        return self.consecutive_failures >= threshold

    def record_skip(self) -> None:
        self.tasks_skipped += 1

    def reset_failures(self) -> None:
        self.consecutive_failures = 0

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SessionState:
        known = {item.name for item in fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        values["status"] = SessionStatus(values.get("status", SessionStatus.STOPPED.value))
        return cls(**values)


class SessionStore:
    """Loads and atomically saves session state files."""

    def __init__(self, session_dir: Path) -> None:
        self.session_dir = session_dir

    def path(self, loop_type: str) -> Path:
        return self.session_dir / f"{loop_type}.json"

    def lock_path(self, loop_type: str) -> Path:
        return self.session_dir / f"{loop_type}.lock"

    def start(self, loop_type: str) -> SessionState:
        now = utc_now().isoformat()
        state = SessionState(
            session_id=uuid4().hex,
            loop_type=loop_type,
            started_at=now,
            updated_at=now,
        )
        self.save(state)
        return state

    def load(self, loop_type: str) -> SessionState | None:
        payload = read_json_or_none(self.path(loop_type))
        if payload is None:
            return None
        try:
            return SessionState.from_dict(payload)
        except (TypeError, ValueError) as error:
            logger.warning("Ignoring malformed session state for %s: %s", loop_type, error)
            return None

    def save(self, state: SessionState) -> None:
        state.updated_at = utc_now().isoformat()
        write_json_atomic(self.path(state.loop_type), state.to_dict())

    def list(self) -> list[SessionState]:
        if not self.session_dir.is_dir():
            return []
        states: list[SessionState] = []
        for path in sorted(self.session_dir.glob("*.json")):
            state = self.load(path.stem)
            if state is not None:
                states.append(state)
        return states

    def force_stop_all(self) -> list[str]:
        stopped: list[str] = []
        for state in self.list():
            state.status = SessionStatus.STOPPED
            state.pause_reason = None
            self.save(state)
            stopped.append(state.loop_type)
        return stopped

    def remove_locks(self) -> list[str]:
        removed: list[str] = []
        if not self.session_dir.is_dir():
            return removed
        for path in sorted(self.session_dir.glob("*.lock")):
            path.unlink(missing_ok=True)
            removed.append(path.stem)
        return removed


class SessionLock:
    """Best-effort guard against two loops of the same type initialising at once."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = FileLock(str(path), timeout=0)

    @property
    def is_locked(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire()
        except Timeout:
            logger.warning("Session lock %s is held by another loop", self.path)
            return False
        return True

    def release(self) -> None:
        if self._lock.is_locked:
            self._lock.release()
