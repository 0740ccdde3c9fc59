"""Worker interface for one agent attempt."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class WorkerRequest:
    """Inputs required to execute one attempt."""

    prompt: str
    session_id: str
    model: str
    command_template: str
    timeout_seconds: int
    cwd: Path
    run_dir: Path
    env: dict[str, str] = field(default_factory=dict)
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class WorkerResult:
    """Execution outcome of one attempt."""

    exit_code: int
    timed_out: bool
    output_path: Path
    combined_output: str = ""
    interrupted: bool = False


class Worker(Protocol):
    """Protocol implemented by worker runners."""

    def run(self, request: WorkerRequest) -> WorkerResult:
        """Run one attempt and return its outcome."""
