"""Worker backend implementations."""

from agent_loop.orchestrator.backend.base import Worker, WorkerRequest, WorkerResult
from agent_loop.orchestrator.backend.cli_backend import CliAgentWorker, WorkerRunError

__all__ = [
    "CliAgentWorker",
    "Worker",
    "WorkerRequest",
    "WorkerResult",
    "WorkerRunError",
]
