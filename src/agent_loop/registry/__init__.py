"""Process registry: launch, liveness sweeps, cooperative stop and hard kill."""

from agent_loop.registry.models import LoopType, ProcessRecord, ProcessStatus
from agent_loop.registry.registry import PROCESS_ID_ENV, ProcessRegistry, pid_alive

__all__ = [
    "PROCESS_ID_ENV",
    "LoopType",
    "ProcessRecord",
    "ProcessRegistry",
    "ProcessStatus",
    "pid_alive",
]
