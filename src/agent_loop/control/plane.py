"""Operator control actions scoped to the analysis loop, the execution loop or both."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from agent_loop.control.session import SessionStore
from agent_loop.control.signals import STOP, ControlSignalStore, scoped_stop
from agent_loop.registry import LoopType, ProcessRegistry

logger = logging.getLogger(__name__)


class ControlAction(str, Enum):
    START = "start"
    STOP = "stop"
    PAUSE = "pause"
    RESUME = "resume"
    RESET = "reset"


class ControlMode(str, Enum):
    ANALYSIS = "analysis"
    EXECUTION = "execution"
    BOTH = "both"

    @property
    def loop_types(self) -> tuple[str, ...]:
        if self is ControlMode.BOTH:
            return (LoopType.ANALYSIS.value, LoopType.EXECUTION.value)
        return (self.value,)


@dataclass(slots=True)
class ControlResult:
    """What a control action changed, for display."""

    action: ControlAction
    mode: ControlMode
    messages: list[str] = field(default_factory=list)
    process_ids: list[str] = field(default_factory=list)


class ControlPlane:
    """Translates start/stop/pause/resume/reset into signals and registry calls."""

    def __init__(
        self,
        *,
        signals: ControlSignalStore,
        registry: ProcessRegistry,
        sessions: SessionStore,
    ) -> None:
        self.signals = signals
        self.registry = registry
        self.sessions = sessions

    def apply(
        self,
        action: ControlAction | str,
        mode: ControlMode | str = ControlMode.BOTH,
    ) -> ControlResult:
        action = ControlAction(action)
        mode = ControlMode(mode)
        result = ControlResult(action=action, mode=mode)
        handler = {
            ControlAction.START: self._start,
            ControlAction.STOP: self._stop,
            ControlAction.PAUSE: self._pause,
            ControlAction.RESUME: self._resume,
            ControlAction.RESET: self._reset,
        }[action]
        handler(result)
        logger.info("Control %s (%s): %s", action.value, mode.value, "; ".join(result.messages))
        return result

    def _start(self, result: ControlResult) -> None:
        if result.mode is ControlMode.BOTH and self.signals.clear(STOP):
            result.messages.append("Cleared global stop.")
        for loop_type in result.mode.loop_types:
            self.signals.clear(scoped_stop(loop_type))
            running = [record for record in self.registry.list(loop_type) if record.is_live]
            if running:
                result.messages.append(
                    f"{loop_type} loop already running ({', '.join(r.id for r in running)}).",
                )
                continue
            process_id = self.registry.launch(
                loop_type,
                ["run", "--type", loop_type],
                description=f"{loop_type} loop",
            )
            result.process_ids.append(process_id)
            result.messages.append(f"Started {loop_type} loop: {process_id}")

    def _stop(self, result: ControlResult) -> None:
        if result.mode is ControlMode.BOTH:
            self.signals.request_stop(reason="operator")
            result.messages.append("Global stop asserted.")
        else:
            self.signals.request_stop(result.mode.value, reason="operator")
            result.messages.append(f"Stop asserted for {result.mode.value}.")
        for loop_type in result.mode.loop_types:
            result.process_ids.extend(self.registry.stop_by_type(loop_type))
        if result.process_ids:
            result.messages.append(f"Stop requested for: {', '.join(result.process_ids)}")

    def _pause(self, result: ControlResult) -> None:
        self.signals.pause(reason=f"operator ({result.mode.value})")
        result.messages.append("Pause asserted.")

    def _resume(self, result: ControlResult) -> None:
        self.signals.resume()
        result.messages.append("Pause and scoped stops cleared.")

    def _reset(self, result: ControlResult) -> None:
        cleared = self.signals.clear_all()
        forced = self.registry.force_stop_all()
        locks = self.sessions.remove_locks()
        sessions = self.sessions.force_stop_all()
        result.process_ids.extend(forced)
        result.messages.append(f"Signals cleared: {', '.join(cleared) or 'none'}.")
        result.messages.append(f"Processes marked stopped: {', '.join(forced) or 'none'}.")
        result.messages.append(f"Session locks removed: {', '.join(locks) or 'none'}.")
        result.messages.append(f"Sessions stopped: {', '.join(sessions) or 'none'}.")
