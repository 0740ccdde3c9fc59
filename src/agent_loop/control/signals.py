"""Sentinel-file control signals shared by every loop process.

A signal is asserted while its file exists. The optional JSON payload is only
metadata for display. Loops re-check the files at each suspension point;
:class:`SignalObserver` keeps an event-driven cache for status views and is
never consulted for control flow.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from agent_loop.storage import read_json_or_none, utc_now, write_json_atomic

logger = logging.getLogger(__name__)

STOP = "stop"
PAUSE = "pause"
RESUME = "resume"
MAX_POLL_SECONDS = 1.0


class WaitOutcome(str, Enum):
    """Result of any interruptible wait."""

    STOP = "stop"
    CONTINUE = "continue"


def scoped_stop(loop_type: str) -> str:
    return f"{STOP}-{loop_type}"


class ControlSignalStore:
    """Reads and writes signal sentinels under one directory."""

    def __init__(
        self,
        signals_dir: Path,
        *,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.signals_dir = signals_dir
        self._sleep = sleep
        self._monotonic = monotonic

    def path(self, name: str) -> Path:
        return self.signals_dir / name

    def assert_signal(self, name: str, **payload: Any) -> None:
        write_json_atomic(self.path(name), {"asserted_at": utc_now().isoformat(), **payload})
        logger.info("Signal asserted: %s", name)

    def clear(self, name: str) -> bool:
        path = self.path(name)
        existed = path.exists()
        path.unlink(missing_ok=True)
        if existed:
            logger.info("Signal cleared: %s", name)
        return existed

    def is_asserted(self, name: str) -> bool:
        return self.path(name).exists()

    def request_stop(self, loop_type: str | None = None, *, reason: str | None = None) -> None:
        self.assert_signal(scoped_stop(loop_type) if loop_type else STOP, reason=reason)

    def stop_requested(self, loop_type: str | None = None) -> bool:
        """Global stop, or the stop scoped to ``loop_type``."""

        if self.is_asserted(STOP):
            return True
        return loop_type is not None and self.is_asserted(scoped_stop(loop_type))

    def pause(self, reason: str | None = None) -> None:
        self.clear(RESUME)
        self.assert_signal(PAUSE, reason=reason)

    def is_paused(self) -> bool:
        return self.is_asserted(PAUSE)

    def pause_reason(self) -> str | None:
        payload = read_json_or_none(self.path(PAUSE))
        if payload is None:
            return None
        reason = payload.get("reason")
        return str(reason) if reason else None

    def resume(self) -> None:
        """Clear pause and every scoped stop; the global stop is left alone."""

        self.clear(PAUSE)
        for path in self._signal_files():
            if path.name.startswith(f"{STOP}-"):
                self.clear(path.name)
        self.assert_signal(RESUME)

    def clear_all(self) -> list[str]:
        cleared: list[str] = []
        for path in self._signal_files():
            path.unlink(missing_ok=True)
            cleared.append(path.name)
        if cleared:
            logger.info("Cleared signals: %s", ", ".join(cleared))
        return cleared

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Asserted signals with their display payloads."""

        return {path.name: read_json_or_none(path) or {} for path in self._signal_files()}

    def wait_while_paused(
        self,
        loop_type: str | None = None,
        *,
        should_stop: Callable[[], bool] | None = None,
        on_tick: Callable[[], None] | None = None,
    ) -> WaitOutcome:
        """Block in short polls until pause clears or a stop asserts."""

        while True:
            if self.stop_requested(loop_type) or (should_stop is not None and should_stop()):
                return WaitOutcome.STOP
            if not self.is_paused():
                return WaitOutcome.CONTINUE
            if on_tick is not None:
                on_tick()
            self._sleep(MAX_POLL_SECONDS)

    def sleep(
        self,
        seconds: float,
        loop_type: str | None = None,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> WaitOutcome:
        """Interruptible delay; returns ``STOP`` as soon as a stop asserts."""

        deadline = self._monotonic() + max(0.0, seconds)
        while True:
            if self.stop_requested(loop_type) or (should_stop is not None and should_stop()):
                return WaitOutcome.STOP
            remaining = deadline - self._monotonic()
            if remaining <= 0:
                return WaitOutcome.CONTINUE
            self._sleep(min(MAX_POLL_SECONDS, remaining))

    def _signal_files(self) -> list[Path]:
        if not self.signals_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.signals_dir.iterdir()
            if path.is_file() and not path.name.startswith(".")
        )


class SignalObserver(FileSystemEventHandler):
    """Display-only cache of asserted signals fed by filesystem notifications."""

    def __init__(self, signals_dir: Path) -> None:
        super().__init__()
        self.signals_dir = signals_dir
        self._lock = threading.Lock()
        self._asserted: set[str] = set()
        self._observer: Any = None
        self.refresh()

    def refresh(self) -> None:
        names: set[str] = set()
        if self.signals_dir.is_dir():
            names = {
                path.name
                for path in self.signals_dir.iterdir()
                if path.is_file() and not path.name.startswith(".")
            }
        with self._lock:
            self._asserted = names

    def asserted(self) -> set[str]:
        with self._lock:
            return set(self._asserted)

    def start(self) -> None:
        self.signals_dir.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(self, str(self.signals_dir), recursive=False)
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None

    def __enter__(self) -> SignalObserver:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._set(event.src_path, present=True)

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._set(event.src_path, present=True)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._set(event.src_path, present=False)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        self._set(event.src_path, present=False)
        self._set(event.dest_path, present=True)

    def _set(self, raw_path: str | bytes, *, present: bool) -> None:
        name = Path(raw_path.decode() if isinstance(raw_path, bytes) else raw_path).name
        if not name or name.startswith("."):
            return
        with self._lock:
            if present:
                self._asserted.add(name)
            else:
                self._asserted.discard(name)
