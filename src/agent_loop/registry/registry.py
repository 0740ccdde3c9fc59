"""File-backed registry of loop and worker processes.

Each process owns ``<id>.json`` plus two append-only side logs
(``<id>.activity.jsonl`` and ``<id>.whisper.jsonl``), a console log and, when a
stop was requested, an ``<id>.stop`` artifact. Dead processes are detected only
when :meth:`ProcessRegistry.list` runs its sweeps; nothing pushes a death
notification.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

import psutil

from agent_loop.registry.models import (
    EXPIRING_STATUSES,
    LIVE_STATUSES,
    ProcessRecord,
    ProcessStatus,
)
from agent_loop.storage import (
    MalformedRecordError,
    append_jsonl,
    from_iso,
    load_json,
    read_jsonl,
    utc_now,
    write_json_atomic,
)

logger = logging.getLogger(__name__)

PROCESS_ID_ENV = "AGENT_LOOP_PROCESS_ID"
DEFAULT_TTL = timedelta(minutes=5)
_LAUNCH_POLL_SECONDS = 0.1
_KILL_GRACE_SECONDS = 5.0
_SIDE_SUFFIXES = (".json", ".activity.jsonl", ".whisper.jsonl", ".stop", ".console.log")


def pid_alive(pid: int | None) -> bool:
    """Return whether ``pid`` names a running, non-zombie OS process."""

    if pid is None or pid <= 0:
        return False
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def terminate_tree(pid: int, *, grace_seconds: float = _KILL_GRACE_SECONDS) -> bool:
    """Terminate ``pid`` and its descendants, force-killing survivors after a grace period."""

    try:
        root = psutil.Process(pid)
        children = root.children(recursive=True)
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied as error:
        logger.warning("Cannot inspect process %s: %s", pid, error)
        return False

    targets = [*children, root]
    for proc in targets:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as error:
            logger.warning("Cannot terminate process %s: %s", proc.pid, error)
    _, alive = psutil.wait_procs(targets, timeout=grace_seconds)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as error:
            logger.warning("Cannot kill process %s: %s", proc.pid, error)
    return True


def new_process_id(process_type: str) -> str:
    return f"{process_type}-{utc_now():%Y%m%d%H%M%S}-{uuid4().hex[:6]}"


class ProcessRegistry:
    """Launches, tracks, stops and kills processes through their record files."""

    def __init__(  # noqa: PLR0913
        self,
        processes_dir: Path,
        *,
        ttl: timedelta = DEFAULT_TTL,
        launch_timeout_seconds: float = 10.0,
        project_root: Path | None = None,
        is_alive: Callable[[int | None], bool] = pid_alive,
        spawn: Callable[..., Any] = subprocess.Popen,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.processes_dir = processes_dir
        self.ttl = ttl
        self.launch_timeout_seconds = launch_timeout_seconds
        self.project_root = project_root
        self._is_alive = is_alive
        self._spawn = spawn
        self._clock = clock
        self._sleep = sleep

    # -- paths ------------------------------------------------------------

    def record_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}.json"

    def activity_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}.activity.jsonl"

    def whisper_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}.whisper.jsonl"

    def stop_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}.stop"

    def console_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}.console.log"

    # -- launching and registration ---------------------------------------

    def launch(
        self,
        process_type: str,
        args: Iterable[str],
        *,
        description: str | None = None,
    ) -> str:
        """Spawn ``python -m agent_loop.main <args>`` detached and wait for its record.

        Returns as soon as the child's ``starting`` record is observable. When the
        child does not register within the launch timeout, the record is written
        here with the child's pid so the process is never invisible.
        """

        process_id = new_process_id(process_type)
        self.processes_dir.mkdir(parents=True, exist_ok=True)
        env = os.environ.copy()
        env[PROCESS_ID_ENV] = process_id
        command = [sys.executable, "-m", "agent_loop.main", *args]

        popen_kwargs: dict[str, Any] = {}
        if os.name == "nt":
            popen_kwargs["creationflags"] = (
                subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.DETACHED_PROCESS
            )
        else:
            popen_kwargs["start_new_session"] = True

        with self.console_path(process_id).open("ab") as console:
            proc = self._spawn(
                command,
                stdin=subprocess.DEVNULL,
                stdout=console,
                stderr=subprocess.STDOUT,
                cwd=self.project_root,
                env=env,
                **popen_kwargs,
            )
        logger.info("Launched %s process %s (pid %s)", process_type, process_id, proc.pid)

        deadline = time.monotonic() + self.launch_timeout_seconds
        exited = False
        while time.monotonic() < deadline:
            if self.record_path(process_id).is_file():
                break
            if proc.poll() is not None:
                exited = True
                break
            self._sleep(_LAUNCH_POLL_SECONDS)

        if not self.record_path(process_id).is_file():
            if exited:
                logger.error(
                    "Process %s exited with code %s before registering",
                    process_id,
                    proc.returncode,
                )
                record = self.register(
                    process_type,
                    process_id=process_id,
                    pid=proc.pid,
                    description=description,
                )
                self.set_status(record.id, ProcessStatus.FAILED)
            else:
                logger.warning(
                    "Process %s did not register within %.1fs; writing its record",
                    process_id,
                    self.launch_timeout_seconds,
                )
                self.register(
                    process_type,
                    process_id=process_id,
                    pid=proc.pid,
                    description=description,
                )
        elif description:
            self.update(process_id, description=description)

        self.log_activity(process_id, "launched", f"Launched with args: {' '.join(args)}")
        return process_id

    def register(
        self,
        process_type: str,
        *,
        process_id: str | None = None,
        pid: int | None = None,
        status: ProcessStatus = ProcessStatus.STARTING,
        **fields: Any,
    ) -> ProcessRecord:
        """Write the record for a process (by default the current one)."""

        now = self._clock().isoformat()
        record = ProcessRecord(
            id=process_id or os.getenv(PROCESS_ID_ENV) or new_process_id(process_type),
            type=process_type,
            status=status,
            pid=pid if pid is not None else os.getpid(),
            started_at=now,
            updated_at=now,
        )
        for key, value in fields.items():
            if not hasattr(record, key):
                raise ValueError(f"Unknown process record field: {key}")
            setattr(record, key, value)
        write_json_atomic(self.record_path(record.id), record.to_dict())
        return record

    # -- reads ------------------------------------------------------------

    def get(self, process_id: str) -> ProcessRecord | None:
        return self._read(self.record_path(process_id))

    def list(
        self,
        process_type: str | None = None,
        status: ProcessStatus | None = None,
    ) -> list[ProcessRecord]:
        """Sweep expired and dead records, then return the filtered remainder."""

        now = self._clock()
        records = self._sweep_expired(self._scan(), now)
        records = self._sweep_dead(records, now)
        return [
            record
            for record in records
            if (process_type is None or record.type == process_type)
            and (status is None or record.status == status)
        ]

    def live_task_ids(self) -> set[str]:
        """Task ids referenced by starting/running processes with a live pid."""

        return {
            record.task_id
            for record in self.list()
            if record.is_live and record.task_id and self._is_alive(record.pid)
        }

    # -- cooperative stop -------------------------------------------------

    def stop(self, process_id: str) -> bool:
        record = self.get(process_id)
        if record is None or not record.is_live:
            return False
        self._write_stop_artifact(record.id, reason="stop")
        return True

    def stop_by_type(self, process_type: str) -> list[str]:
        """Write one stop artifact per starting/running process of ``process_type``."""

        stopped: list[str] = []
        for record in self._scan():
            if record.type == process_type and record.is_live:
                self._write_stop_artifact(record.id, reason="stop")
                stopped.append(record.id)
        return stopped

    def stop_all(self) -> list[str]:
        stopped: list[str] = []
        for record in self._scan():
            if record.is_live:
                self._write_stop_artifact(record.id, reason="stop")
                stopped.append(record.id)
        return stopped

    def stop_requested(self, process_id: str) -> bool:
        return self.stop_path(process_id).exists()

    def clear_stop_request(self, process_id: str) -> None:
        self.stop_path(process_id).unlink(missing_ok=True)

    # -- hard kill --------------------------------------------------------

    def kill(self, process_id: str) -> bool:
        record = self.get(process_id)
        if record is None or not record.is_live:
            return False
        self._kill_record(record)
        return True

    def kill_by_type(self, process_type: str) -> list[str]:
        killed: list[str] = []
        for record in self._scan():
            if record.type == process_type and record.is_live:
                self._kill_record(record)
                killed.append(record.id)
        return killed

    def kill_all(self) -> list[str]:
        killed: list[str] = []
        for record in self._scan():
            if record.is_live:
                self._kill_record(record)
                killed.append(record.id)
        return killed

    def force_stop_all(self) -> list[str]:
        """Mark every starting/running record stopped without signalling any process."""

        forced: list[str] = []
        for record in self._scan():
            if not record.is_live:
                continue
            self._write_stop_artifact(record.id, reason="reset")
            self.set_status(record.id, ProcessStatus.STOPPED)
            self.log_activity(record.id, "force_stopped", "Marked stopped by control reset")
            forced.append(record.id)
        return forced

    # -- worker-side updates ----------------------------------------------

    def update(self, process_id: str, **fields: Any) -> ProcessRecord | None:
        record = self.get(process_id)
        if record is None:
            return None
        for key, value in fields.items():
            if not hasattr(record, key) or key == "id":
                raise ValueError(f"Unknown process record field: {key}")
            setattr(record, key, value)
        record.updated_at = self._clock().isoformat()
        write_json_atomic(self.record_path(record.id), record.to_dict())
        return record

    def set_status(self, process_id: str, status: ProcessStatus) -> ProcessRecord | None:
        fields: dict[str, Any] = {"status": status}
        now = self._clock().isoformat()
        if status == ProcessStatus.FAILED:
            fields["failed_at"] = now
        elif status == ProcessStatus.COMPLETED:
            fields["completed_at"] = now
        return self.update(process_id, **fields)

    def heartbeat(
        self,
        process_id: str,
        *,
        status: str | None = None,
        next_action: str | None = None,
    ) -> ProcessRecord | None:
        return self.update(
            process_id,
            heartbeat_at=self._clock().isoformat(),
            heartbeat_status=status,
            heartbeat_next_action=next_action,
        )

    def log_activity(self, process_id: str, event: str, message: str, **details: Any) -> None:
        entry: dict[str, Any] = {
            "timestamp": self._clock().isoformat(),
            "event": event,
            "message": message,
        }
        if details:
            entry["details"] = details
        append_jsonl(self.activity_path(process_id), entry)

    def read_activity(
        self,
        process_id: str,
        *,
        position: int = 0,
        tail: int | None = None,
    ) -> tuple[list[dict[str, Any]], int]:
        return read_jsonl(self.activity_path(process_id), position=position, tail=tail)

    # -- whispers ---------------------------------------------------------

    def whisper(self, target: str, message: str, *, priority: str = "normal") -> list[str]:
        """Append an operator instruction for a process id, or for every live process of a type."""

        if self.record_path(target).is_file():
            recipients = [target]
        else:
            recipients = [
                record.id for record in self._scan() if record.type == target and record.is_live
            ]
        entry = {
            "id": uuid4().hex,
            "message": message,
            "priority": priority,
            "created_at": self._clock().isoformat(),
        }
        for process_id in recipients:
            append_jsonl(self.whisper_path(process_id), entry)
        return recipients

    def read_whispers(
        self,
        process_id: str,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        return read_jsonl(self.whisper_path(process_id), position=offset)

    # -- internals --------------------------------------------------------

    def _read(self, path: Path) -> ProcessRecord | None:
        try:
            return ProcessRecord.from_dict(load_json(path))
        except FileNotFoundError:
            return None
        except (MalformedRecordError, ValueError, TypeError) as error:
            logger.warning("Skipping malformed process record %s: %s", path, error)
            return None

    def _scan(self) -> list[ProcessRecord]:
        if not self.processes_dir.is_dir():
            return []
        records: list[ProcessRecord] = []
        for path in sorted(self.processes_dir.glob("*.json")):
            record = self._read(path)
            if record is not None:
                records.append(record)
        return records

    def _sweep_expired(self, records: list[ProcessRecord], now: datetime) -> list[ProcessRecord]:
        kept: list[ProcessRecord] = []
        for record in records:
            if record.status in EXPIRING_STATUSES:
                reference = from_iso(record.failed_at or record.updated_at or record.started_at)
                if reference is None or now - reference > self.ttl:
                    self._purge(record.id)
                    logger.debug("Purged expired process record %s", record.id)
                    continue
            kept.append(record)
        return kept

    def _sweep_dead(self, records: list[ProcessRecord], now: datetime) -> list[ProcessRecord]:
        for record in records:
            if record.status not in LIVE_STATUSES or self._is_alive(record.pid):
                continue
            record.status = ProcessStatus.STOPPED
            record.failed_at = now.isoformat()
            record.updated_at = now.isoformat()
            write_json_atomic(self.record_path(record.id), record.to_dict())
            self.log_activity(
                record.id,
                "process_died",
                f"pid {record.pid} is no longer running",
            )
            logger.warning("Process %s (pid %s) is gone; marked stopped", record.id, record.pid)
        return records

    def _purge(self, process_id: str) -> None:
        for suffix in _SIDE_SUFFIXES:
            (self.processes_dir / f"{process_id}{suffix}").unlink(missing_ok=True)

    def _write_stop_artifact(self, process_id: str, *, reason: str) -> None:
        write_json_atomic(
            self.stop_path(process_id),
            {"requested_at": self._clock().isoformat(), "reason": reason},
        )

    def _kill_record(self, record: ProcessRecord) -> None:
        self._write_stop_artifact(record.id, reason="kill")
        if record.pid is not None and record.pid != os.getpid():
            terminate_tree(record.pid)
        now = self._clock().isoformat()
        self.update(record.id, status=ProcessStatus.STOPPED, failed_at=now)
        self.log_activity(record.id, "killed", f"Terminated pid {record.pid}")
        logger.info("Killed process %s (pid %s)", record.id, record.pid)
