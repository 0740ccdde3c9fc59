"""Subprocess-based worker for CLI coding agents."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from pathlib import Path
from typing import IO

from agent_loop.orchestrator.backend.base import WorkerRequest, WorkerResult
from agent_loop.registry.registry import terminate_tree

TIMEOUT_EXIT_CODE = 124
INTERRUPTED_EXIT_CODE = 130
_POLL_SECONDS = 0.1
_TERMINATE_GRACE_SECONDS = 2.0


class WorkerRunError(RuntimeError):
    """Worker start-up error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentWorker:
    """Execute the configured agent command template once per attempt."""

    def run(self, request: WorkerRequest) -> WorkerResult:
        request.run_dir.mkdir(parents=True, exist_ok=True)
        prompt_file = request.run_dir / "prompt.md"
        prompt_file.write_text(request.prompt, "utf-8")
        output_path = request.run_dir / "output.log"

        run_args = build_run_args(
            command_template=request.command_template,
            values={
                "prompt": request.prompt,
                "prompt_file": str(prompt_file),
                "session_id": request.session_id,
                "model": request.model,
            },
        )

        env = os.environ.copy()
        env.update(request.env)
        env["AGENT_LOOP_SESSION_ID"] = request.session_id
        env["AGENT_LOOP_MODEL"] = request.model

        try:
            with output_path.open("w", encoding="utf-8") as output_handle:
                exit_code, timed_out, interrupted = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=request.cwd,
                    timeout_seconds=request.timeout_seconds,
                    output_handle=output_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                )
        except FileNotFoundError as error:
            raise WorkerRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerRunError(
                f"Agent command failed to start: {error}",
                transient=True,
            ) from error

        return WorkerResult(
            exit_code=exit_code,
            timed_out=timed_out,
            interrupted=interrupted,
            output_path=output_path,
            combined_output=output_path.read_text("utf-8", errors="replace"),
        )


def build_run_args(*, command_template: str, values: dict[str, str]) -> list[str]:
    """Split the template into argv first, then substitute each argument.

    Substituting after splitting keeps prompts with quotes or newlines intact
    as a single argument on every platform.
    """

    stripped = command_template.strip()
    if not stripped:
        raise WorkerRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise WorkerRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        template_args = shlex.split(stripped, posix=os.name != "nt")
        argv = [arg.format(**values) for arg in template_args]
    except KeyError as error:
        raise WorkerRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    except ValueError as error:
        raise WorkerRunError(f"Invalid command template: {error}", transient=False) from error
    if not argv:
        raise WorkerRunError("Agent command template rendered empty command.", transient=False)
    return argv


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    output_handle: IO[str],
    shutdown_requested,
    graceful_shutdown_seconds: int | None,
) -> tuple[int, bool, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        cwd=cwd,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=output_handle,
        stderr=subprocess.STDOUT,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True, False

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return INTERRUPTED_EXIT_CODE, False, True

        time.sleep(_POLL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    terminate_tree(process.pid, grace_seconds=_TERMINATE_GRACE_SECONDS)
    try:
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
