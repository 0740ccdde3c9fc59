"""Runtime configuration for loops, registry, worktrees and the worker backend."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_loop.tasks.prompts import PromptBuildError, check_template

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p --model {model} --session-id {session_id} "
    "--permission-mode acceptEdits --output-format text -- {prompt}"
)

DEFAULT_COPY_PATTERNS: tuple[str, ...] = (
    ".env",
    ".env.*",
    "*.local",
    "*.local.*",
    ".npmrc",
    ".secrets/*",
)

DEFAULT_COPY_DENYLIST: tuple[str, ...] = (
    ".git",
    "node_modules",
    ".venv",
    "venv",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    "dist",
    "build",
    "target",
    ".next",
    ".turbo",
    "coverage",
)


@dataclass(slots=True)
class PathSettings:
    """Where shared state lives relative to the project checkout."""

    project_root: Path = Path()
    state_dir_name: str = ".agent-loop"

    @property
    def state_dir(self) -> Path:
        return self.project_root / self.state_dir_name

    @property
    def tasks_dir(self) -> Path:
        return self.state_dir / "tasks"

    @property
    def control_dir(self) -> Path:
        return self.state_dir / "control"


@dataclass(slots=True)
class LoopSettings:
    """Retry, pause and pacing policy of the execution loop."""

    max_retries: int = 2
    consecutive_failure_threshold: int = 3
    cooldown_seconds: float = 5.0
    idle_poll_seconds: float = 5.0
    max_skips: int = 3
    max_rate_limit_waits: int = 3
    analysis_enabled: bool = False
    use_worktrees: bool = True
    completion_promise: str = "COMPLETE"
    analysing_safety_seconds: int = 300


@dataclass(slots=True)
class RegistrySettings:
    """Process registry retention and launch behaviour."""

    ttl_seconds: int = 300
    launch_timeout_seconds: float = 10.0


@dataclass(slots=True)
class WorktreeSettings:
    """Per-task git isolation settings."""

    base_branch: str | None = None
    copy_patterns: tuple[str, ...] = DEFAULT_COPY_PATTERNS
    copy_denylist: tuple[str, ...] = DEFAULT_COPY_DENYLIST
    max_copy_files: int = 200
    git_timeout_seconds: float = 120.0


@dataclass(slots=True)
class RateLimitSettings:
    """Provider rate-limit wait policy."""

    buffer_seconds: int = 60
    fallback_seconds: int = 900


@dataclass(slots=True)
class WorkerSettings:
    """External agent command used by the CLI worker backend."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    model: str = "sonnet"
    analysis_model: str | None = None
    timeout_seconds: int = 3_600
    graceful_shutdown_seconds: int = 10
    prompt_template_path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    paths: PathSettings = field(default_factory=PathSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    worktree: WorktreeSettings = field(default_factory=WorktreeSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        root = project_root or Path(os.getenv("AGENT_LOOP_PROJECT_ROOT", ".")).resolve()
        prompt_template = os.getenv("AGENT_LOOP_PROMPT_TEMPLATE", "").strip()
        return cls(
            paths=PathSettings(
                project_root=root,
                state_dir_name=os.getenv("AGENT_LOOP_STATE_DIR", ".agent-loop"),
            ),
            loop=LoopSettings(
                max_retries=int(os.getenv("AGENT_LOOP_MAX_RETRIES", "2")),
                consecutive_failure_threshold=int(
                    os.getenv("AGENT_LOOP_CONSECUTIVE_FAILURE_THRESHOLD", "3"),
                ),
                cooldown_seconds=float(os.getenv("AGENT_LOOP_COOLDOWN_SECONDS", "5")),
                idle_poll_seconds=float(os.getenv("AGENT_LOOP_IDLE_POLL_SECONDS", "5")),
                max_skips=int(os.getenv("AGENT_LOOP_MAX_SKIPS", "3")),
                max_rate_limit_waits=int(os.getenv("AGENT_LOOP_MAX_RATE_LIMIT_WAITS", "3")),
                analysis_enabled=_env_bool("AGENT_LOOP_ANALYSIS_ENABLED", default=False),
                use_worktrees=_env_bool("AGENT_LOOP_USE_WORKTREES", default=True),
                completion_promise=os.getenv("AGENT_LOOP_COMPLETION_PROMISE", "COMPLETE"),
                analysing_safety_seconds=int(
                    os.getenv("AGENT_LOOP_ANALYSING_SAFETY_SECONDS", "300"),
                ),
            ),
            registry=RegistrySettings(
                ttl_seconds=int(os.getenv("AGENT_LOOP_PROCESS_TTL_SECONDS", "300")),
                launch_timeout_seconds=float(
                    os.getenv("AGENT_LOOP_LAUNCH_TIMEOUT_SECONDS", "10"),
                ),
            ),
            worktree=WorktreeSettings(
                base_branch=os.getenv("AGENT_LOOP_BASE_BRANCH") or None,
                copy_patterns=_env_csv("AGENT_LOOP_WORKTREE_COPY", DEFAULT_COPY_PATTERNS),
                copy_denylist=_env_csv("AGENT_LOOP_WORKTREE_DENYLIST", DEFAULT_COPY_DENYLIST),
                max_copy_files=int(os.getenv("AGENT_LOOP_WORKTREE_MAX_COPY_FILES", "200")),
                git_timeout_seconds=float(os.getenv("AGENT_LOOP_GIT_TIMEOUT_SECONDS", "120")),
            ),
            rate_limit=RateLimitSettings(
                buffer_seconds=int(os.getenv("AGENT_LOOP_RATE_LIMIT_BUFFER_SECONDS", "60")),
                fallback_seconds=int(os.getenv("AGENT_LOOP_RATE_LIMIT_FALLBACK_SECONDS", "900")),
            ),
            worker=WorkerSettings(
                command_template=os.getenv(
                    "AGENT_LOOP_WORKER_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                model=os.getenv("AGENT_LOOP_WORKER_MODEL", "sonnet"),
                analysis_model=os.getenv("AGENT_LOOP_ANALYSIS_MODEL") or None,
                timeout_seconds=int(os.getenv("AGENT_LOOP_WORKER_TIMEOUT_SECONDS", "3600")),
                graceful_shutdown_seconds=int(
                    os.getenv("AGENT_LOOP_WORKER_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                prompt_template_path=Path(prompt_template) if prompt_template else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the loop cannot work with."""

        if self.loop.max_retries < 0:
            raise ValueError("AGENT_LOOP_MAX_RETRIES must be >= 0.")
        if self.loop.consecutive_failure_threshold <= 0:
            raise ValueError("AGENT_LOOP_CONSECUTIVE_FAILURE_THRESHOLD must be > 0.")
        if self.loop.cooldown_seconds < 0:
            raise ValueError("AGENT_LOOP_COOLDOWN_SECONDS must be >= 0.")
        if self.loop.idle_poll_seconds <= 0:
            raise ValueError("AGENT_LOOP_IDLE_POLL_SECONDS must be > 0.")
        if self.loop.max_skips <= 0:
            raise ValueError("AGENT_LOOP_MAX_SKIPS must be > 0.")
        if self.loop.max_rate_limit_waits < 0:
            raise ValueError("AGENT_LOOP_MAX_RATE_LIMIT_WAITS must be >= 0.")
        if not self.loop.completion_promise.strip():
            raise ValueError("AGENT_LOOP_COMPLETION_PROMISE must not be empty.")
        if self.registry.ttl_seconds <= 0:
            raise ValueError("AGENT_LOOP_PROCESS_TTL_SECONDS must be > 0.")
        if self.worker.timeout_seconds <= 0:
            raise ValueError("AGENT_LOOP_WORKER_TIMEOUT_SECONDS must be > 0.")
        if "{prompt}" not in self.worker.command_template and (
            "{prompt_file}" not in self.worker.command_template
        ):
            raise ValueError(
                "AGENT_LOOP_WORKER_COMMAND_TEMPLATE must include {prompt} or {prompt_file}.",
            )
        if self.worktree.max_copy_files < 0:
            raise ValueError("AGENT_LOOP_WORKTREE_MAX_COPY_FILES must be >= 0.")
        if self.worker.prompt_template_path is not None and (
            not self.worker.prompt_template_path.is_file()
        ):
            raise ValueError(
                f"AGENT_LOOP_PROMPT_TEMPLATE does not exist: {self.worker.prompt_template_path}",
            )
        if self.worker.prompt_template_path is not None:
            try:
                check_template(self.worker.prompt_template_path.read_text("utf-8"))
            except PromptBuildError as error:
                raise ValueError(f"AGENT_LOOP_PROMPT_TEMPLATE is invalid: {error}") from error


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
