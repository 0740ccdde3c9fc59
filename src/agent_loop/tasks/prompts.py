"""Prompt templates for the execution and analysis loop types."""

from __future__ import annotations

import re
import string
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from agent_loop.tasks.models import Task

_COMPLETION_RULES = """
IMPORTANT: completion protocol.
- Work only on this task. Do not start other tasks from the queue.
- When every acceptance criterion is met and your changes are saved, print exactly
  <promise>{promise}</promise>
  on its own line as the very last thing you output.
- If you cannot finish, explain what blocked you and do NOT print the marker.
"""

EXECUTION_PROMPT = """\
You are an autonomous coding agent working on one task from a shared queue.

Task: {name} [{short_id}]
Category: {category}
Priority: {priority}
Effort: {effort}

Description:
{description}

Acceptance criteria:
{acceptance_criteria}

Suggested steps:
{steps}

Applicable agents: {applicable_agents}
Applicable standards: {applicable_standards}

Resolved questions:
{questions}

Workspace:
{workspace}

Operator instructions:
{whispers}
""" + _COMPLETION_RULES

ANALYSIS_PROMPT = """\
You are reviewing a task before it is executed. Do not change any code.

Task: {name} [{short_id}]
Category: {category}
Priority: {priority}

Description:
{description}

Acceptance criteria:
{acceptance_criteria}

Resolved questions:
{questions}

Operator instructions:
{whispers}

Decide one of:
1. The task is clear and small enough. Record your analysis with
   `agent-loop tasks analysed {task_id} --summary "<one paragraph>"`.
2. Something is ambiguous. Ask one question with
   `agent-loop tasks ask {task_id} "<question>" --option "<choice>" ...`.
3. The task is too large. Propose a split with
   `agent-loop tasks propose-split {task_id} --reason "<why>" --sub-task "<name>" ...`.
""" + _COMPLETION_RULES

_EMPTY = "(none)"
_FIELD_ROOT = re.compile(r"[^.\[]*")
_CONVERSIONS = frozenset({None, "r", "s", "a"})

PROMPT_FIELDS = frozenset(
    {
        "task_id",
        "short_id",
        "name",
        "category",
        "priority",
        "effort",
        "description",
        "acceptance_criteria",
        "steps",
        "applicable_agents",
        "applicable_standards",
        "questions",
        "promise",
        "workspace",
        "whispers",
    },
)


class PromptBuildError(ValueError):
    """Raised when a template references a field the builder does not provide."""


def build_execution_prompt(  # noqa: PLR0913
    task: Task,
    *,
    promise: str,
    worktree_path: Path | None = None,
    branch_name: str | None = None,
    whispers: Iterable[Mapping[str, Any]] = (),
    template: str | None = None,
) -> str:
    """Render the prompt for one execution attempt."""

    if worktree_path is not None:
        workspace = f"Work inside {worktree_path} on branch {branch_name or '(detached)'}."
    else:
        workspace = "Work in the current checkout."
    fields = _task_fields(task)
    fields.update(
        promise=promise,
        workspace=workspace,
        whispers=_render_whispers(whispers),
    )
    return render_template(template or EXECUTION_PROMPT, fields)


def build_analysis_prompt(
    task: Task,
    *,
    promise: str,
    whispers: Iterable[Mapping[str, Any]] = (),
    template: str | None = None,
) -> str:
    fields = _task_fields(task)
    fields.update(
        promise=promise,
        workspace="Review only; leave the checkout unchanged.",
        whispers=_render_whispers(whispers),
    )
    return render_template(template or ANALYSIS_PROMPT, fields)


def load_template(path: Path | None) -> str | None:
    if path is None:
        return None
    return path.read_text("utf-8")


def render_template(template: str, fields: Mapping[str, Any]) -> str:
    """Substitute every placeholder or fail; a half-rendered prompt is never returned."""

    missing = sorted(name for name in placeholder_names(template) if name not in fields)
    if missing:
        raise PromptBuildError(f"Unknown prompt placeholders: {_names(missing)}")
    try:
        return template.format(**fields)
    except (ValueError, TypeError, IndexError, KeyError, AttributeError) as error:
        raise PromptBuildError(f"Prompt template failed to render: {error}") from error


def placeholder_names(template: str) -> set[str]:
    """Top-level field names a ``str.format`` template refers to."""

    return {
        _FIELD_ROOT.match(name).group(0)
        for _, name, _, _ in _parse(template)
        if name is not None
    }


def check_template(template: str) -> None:
    """Reject a template that is malformed or names a field no prompt provides."""

    unknown = sorted(placeholder_names(template) - PROMPT_FIELDS)
    if unknown:
        raise PromptBuildError(f"Unknown prompt placeholders: {_names(unknown)}")
    for _, name, _, conversion in _parse(template):
        if conversion not in _CONVERSIONS:
            raise PromptBuildError(
                f"Malformed prompt template: bad conversion !{conversion} in {{{name}}}",
            )


def _parse(template: str) -> list[tuple[str, str | None, str | None, str | None]]:
    try:
        return list(string.Formatter().parse(template))
    except ValueError as error:
        raise PromptBuildError(f"Malformed prompt template: {error}") from error


def _task_fields(task: Task) -> dict[str, Any]:
    return {
        "task_id": task.id,
        "short_id": task.short_id,
        "name": task.name,
        "category": task.category or _EMPTY,
        "priority": task.priority,
        "effort": task.effort or _EMPTY,
        "description": task.description.strip() or _EMPTY,
        "acceptance_criteria": _bullets(task.acceptance_criteria),
        "steps": _bullets(task.steps, numbered=True),
        "applicable_agents": ", ".join(task.applicable_agents) or _EMPTY,
        "applicable_standards": ", ".join(task.applicable_standards) or _EMPTY,
        "questions": _render_questions(task.questions_resolved),
    }


def _bullets(items: list[str], *, numbered: bool = False) -> str:
    if not items:
        return _EMPTY
    if numbered:
        return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=1))
    return "\n".join(f"- {item}" for item in items)


def _render_questions(entries: list[dict[str, Any]]) -> str:
    lines: list[str] = []
    for entry in entries:
        answer = entry.get("answer", "")
        if isinstance(answer, list):
            answer = ", ".join(str(item) for item in answer)
        lines.append(f"Q: {entry.get('question', '')}")
        lines.append(f"A: {answer}")
        if entry.get("custom_text"):
            lines.append(f"   {entry['custom_text']}")
    return "\n".join(lines) if lines else _EMPTY


def _render_whispers(entries: Iterable[Mapping[str, Any]]) -> str:
    ordered = sorted(
        entries,
        key=lambda entry: 0 if entry.get("priority") == "high" else 1,
    )
    lines = [
        f"- [{entry.get('priority', 'normal')}] {entry.get('message', '')}"
        for entry in ordered
        if entry.get("message")
    ]
    return "\n".join(lines) if lines else _EMPTY


def _names(names: list[str]) -> str:
    # Positional fields like "{}" have an empty name.
    return ", ".join(name or "{}" for name in names)
