from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_loop.tasks.models import Task
from agent_loop.tasks.prompts import (
    PromptBuildError,
    build_analysis_prompt,
    build_execution_prompt,
    check_template,
    render_template,
)

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Prompt Rendering"),
]


def _task() -> Task:
    return Task(
        id="abc12345def",
        name="Add login form",
        description="Build the login form.",
        priority=5,
        acceptance_criteria=["Form validates email", "Errors are shown inline"],
        steps=["Create component", "Wire API"],
        questions_resolved=[{"question": "Which framework?", "answer": ["react", "vite"]}],
    )


def test_execution_prompt_has_task_fields_and_marker() -> None:
    prompt = build_execution_prompt(
        _task(),
        promise="SHIPPED",
        worktree_path=Path("/tmp/wt/abc12345-add-login-form"),
        branch_name="task/abc12345-add-login-form",
    )

    assert "Task: Add login form [abc12345]" in prompt
    assert "- Form validates email" in prompt
    assert "2. Wire API" in prompt
    assert "A: react, vite" in prompt
    assert "on branch task/abc12345-add-login-form" in prompt
    assert "<promise>SHIPPED</promise>" in prompt
    assert "{" not in prompt


def test_whispers_are_listed_high_priority_first() -> None:
    prompt = build_execution_prompt(
        _task(),
        promise="COMPLETE",
        whispers=[
            {"message": "keep commits small", "priority": "normal"},
            {"message": "do not touch the API", "priority": "high"},
            {"message": ""},
        ],
    )

    section = prompt.split("Operator instructions:\n", 1)[1]
    assert section.startswith("- [high] do not touch the API\n- [normal] keep commits small")


def test_analysis_prompt_points_at_callback_commands() -> None:
    prompt = build_analysis_prompt(_task(), promise="COMPLETE")

    assert "agent-loop tasks analysed abc12345def" in prompt
    assert "agent-loop tasks ask abc12345def" in prompt
    assert "agent-loop tasks propose-split abc12345def" in prompt
    assert "<promise>COMPLETE</promise>" in prompt


def test_custom_template_with_unknown_placeholder_fails() -> None:
    with pytest.raises(PromptBuildError, match="branch"):
        build_execution_prompt(_task(), promise="X", template="Do {name} on {branch}")


def test_render_template_substitutes_all_fields() -> None:
    assert render_template("{a}-{b}", {"a": 1, "b": "two"}) == "1-two"


def test_analysis_prompt_carries_operator_whispers() -> None:
    prompt = build_analysis_prompt(
        _task(),
        promise="COMPLETE",
        whispers=[{"message": "split by screen", "priority": "high"}],
    )

    assert "- [high] split by screen" in prompt


def test_one_custom_template_serves_both_loop_types() -> None:
    template = "{name}: {workspace}\n{whispers}"

    assert "Add login form" in build_analysis_prompt(_task(), promise="X", template=template)
    assert "Add login form" in build_execution_prompt(_task(), promise="X", template=template)


@pytest.mark.parametrize(
    "template",
    ["Fix {name} }", "Fix {name", "Fix {priority:zz}", "Fix {name!z}"],
)
def test_malformed_template_raises_prompt_build_error(template: str) -> None:
    with pytest.raises(PromptBuildError):
        build_execution_prompt(_task(), promise="X", template=template)


def test_check_template_flags_unknown_and_malformed_fields() -> None:
    check_template("Do {name} [{short_id}] until <promise>{promise}</promise>")

    with pytest.raises(PromptBuildError, match="branch"):
        check_template("Do {name} on {branch}")
    with pytest.raises(PromptBuildError, match="Malformed"):
        check_template("Do {name} }")
    with pytest.raises(PromptBuildError, match="conversion"):
        check_template("Do {name!z}")
