"""Deterministic classification of worker attempts for the loop's retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

FAILURE_CLASSIFIER_VERSION = 2


class FailureType(str, Enum):
    """Worker failure taxonomy, in classification priority order."""

    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    VERIFICATION_FAILED = "verification_failed"
    CODE_ERROR = "code_error"
    TASK_NOT_FOUND = "task_not_found"
    MAX_ITERATIONS = "max_iterations"
    CRASH = "crash"


@dataclass(frozen=True, slots=True)
class FailureRule:
    """One row of the ordered rule table."""

    name: str
    failure_type: FailureType
    patterns: tuple[str, ...]
    recoverable: bool
    suggested_action: str


FAILURE_RULES: tuple[FailureRule, ...] = (
    FailureRule(
        name="rate_limit",
        failure_type=FailureType.RATE_LIMIT,
        # Phrases only; bare numbers like "429" also occur in test counts.
        patterns=(
            "hit your limit",
            "usage limit reached",
            "rate limit exceeded",
            "rate limit reached",
            "rate_limit_error",
            "too many requests",
            "status 429",
            "error 429",
            "http 429",
        ),
        recoverable=True,
        suggested_action="Wait for the provider limit to reset, then retry the same task.",
    ),
    FailureRule(
        name="verification_failed",
        failure_type=FailureType.VERIFICATION_FAILED,
        patterns=(
            "verification failed",
            "tests failed",
            "test failed",
            "failing tests",
            "assertionerror",
            "lint failed",
            "typecheck failed",
        ),
        recoverable=True,
        suggested_action="Retry; the agent should fix the failing checks before finishing.",
    ),
    FailureRule(
        name="code_error",
        failure_type=FailureType.CODE_ERROR,
        patterns=(
            "syntaxerror",
            "syntax error",
            "indentationerror",
            "compilation failed",
            "compile error",
            "failed to compile",
            "build failed",
        ),
        recoverable=True,
        suggested_action="Retry; the agent left code that does not compile.",
    ),
    FailureRule(
        name="task_not_found",
        failure_type=FailureType.TASK_NOT_FOUND,
        patterns=(
            "task not found",
            "no such task",
            "unknown task",
        ),
        recoverable=False,
        suggested_action="Check that the task record still exists; it was skipped.",
    ),
    FailureRule(
        name="max_iterations",
        failure_type=FailureType.MAX_ITERATIONS,
        patterns=(
            "max iterations",
            "maximum iterations",
            "max turns",
            "max_turns",
            "iteration limit",
        ),
        recoverable=True,
        suggested_action="Retry, or split the task if it keeps running out of turns.",
    ),
)

_TIMEOUT_ACTION = "Retry; consider raising AGENT_LOOP_WORKER_TIMEOUT_SECONDS or splitting the task."
_CRASH_ACTION = "Inspect the attempt output; retry or fix the agent command."


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_type: FailureType
    recoverable: bool
    suggested_action: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self, *, exit_code: int | None = None) -> dict[str, object]:
        """Serialize classifier diagnostics for the activity log."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_type": self.failure_type.value,
            "recoverable": self.recoverable,
            "suggested_action": self.suggested_action,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "exit_code": exit_code,
        }


def classify_worker_outcome(
    *,
    output: str,
    exit_code: int,
    timed_out: bool,
    completed: bool,
) -> FailureClassification | None:
    """Classify one attempt; ``None`` means the attempt succeeded."""

    if timed_out:
        return FailureClassification(
            failure_type=FailureType.TIMEOUT,
            recoverable=True,
            suggested_action=_TIMEOUT_ACTION,
            matched_rule="timeout",
        )
    if completed:
        return None

    haystack = output.lower()
    for rule in FAILURE_RULES:
        pattern = _first_match(haystack, rule.patterns)
        if pattern is not None:
            return FailureClassification(
                failure_type=rule.failure_type,
                recoverable=rule.recoverable,
                suggested_action=rule.suggested_action,
                matched_rule=rule.name,
                matched_pattern=pattern,
            )

    return FailureClassification(
        failure_type=FailureType.CRASH,
        recoverable=True,
        suggested_action=_CRASH_ACTION,
        matched_rule="nonzero_exit" if exit_code != 0 else "missing_completion_marker",
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
