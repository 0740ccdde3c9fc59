from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from zoneinfo import ZoneInfo

import allure

from agent_loop.config import RateLimitSettings
from agent_loop.control.signals import ControlSignalStore, WaitOutcome
from agent_loop.orchestrator.rate_limit import RateLimitPolicy, parse

pytestmark = [
    allure.epic("Execution Loop"),
    allure.feature("Rate-Limit Policy"),
]

BERLIN = ZoneInfo("Europe/Berlin")


def test_berlin_reset_lands_sixty_seconds_after_reset_instant() -> None:
    now = datetime(2026, 3, 10, 17, 12, 30, 250_000, tzinfo=UTC)

    info = parse("You've hit your limit · resets 10pm (Europe/Berlin)", now=now, local_zone=UTC)

    assert info is not None
    assert info.timezone == "Europe/Berlin"
    reset_instant = datetime(2026, 3, 10, 22, 0, tzinfo=BERLIN)
    resume_at = now + timedelta(seconds=info.wait_seconds)
    assert 60 <= (resume_at - reset_instant).total_seconds() <= 61
    assert info.reset_time == reset_instant.astimezone(UTC)


def test_wait_spans_spring_forward_in_absolute_time() -> None:
    # Berlin skips 02:00-03:00 on 2026-03-29.
    now = datetime(2026, 3, 29, 0, 30, tzinfo=UTC)

    info = parse("You've hit your limit · resets 10pm (Europe/Berlin)", now=now, local_zone=UTC)

    assert info is not None
    reset_instant = datetime(2026, 3, 29, 22, 0, tzinfo=BERLIN)
    resume_at = now + timedelta(seconds=info.wait_seconds)
    assert 60 <= (resume_at - reset_instant).total_seconds() <= 61
    assert info.wait_seconds == 19 * 3600 + 30 * 60 + 60


def test_reset_already_passed_today_rolls_to_tomorrow() -> None:
    now = datetime(2026, 3, 10, 22, 30, tzinfo=BERLIN)

    info = parse("resets 9:15am (Europe/Berlin)", now=now, local_zone=BERLIN)

    assert info is not None
    assert info.reset_time == datetime(2026, 3, 11, 9, 15, tzinfo=BERLIN)


def test_unknown_zone_falls_back_to_local_zone() -> None:
    now = datetime(2026, 3, 10, 8, 0, tzinfo=UTC)

    info = parse("resets 10am (Mars/Olympus)", now=now, local_zone=UTC)

    assert info is not None
    assert info.timezone == "UTC"
    assert info.wait_seconds == 2 * 3600 + 60


def test_invalid_hour_falls_back_to_fixed_wait() -> None:
    now = datetime(2026, 3, 10, 8, 0, tzinfo=UTC)

    info = parse("resets 13pm (UTC)", now=now, local_zone=UTC)

    assert info is not None
    assert info.wait_seconds == 15 * 60
    assert info.parse_error is not None


def test_bare_limit_message_uses_fallback() -> None:
    now = datetime(2026, 3, 10, 8, 0, tzinfo=UTC)

    info = parse("Claude AI usage: you hit your limit", now=now, local_zone=UTC)

    assert info is not None
    assert info.wait_seconds == 15 * 60
    assert info.parse_error is None


def test_unrelated_message_is_not_a_rate_limit() -> None:
    assert parse("Traceback: ZeroDivisionError") is None


def test_policy_uses_configured_buffer() -> None:
    policy = RateLimitPolicy(RateLimitSettings(buffer_seconds=5, fallback_seconds=30))
    now = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)

    info = policy.parse("resets 10am (UTC)", now=now)

    assert info is not None
    assert info.wait_seconds == 3600 + 5
    assert policy.fallback(now=now).wait_seconds == 30


def test_wait_is_cancelled_by_stop(tmp_path: Path) -> None:
    signals = ControlSignalStore(tmp_path / "signals", sleep=lambda _: None)
    signals.request_stop("execution")
    policy = RateLimitPolicy()
    info = policy.fallback()

    assert policy.wait(info, signals, "execution") is WaitOutcome.STOP
