"""Provider rate-limit messages turned into cancellable wait windows."""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agent_loop.config import RateLimitSettings
from agent_loop.control.signals import ControlSignalStore, WaitOutcome
from agent_loop.storage import utc_now

logger = logging.getLogger(__name__)

_RESET_RE = re.compile(
    r"resets\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)\s*\(([^)]+)\)",
    re.IGNORECASE,
)
_HIT_LIMIT_RE = re.compile(r"hit your limit", re.IGNORECASE)

DEFAULT_BUFFER_SECONDS = 60
DEFAULT_FALLBACK_SECONDS = 15 * 60


@dataclass(slots=True)
class RateLimitInfo:
    """When the provider accepts requests again, in local time."""

    reset_time: datetime
    wait_seconds: int
    timezone: str
    parse_error: str | None = None


def parse(  # noqa: PLR0913
    message: str,
    *,
    now: datetime | None = None,
    buffer_seconds: int = DEFAULT_BUFFER_SECONDS,
    fallback_seconds: int = DEFAULT_FALLBACK_SECONDS,
    local_zone: tzinfo | None = None,
) -> RateLimitInfo | None:
    """Recognise ``... resets 10pm (Europe/Berlin)`` style messages.

    The reset hour is read in the named zone and resolved to today or tomorrow
    there, then converted back to local time. A fixed buffer is added so the
    retry lands safely after the reset. Unknown zones fall back to the local
    zone; a conversion error or a bare "hit your limit" gives the fallback wait.
    """

    current = now or utc_now()
    local = local_zone or current.astimezone().tzinfo or ZoneInfo("UTC")

    match = _RESET_RE.search(message)
    if match is None:
        if _HIT_LIMIT_RE.search(message):
            return _fallback(current, local, fallback_seconds, timezone=_zone_name(local))
        return None

    hour_text, minute_text, meridiem, zone_text = match.groups()
    zone_name = zone_text.strip()
    try:
        zone: tzinfo = ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r in rate-limit message; using local time", zone_name)
        zone = local
        zone_name = _zone_name(local)

    try:
        hour = int(hour_text)
        minute = int(minute_text or 0)
        if not 1 <= hour <= 12:
            raise ValueError(f"hour out of range: {hour}")
        hour24 = hour % 12 + (12 if meridiem.lower() == "pm" else 0)
        now_in_zone = current.astimezone(zone)
        reset = now_in_zone.replace(hour=hour24, minute=minute, second=0, microsecond=0)
        # Same-zone subtraction is wall-clock; compare absolute instants across DST.
        if reset.astimezone(UTC) <= current.astimezone(UTC):
            reset += timedelta(days=1)
        delta = (reset.astimezone(UTC) - current.astimezone(UTC)).total_seconds()
    except (ValueError, OverflowError) as error:
        logger.warning("Could not convert rate-limit reset time: %s", error)
        return _fallback(current, local, fallback_seconds, timezone=zone_name, error=str(error))

    return RateLimitInfo(
        reset_time=reset.astimezone(local),
        wait_seconds=math.ceil(delta) + buffer_seconds,
        timezone=zone_name,
    )


def _fallback(
    current: datetime,
    local: tzinfo,
    seconds: int,
    *,
    timezone: str,
    error: str | None = None,
) -> RateLimitInfo:
    return RateLimitInfo(
        reset_time=(current + timedelta(seconds=seconds)).astimezone(local),
        wait_seconds=seconds,
        timezone=timezone,
        parse_error=error,
    )


def _zone_name(zone: tzinfo) -> str:
    return getattr(zone, "key", None) or str(zone)


class RateLimitPolicy:
    """Parses limit messages and waits them out while honouring stop signals."""

    def __init__(self, settings: RateLimitSettings | None = None) -> None:
        self.settings = settings or RateLimitSettings()

    def parse(self, message: str, *, now: datetime | None = None) -> RateLimitInfo | None:
        return parse(
            message,
            now=now,
            buffer_seconds=self.settings.buffer_seconds,
            fallback_seconds=self.settings.fallback_seconds,
        )

    def fallback(self, *, now: datetime | None = None) -> RateLimitInfo:
        """Fixed wait for limit messages that carry no reset time."""

        current = now or utc_now()
        local = current.astimezone().tzinfo or ZoneInfo("UTC")
        return _fallback(current, local, self.settings.fallback_seconds, timezone=_zone_name(local))

    def wait(
        self,
        info: RateLimitInfo,
        signals: ControlSignalStore,
        loop_type: str,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> WaitOutcome:
        logger.info(
            "Rate limited until %s (%s); waiting %ss",
            info.reset_time.strftime("%Y-%m-%d %H:%M"),
            info.timezone,
            info.wait_seconds,
        )
        return signals.sleep(info.wait_seconds, loop_type, should_stop=should_stop)
