"""Filesystem primitives shared by every store: clock, atomic JSON, JSON-lines logs."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class MalformedRecordError(ValueError):
    """Raised when a record file exists but does not hold a JSON object."""


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def from_iso(value: str | None) -> datetime | None:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON via a sibling temp file and ``os.replace``.

    Readers never observe a half-written record: they see either the previous
    content or the new one.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type.

    Raises ``FileNotFoundError`` when the file is gone and
    ``MalformedRecordError`` when it cannot be decoded.
    """

    text = path.read_text("utf-8")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise MalformedRecordError(f"Invalid JSON in {path}: {error}") from error
    if not isinstance(payload, dict):
        raise MalformedRecordError(f"Expected JSON object in {path}")
    return payload


def read_json_or_none(path: Path) -> dict[str, Any] | None:
    """Read a record, treating a vanished or torn file as "no data yet"."""

    try:
        return load_json(path)
    except FileNotFoundError:
        return None
    except MalformedRecordError as error:
        logger.warning("Skipping malformed record: %s", error)
        return None


def append_jsonl(path: Path, entry: dict[str, Any]) -> None:
    """Append one JSON line; concurrent tailers only ever see whole lines or a partial tail."""

    path.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(entry, ensure_ascii=False, sort_keys=True) + "\n"
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line)


def read_jsonl(
    path: Path,
    *,
    position: int = 0,
    tail: int | None = None,
) -> tuple[list[dict[str, Any]], int]:
    """Read complete JSON lines starting at a byte offset.

    Returns the decoded entries and the offset to resume from. A trailing line
    without a newline is left for the next call. When ``position`` is 0 and
    ``tail`` is given, only the last ``tail`` entries are returned.
    """

    try:
        with path.open("rb") as handle:
            handle.seek(position)
            chunk = handle.read()
    except FileNotFoundError:
        return [], position

    complete_end = chunk.rfind(b"\n") + 1
    next_position = position + complete_end
    entries: list[dict[str, Any]] = []
    for raw_line in chunk[:complete_end].splitlines():
        if not raw_line.strip():
            continue
        try:
            decoded = json.loads(raw_line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.debug("Skipping undecodable log line in %s", path)
            continue
        if isinstance(decoded, dict):
            entries.append(decoded)

    if position == 0 and tail is not None:
        entries = entries[-tail:] if tail > 0 else []
    return entries, next_position
