"""Small path, time, and text helpers."""

import re
from datetime import datetime, timezone
from pathlib import Path

DEFAULT_AGENT_ID = "main"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


def safe_filename(name: str) -> str:
    """Replace every character outside ``[a-zA-Z0-9._-]`` with ``_``."""
    return _UNSAFE_CHARS.sub("_", name)


def ensure_dir(path: Path) -> Path:
    """Create *path* (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Default root for all persisted context data."""
    return Path.home() / ".contextkeeper"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp, treating naive values as UTC.

    Accepts a trailing ``Z``. Returns None when the value is missing or
    unparsable.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError, AttributeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def truncate(text: str, max_chars: int) -> str:
    """Cut *text* to *max_chars*, ending in ``...`` when something was cut."""
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 3)] + "..."


def resolve_agent_id(session_key: str) -> str:
    """Extract the agent id from an ``agent:<id>:...`` session key.

    Keys without the ``agent:`` prefix belong to the default agent.
    """
    parts = session_key.split(":")
    if len(parts) >= 2 and parts[0].lower() == "agent" and parts[1].strip():
        return safe_filename(parts[1].strip().lower())
    return DEFAULT_AGENT_ID


def extract_channel(session_key: str) -> str | None:
    """Return the routing channel of a session key, e.g. ``telegram``.

    ``telegram:123`` -> ``telegram``; ``agent:main:telegram:123`` ->
    ``telegram``; keys without a channel segment -> None.
    """
    parts = session_key.split(":")
    if len(parts) >= 2 and parts[0].lower() == "agent":
        parts = parts[2:]
    if len(parts) >= 2 and parts[0]:
        return parts[0]
    return None
