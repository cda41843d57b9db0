"""Recency/kind scoring for file access records."""

import math
from datetime import datetime

from contextkeeper.agent.types import FileAccess
from contextkeeper.utils.helpers import parse_iso, utc_now

DECAY_PER_MINUTE = 0.003  # half-life ~3.8 hours
MODIFIED_BONUS = 1.5


def score_file_access(file: FileAccess, now: datetime | None = None) -> float:
    """``access_count * exp(-0.003 * age_minutes) * kind_bonus``.

    Unparsable timestamps count as age zero.
    """
    now = now or utc_now()
    last = parse_iso(file.last_accessed)
    age_minutes = max(0.0, (now - last).total_seconds() / 60) if last else 0.0
    kind_bonus = MODIFIED_BONUS if file.kind == "modified" else 1.0
    return file.access_count * math.exp(-DECAY_PER_MINUTE * age_minutes) * kind_bonus


def rank_files(files: list[FileAccess], now: datetime | None = None) -> list[FileAccess]:
    """Return *files* ordered by descending score."""
    now = now or utc_now()
    return sorted(files, key=lambda f: score_file_access(f, now), reverse=True)


def evict_lowest(files: list[FileAccess], now: datetime | None = None) -> list[FileAccess]:
    """Return *files* without its lowest-scoring entry."""
    if not files:
        return []
    return rank_files(files, now)[:-1]
