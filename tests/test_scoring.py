"""Tests for file access scoring and eviction."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from contextkeeper.agent.scoring import (
    DECAY_PER_MINUTE,
    MODIFIED_BONUS,
    evict_lowest,
    rank_files,
    score_file_access,
)
from contextkeeper.agent.types import FileAccess

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _file(path, count=1, minutes_ago=0, kind="read"):
    return FileAccess(
        path=path,
        access_count=count,
        last_accessed=(NOW - timedelta(minutes=minutes_ago)).isoformat(),
        kind=kind,
    )


class TestScoreFileAccess:
    def test_fresh_read(self):
        assert score_file_access(_file("a.py", count=3), NOW) == pytest.approx(3.0)

    def test_modified_bonus(self):
        assert score_file_access(_file("a.py", kind="modified"), NOW) == pytest.approx(MODIFIED_BONUS)

    def test_modified_is_exactly_one_and_a_half_times_read(self):
        read = score_file_access(_file("a.py", count=4, minutes_ago=90), NOW)
        modified = score_file_access(_file("a.py", count=4, minutes_ago=90, kind="modified"), NOW)
        assert modified == pytest.approx(read * 1.5)

    def test_decay(self):
        score = score_file_access(_file("a.py", minutes_ago=60), NOW)
        assert score == pytest.approx(math.exp(-DECAY_PER_MINUTE * 60))

    def test_unparsable_timestamp_counts_as_fresh(self):
        f = FileAccess(path="a.py", access_count=2, last_accessed="not a date")
        assert score_file_access(f, NOW) == pytest.approx(2.0)

    def test_future_timestamp_clamped(self):
        assert score_file_access(_file("a.py", minutes_ago=-30), NOW) == pytest.approx(1.0)


class TestRankAndEvict:
    def test_rank_descending(self):
        files = [_file("old.py", minutes_ago=600), _file("hot.py", count=5), _file("mod.py", kind="modified")]
        assert [f.path for f in rank_files(files, NOW)] == ["hot.py", "mod.py", "old.py"]

    def test_evict_lowest_removes_one(self):
        files = [_file("old.py", minutes_ago=600), _file("hot.py", count=5), _file("mod.py", kind="modified")]
        remaining = evict_lowest(files, NOW)
        assert len(remaining) == 2
        assert "old.py" not in [f.path for f in remaining]

    def test_evict_empty(self):
        assert evict_lowest([], NOW) == []
