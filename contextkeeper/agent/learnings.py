"""Agent-scoped learnings that outlive a single session."""

import json
import re
import uuid
from datetime import datetime
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from contextkeeper.agent.types import LearningEntry
from contextkeeper.utils.atomic import atomic_write_text
from contextkeeper.utils.helpers import ensure_dir, parse_iso, resolve_agent_id, utc_now

LEARNINGS_FILE = "learnings.json"
STORE_VERSION = 1
DEFAULT_MAX_ENTRIES = 50

_BULLET = re.compile(r"^[-*•]\s*")
_WHITESPACE = re.compile(r"\s+")


class CrossSessionLearning(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str
    source_session: str
    created_at: str
    last_promoted_at: str
    promotion_count: int = 1
    last_checkpoint_id: str


class CrossSessionLearnings(BaseModel):
    version: int = STORE_VERSION
    max_entries: int = DEFAULT_MAX_ENTRIES
    learnings: list[CrossSessionLearning] = Field(default_factory=list)


def fingerprint(text: str) -> str:
    return _WHITESPACE.sub(" ", _BULLET.sub("", text.lower().strip()))


def learnings_path(state_dir: Path, session_key: str) -> Path:
    return Path(state_dir) / "context" / "learnings" / resolve_agent_id(session_key) / LEARNINGS_FILE


def read_cross_session_learnings(state_dir: Path, session_key: str) -> CrossSessionLearnings:
    """Load the agent's learnings; a missing or corrupt document reads as empty."""
    path = learnings_path(state_dir, session_key)
    if not path.exists():
        return CrossSessionLearnings()
    try:
        return CrossSessionLearnings.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.warning(f"Unreadable cross-session learnings at {path}: {e}")
        return CrossSessionLearnings()


def write_cross_session_learnings(state_dir: Path, session_key: str, store: CrossSessionLearnings) -> None:
    path = learnings_path(state_dir, session_key)
    ensure_dir(path.parent)
    atomic_write_text(path, json.dumps(store.model_dump(), indent=2, ensure_ascii=False))


def merge_learnings(
    store: CrossSessionLearnings,
    session_key: str,
    learnings: list[LearningEntry],
    checkpoint_id: str,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    now: datetime | None = None,
) -> CrossSessionLearnings:
    """Fold session learnings into *store* in place and return it.

    A learning already promoted under *checkpoint_id* is left alone, so
    promoting the same checkpoint twice changes nothing.
    """
    now_iso = (now or utc_now()).isoformat()
    by_fingerprint = {fingerprint(entry.text): entry for entry in store.learnings}

    for learning in learnings:
        fp = fingerprint(learning.text)
        existing = by_fingerprint.get(fp)
        if existing:
            if existing.last_checkpoint_id == checkpoint_id:
                continue
            existing.promotion_count += 1
            existing.last_promoted_at = now_iso
            existing.last_checkpoint_id = checkpoint_id
        else:
            entry = CrossSessionLearning(
                text=learning.text,
                source_session=session_key,
                created_at=learning.when or now_iso,
                last_promoted_at=now_iso,
                last_checkpoint_id=checkpoint_id,
            )
            store.learnings.append(entry)
            by_fingerprint[fp] = entry

    if len(store.learnings) > max_entries:
        oldest_first = sorted(store.learnings, key=_promoted_at)
        store.learnings = oldest_first[-max_entries:]
        logger.debug(f"Evicted {len(oldest_first) - max_entries} cross-session learning(s)")
    store.max_entries = max_entries
    return store


def _promoted_at(entry: CrossSessionLearning) -> float:
    dt = parse_iso(entry.last_promoted_at)
    return dt.timestamp() if dt else 0.0


def promote_learnings(
    state_dir: Path,
    session_key: str,
    learnings: list[LearningEntry],
    checkpoint_id: str,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    now: datetime | None = None,
) -> bool:
    """Promote session learnings to the agent-scoped store. Never raises."""
    if not learnings:
        return False
    try:
        store = read_cross_session_learnings(state_dir, session_key)
        merge_learnings(store, session_key, learnings, checkpoint_id, max_entries, now)
        write_cross_session_learnings(state_dir, session_key, store)
    except Exception as e:
        logger.warning(f"Failed to promote learnings for {session_key}: {e}")
        return False
    logger.debug(f"Promoted {len(learnings)} learning(s) from {session_key} at {checkpoint_id}")
    return True
