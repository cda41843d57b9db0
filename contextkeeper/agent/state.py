"""Per-session working-memory accumulator.

Each category (decisions, thread fragments, resources, open items,
learnings) lives in its own small JSON document under
``<state_dir>/context/state/<session>/``. Appends are best-effort: a
failure is logged and swallowed so a lost observation never aborts the
conversation turn.
"""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from contextkeeper.agent.dedup import is_semantic_duplicate
from contextkeeper.agent.migration import is_legacy_resources, normalize_resources
from contextkeeper.agent.scoring import evict_lowest
from contextkeeper.agent.types import (
    DecisionEntry,
    ExchangeRole,
    FileAccess,
    FileKind,
    KeyExchange,
    LearningEntry,
    ResourceSet,
    ThreadSnapshot,
    ToolCallSummary,
)
from contextkeeper.config.schema import StateLimits
from contextkeeper.utils.atomic import atomic_write_text
from contextkeeper.utils.helpers import ensure_dir, safe_filename, utc_now, utc_now_iso

DECISIONS_FILE = "decisions.json"
THREAD_FILE = "thread.json"
RESOURCES_FILE = "resources.json"
OPEN_ITEMS_FILE = "open_items.json"
LEARNINGS_FILE = "learnings.json"
LAST_TOOL_CALL_FILE = "last_tool_call.json"
THREAD_SNAPSHOT_FILE = "thread_snapshot.json"

_LEARNING_MARKER = re.compile(r"^[\s\-*•.]+")
_WHITESPACE = re.compile(r"\s+")


def learning_fingerprint(text: str) -> str:
    """Cheap exact-match key for session learnings."""
    s = _LEARNING_MARKER.sub("", text.lower())
    return _WHITESPACE.sub(" ", s).strip()


@dataclass
class StateSnapshot:
    """Everything the store holds for one session, read in one go."""
    decisions: list[DecisionEntry] = field(default_factory=list)
    thread: list[KeyExchange] = field(default_factory=list)
    resources: ResourceSet = field(default_factory=ResourceSet)
    open_items: list[str] = field(default_factory=list)
    learnings: list[LearningEntry] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.decisions or self.thread or self.resources.files
            or self.resources.tools_used or self.open_items or self.learnings
        )


class StateStore:
    """Category-partitioned state for a single session."""

    def __init__(self, state_dir: Path, session_key: str, limits: StateLimits | None = None):
        self.session_key = session_key
        self.limits = limits or StateLimits()
        self.dir = Path(state_dir) / "context" / "state" / safe_filename(session_key)

    # ── low-level I/O ──────────────────────────────────────────────

    def _read(self, name: str, fallback: Any) -> Any:
        path = self.dir / name
        if not path.exists():
            return fallback
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable state file {path.name} for {self.session_key}: {e}")
            return fallback

    def _write(self, name: str, data: Any) -> None:
        ensure_dir(self.dir)
        atomic_write_text(self.dir / name, json.dumps(data, indent=2, ensure_ascii=False))

    def init(self) -> Path:
        """Create the session directory and any missing category documents."""
        ensure_dir(self.dir)
        defaults = {
            DECISIONS_FILE: [],
            THREAD_FILE: [],
            RESOURCES_FILE: ResourceSet().model_dump(),
            OPEN_ITEMS_FILE: [],
            LEARNINGS_FILE: [],
        }
        for name, default in defaults.items():
            if not (self.dir / name).exists():
                self._write(name, default)
        return self.dir

    # ── typed readers ──────────────────────────────────────────────

    def read_decisions(self) -> list[DecisionEntry]:
        raw = self._read(DECISIONS_FILE, [])
        try:
            return [DecisionEntry.model_validate(d) for d in raw]
        except (ValidationError, TypeError):
            logger.warning(f"Malformed decisions for {self.session_key}, ignoring")
            return []

    def read_thread(self) -> list[KeyExchange]:
        raw = self._read(THREAD_FILE, [])
        try:
            return [KeyExchange.model_validate(t) for t in raw]
        except (ValidationError, TypeError):
            logger.warning(f"Malformed thread for {self.session_key}, ignoring")
            return []

    def read_resources(self) -> ResourceSet:
        """Load resources, converting and re-persisting a legacy document."""
        raw = self._read(RESOURCES_FILE, {})
        legacy = is_legacy_resources(raw) and bool(raw)
        try:
            resources = ResourceSet.model_validate(normalize_resources(raw))
        except ValidationError:
            logger.warning(f"Malformed resources for {self.session_key}, ignoring")
            return ResourceSet()
        if legacy:
            try:
                self._write(RESOURCES_FILE, resources.model_dump())
                logger.debug(f"Migrated legacy resources for {self.session_key}")
            except OSError as e:
                logger.warning(f"Failed to persist migrated resources: {e}")
        return resources

    def read_open_items(self) -> list[str]:
        raw = self._read(OPEN_ITEMS_FILE, [])
        return [item for item in raw if isinstance(item, str)] if isinstance(raw, list) else []

    def read_learnings(self) -> list[LearningEntry]:
        raw = self._read(LEARNINGS_FILE, [])
        try:
            return [LearningEntry.model_validate(entry) for entry in raw]
        except (ValidationError, TypeError):
            logger.warning(f"Malformed learnings for {self.session_key}, ignoring")
            return []

    def read_all(self) -> StateSnapshot:
        return StateSnapshot(
            decisions=self.read_decisions(),
            thread=self.read_thread(),
            resources=self.read_resources(),
            open_items=self.read_open_items(),
            learnings=self.read_learnings(),
        )

    # ── appends ────────────────────────────────────────────────────

    def append_tool(self, name: str) -> bool:
        try:
            resources = self.read_resources()
            if name in resources.tools_used or len(resources.tools_used) >= self.limits.tools:
                return False
            resources.tools_used.append(name)
            self._write(RESOURCES_FILE, resources.model_dump())
            return True
        except Exception as e:
            logger.warning(f"Failed to append tool to state: {e}")
            return False

    def append_file(self, path: str, kind: FileKind, now: datetime | None = None) -> bool:
        """Record an access to *path*; ``modified`` never downgrades to ``read``."""
        try:
            now = now or utc_now()
            resources = self.read_resources()
            existing = next((f for f in resources.files if f.path == path), None)
            if existing:
                existing.access_count += 1
                existing.last_accessed = now.isoformat()
                if kind == "modified":
                    existing.kind = "modified"
            else:
                if len(resources.files) >= self.limits.files:
                    resources.files = evict_lowest(resources.files, now)
                resources.files.append(
                    FileAccess(path=path, access_count=1, last_accessed=now.isoformat(), kind=kind)
                )
            self._write(RESOURCES_FILE, resources.model_dump())
            return True
        except Exception as e:
            logger.warning(f"Failed to append file to state: {e}")
            return False

    def append_decision(self, what: str, when: str | None = None) -> bool:
        try:
            decisions = self.read_decisions()
            if len(decisions) >= self.limits.decisions:
                return False
            if any(is_semantic_duplicate(d.what, what) for d in decisions):
                return False
            decisions.append(
                DecisionEntry(id=f"d{len(decisions) + 1}", what=what, when=when or utc_now_iso())
            )
            self._write(DECISIONS_FILE, [d.model_dump() for d in decisions])
            return True
        except Exception as e:
            logger.warning(f"Failed to append decision to state: {e}")
            return False

    def append_thread(self, role: ExchangeRole, gist: str) -> bool:
        try:
            thread = self.read_thread()
            thread.append(KeyExchange(role=role, gist=gist))
            thread = thread[-self.limits.thread:]
            self._write(THREAD_FILE, [t.model_dump() for t in thread])
            return True
        except Exception as e:
            logger.warning(f"Failed to append thread to state: {e}")
            return False

    def append_open_item(self, text: str) -> bool:
        try:
            items = self.read_open_items()
            if len(items) >= self.limits.open_items:
                return False
            if any(is_semantic_duplicate(existing, text) for existing in items):
                return False
            items.append(text)
            self._write(OPEN_ITEMS_FILE, items)
            return True
        except Exception as e:
            logger.warning(f"Failed to append open item to state: {e}")
            return False

    def append_learning(self, text: str, when: str | None = None) -> bool:
        try:
            learnings = self.read_learnings()
            if len(learnings) >= self.limits.learnings:
                return False
            fingerprint = learning_fingerprint(text)
            if any(learning_fingerprint(entry.text) == fingerprint for entry in learnings):
                return False
            learnings.append(LearningEntry(text=text, when=when or utc_now_iso()))
            self._write(LEARNINGS_FILE, [entry.model_dump() for entry in learnings])
            return True
        except Exception as e:
            logger.warning(f"Failed to append learning to state: {e}")
            return False

    # ── last tool call / thread snapshot ───────────────────────────

    def write_last_tool_call(self, call: ToolCallSummary) -> None:
        try:
            self._write(LAST_TOOL_CALL_FILE, call.model_dump())
        except Exception as e:
            logger.warning(f"Failed to persist last tool call: {e}")

    def read_last_tool_call(self) -> ToolCallSummary | None:
        raw = self._read(LAST_TOOL_CALL_FILE, None)
        if not isinstance(raw, dict):
            return None
        try:
            return ToolCallSummary.model_validate(raw)
        except ValidationError:
            return None

    def write_thread_snapshot(self, snapshot: ThreadSnapshot) -> None:
        try:
            self._write(THREAD_SNAPSHOT_FILE, snapshot.model_dump())
        except Exception as e:
            logger.warning(f"Failed to write thread snapshot: {e}")

    def read_thread_snapshot(self) -> ThreadSnapshot | None:
        raw = self._read(THREAD_SNAPSHOT_FILE, None)
        if not isinstance(raw, dict):
            return None
        try:
            return ThreadSnapshot.model_validate(raw)
        except ValidationError:
            return None

    def reset(self) -> None:
        """Empty every category and drop the last tool call and snapshot."""
        try:
            self._write(DECISIONS_FILE, [])
            self._write(THREAD_FILE, [])
            self._write(RESOURCES_FILE, ResourceSet().model_dump())
            self._write(OPEN_ITEMS_FILE, [])
            self._write(LEARNINGS_FILE, [])
            for name in (LAST_TOOL_CALL_FILE, THREAD_SNAPSHOT_FILE):
                (self.dir / name).unlink(missing_ok=True)
        except Exception as e:
            logger.warning(f"Failed to reset state for {self.session_key}: {e}")
