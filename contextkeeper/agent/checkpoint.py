"""Checkpoint schema and versioned, atomic checkpoint storage."""

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from contextkeeper.agent.errors import CheckpointWriteError
from contextkeeper.agent.migration import upgrade_checkpoint_document
from contextkeeper.agent.types import FileKind, KeyExchange, ToolCallSummary
from contextkeeper.utils.atomic import atomic_write_text
from contextkeeper.utils.helpers import ensure_dir, safe_filename, utc_now_iso

CHECKPOINT_SCHEMA = "contextkeeper/checkpoint"
CHECKPOINT_SCHEMA_VERSION = 3
LATEST_POINTER_FILE = "_latest.json"
DEFAULT_KEEP = 5
DEFAULT_SKIP_DELTA_RATIO = 0.05

CheckpointTrigger = Literal["auto-80pct", "compaction"]
WorkingStatus = Literal["in_progress", "idle", "waiting_for_user", "completed", "blocked", "abandoned"]
EnrichmentTag = Literal["llm", "heuristic"]

_ID_PATTERN = re.compile(r"^cp_(\d+)$")
_FILENAME_PATTERN = re.compile(r"^cp_(\d+)\.yaml$")


# ── schema ─────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    input_tokens: int = 0
    context_window: int = 0
    utilization: float = 0.0


class CheckpointMeta(BaseModel):
    checkpoint_id: str = ""  # assigned by CheckpointStore.write
    session_key: str
    session_file: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    trigger: CheckpointTrigger
    compaction_count: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    previous_checkpoint: str | None = None  # assigned by CheckpointStore.write
    channel: str | None = None
    agent_id: str | None = None
    enrichment: EnrichmentTag | None = None


class WorkingState(BaseModel):
    topic: str = "Unknown topic"
    status: WorkingStatus = "in_progress"
    interrupted: bool = False
    last_tool_call: ToolCallSummary | None = None
    next_action: str = ""


class CheckpointDecision(BaseModel):
    id: str
    what: str
    when: str


class CheckpointFile(BaseModel):
    path: str
    access_count: int = 1
    kind: FileKind = "read"
    score: float = 0.0


class CheckpointResources(BaseModel):
    files: list[CheckpointFile] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)


class CheckpointThread(BaseModel):
    summary: str = ""
    key_exchanges: list[KeyExchange] = Field(default_factory=list)


class Checkpoint(BaseModel):
    """A frozen snapshot of a session's working memory."""
    model_config = ConfigDict(populate_by_name=True)

    schema_name: str = Field(default=CHECKPOINT_SCHEMA, alias="schema")
    schema_version: int = CHECKPOINT_SCHEMA_VERSION
    meta: CheckpointMeta
    working: WorkingState = Field(default_factory=WorkingState)
    decisions: list[CheckpointDecision] = Field(default_factory=list)
    resources: CheckpointResources = Field(default_factory=CheckpointResources)
    thread: CheckpointThread = Field(default_factory=CheckpointThread)
    open_items: list[str] = Field(default_factory=list)
    learnings: list[str] = Field(default_factory=list)

    def to_yaml(self) -> str:
        data = self.model_dump(by_alias=True, mode="json")
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)

    @classmethod
    def from_yaml(cls, text: str) -> "Checkpoint":
        doc = yaml.safe_load(text)
        if not isinstance(doc, dict):
            raise ValueError("checkpoint document is not a mapping")
        return cls.model_validate(upgrade_checkpoint_document(doc))


# ── store ──────────────────────────────────────────────────────────


@dataclass
class WriteResult:
    written: bool
    path: Path | None
    checkpoint_id: str | None


def next_checkpoint_id(current_id: str | None) -> str:
    """``cp_007`` -> ``cp_008``; none or malformed -> ``cp_001``."""
    match = _ID_PATTERN.match(current_id or "")
    if not match:
        return "cp_001"
    return f"cp_{int(match.group(1)) + 1:03d}"


class CheckpointStore:
    """Versioned checkpoints for one session.

    Files live in ``<state_dir>/context/checkpoints/<session>/`` as
    ``cp_NNN.yaml`` plus a ``_latest.json`` pointer.
    """

    def __init__(
        self,
        state_dir: Path,
        session_key: str,
        skip_delta_ratio: float = DEFAULT_SKIP_DELTA_RATIO,
    ):
        self.session_key = session_key
        self.skip_delta_ratio = skip_delta_ratio
        self.dir = Path(state_dir) / "context" / "checkpoints" / safe_filename(session_key)

    @property
    def pointer_path(self) -> Path:
        return self.dir / LATEST_POINTER_FILE

    def read_pointer(self) -> dict | None:
        try:
            data = json.loads(self.pointer_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        return data if isinstance(data, dict) else None

    def write(self, checkpoint: Checkpoint) -> WriteResult:
        """Persist *checkpoint* as the next version.

        Skipped (``written=False``) when its input-token count is within
        ``skip_delta_ratio`` of the latest one. Assigns ``checkpoint_id``
        and ``previous_checkpoint`` on the passed object.
        """
        latest = self.read_pointer()
        input_tokens = checkpoint.meta.token_usage.input_tokens

        if latest:
            latest_tokens = latest.get("input_tokens")
            if isinstance(latest_tokens, (int, float)) and latest_tokens > 0:
                ratio = abs(input_tokens - latest_tokens) / latest_tokens
                if ratio < self.skip_delta_ratio:
                    logger.debug(
                        f"Skipping checkpoint write: token delta {ratio * 100:.1f}% "
                        f"< {self.skip_delta_ratio * 100:.0f}% threshold"
                    )
                    existing = self._resolve(latest.get("path"))
                    return WriteResult(written=False, path=existing, checkpoint_id=latest.get("checkpoint_id"))

        current_id = latest.get("checkpoint_id") if latest else None
        if not isinstance(current_id, str):
            current_id = None
        new_id = next_checkpoint_id(current_id)
        checkpoint.meta.checkpoint_id = new_id
        checkpoint.meta.previous_checkpoint = current_id

        filename = f"{new_id}.yaml"
        path = self.dir / filename
        pointer = {"checkpoint_id": new_id, "path": filename, "input_tokens": input_tokens}
        try:
            ensure_dir(self.dir)
            atomic_write_text(path, checkpoint.to_yaml())
            atomic_write_text(self.pointer_path, json.dumps(pointer, indent=2))
        except OSError as e:
            raise CheckpointWriteError(f"Failed to write checkpoint {new_id}: {e}") from e

        logger.info(f"Checkpoint {new_id} written for session {self.session_key}")
        return WriteResult(written=True, path=path, checkpoint_id=new_id)

    def replace(self, path: Path, checkpoint: Checkpoint) -> None:
        """Atomically rewrite an already-written checkpoint (e.g. after enrichment)."""
        target = self._resolve(Path(path).name)
        if target is None:
            raise CheckpointWriteError(f"Refusing to replace unexpected path {path}")
        try:
            atomic_write_text(target, checkpoint.to_yaml())
        except OSError as e:
            raise CheckpointWriteError(f"Failed to rewrite checkpoint {path}: {e}") from e

    def _resolve(self, filename: object) -> Path | None:
        """Validate a pointer filename and keep it inside the checkpoint dir."""
        if not isinstance(filename, str) or not _FILENAME_PATTERN.match(filename):
            logger.warning(f"Invalid checkpoint filename in pointer: {filename!r}")
            return None
        root = self.dir.resolve()
        resolved = (self.dir / filename).resolve()
        if not resolved.is_relative_to(root):
            logger.warning(f"Checkpoint path escapes directory: {filename}")
            return None
        return resolved

    def read(self, path: Path) -> Checkpoint | None:
        try:
            return Checkpoint.from_yaml(Path(path).read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError, ValueError, ValidationError) as e:
            logger.warning(f"Failed to read checkpoint file {path}: {e}")
            return None

    def read_latest(self) -> Checkpoint | None:
        """Load the checkpoint the pointer names, or None on any problem."""
        latest = self.read_pointer()
        if not latest:
            return None
        path = self._resolve(latest.get("path"))
        if path is None:
            return None
        return self.read(path)

    def list_checkpoints(self) -> list[Path]:
        """Checkpoint files in version order, oldest first."""
        if not self.dir.is_dir():
            return []
        files = [p for p in self.dir.iterdir() if _FILENAME_PATTERN.match(p.name)]
        return sorted(files, key=lambda p: int(_FILENAME_PATTERN.match(p.name).group(1)))

    def prune(self, keep: int = DEFAULT_KEEP) -> list[Path]:
        """Delete all but the newest *keep* checkpoints. Never raises."""
        try:
            files = self.list_checkpoints()
        except OSError as e:
            logger.warning(f"Failed to list checkpoints for pruning: {e}")
            return []
        if len(files) <= keep:
            return []

        deleted = []
        for path in files[: len(files) - keep]:
            try:
                path.unlink()
                deleted.append(path)
                logger.debug(f"Pruned old checkpoint: {path.name}")
            except OSError as e:
                logger.warning(f"Failed to prune checkpoint {path.name}: {e}")
        return deleted
