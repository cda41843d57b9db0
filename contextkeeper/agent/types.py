"""Record types shared by the state store, builder, and checkpoint schema."""

from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, Field

from contextkeeper.utils.helpers import utc_now_iso

FileKind = Literal["read", "modified"]
ExchangeRole = Literal["user", "agent"]


class FileAccess(BaseModel):
    """Accumulated access record for one file path within a session."""
    path: str
    access_count: int = 1
    last_accessed: str = Field(default_factory=utc_now_iso)
    kind: FileKind = "read"  # highest privilege seen; never downgrades


class KeyExchange(BaseModel):
    role: ExchangeRole
    gist: str


class ToolCallSummary(BaseModel):
    name: str
    params_summary: str = ""


class DecisionEntry(BaseModel):
    id: str = ""
    what: str
    when: str = Field(default_factory=utc_now_iso)


class LearningEntry(BaseModel):
    text: str
    when: str = Field(default_factory=utc_now_iso)


class ResourceSet(BaseModel):
    files: list[FileAccess] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)


class ThreadSnapshot(BaseModel):
    """Rolling view of the conversation, rebuilt from the full history each turn."""
    topic: str = ""
    summary: str = ""
    key_exchanges: list[KeyExchange] = Field(default_factory=list)
    updated_at: str = Field(default_factory=utc_now_iso)


@dataclass
class FileOperations:
    """Paths the host saw touched in the history being compacted."""
    read: set[str] = field(default_factory=set)
    edited: set[str] = field(default_factory=set)
    written: set[str] = field(default_factory=set)

    @property
    def modified(self) -> set[str]:
        return self.edited | self.written
