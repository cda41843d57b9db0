"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StateLimits(BaseModel):
    """Per-session capacity of each state category."""
    decisions: int = 50
    open_items: int = 50
    learnings: int = 10
    thread: int = 8  # sliding window of recent fragments
    tools: int = 100
    files: int = 100  # lowest-scoring file evicted beyond this


class CheckpointConfig(BaseModel):
    """Checkpoint writing and retention."""
    keep: int = 5
    skip_delta_ratio: float = 0.05  # skip writes when input tokens moved less than this
    checkpoint_threshold: float = 0.8
    inject_threshold: float = 0.7


class InjectionConfig(BaseModel):
    """Rendering of checkpoints back into agent context."""
    hot_ratio: float = 0.5  # files scoring above hot_ratio * max are "active"
    max_cold_listed: int = 10
    max_key_exchanges: int = 8
    max_gist_chars: int = 120
    compaction_warning_after: int = 3


class CompactionConfig(BaseModel):
    """Compaction budget and summarization collaborator."""
    max_history_share: float = 0.5
    safety_margin: float = 0.8
    reserve_tokens: int = 16384
    timeout_s: float = 120.0
    model: str = "anthropic/claude-haiku-4-5"
    enrichment_enabled: bool = True
    enrichment_max_tokens: int = 800
    enrichment_timeout_s: float = 30.0


class LearningsConfig(BaseModel):
    """Agent-scoped cross-session learnings store."""
    max_entries: int = 50


class Config(BaseSettings):
    """Root configuration for contextkeeper."""
    state_dir: str = "~/.contextkeeper"
    context_window_tokens: int = 200_000
    state: StateLimits = Field(default_factory=StateLimits)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    injection: InjectionConfig = Field(default_factory=InjectionConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)
    learnings: LearningsConfig = Field(default_factory=LearningsConfig)

    model_config = SettingsConfigDict(
        env_prefix="CONTEXTKEEPER_",
        env_nested_delimiter="__",
    )

    @property
    def state_path(self) -> Path:
        """Get expanded state directory."""
        return Path(self.state_dir).expanduser()
