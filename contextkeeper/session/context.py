"""Explicit per-session runtime context.

The host owns one ``SessionContext`` per live session and passes it into
every ``ContextManager`` call. Nothing about a session is held at module
level, so two sessions never share mutable state.
"""

from dataclasses import dataclass, field
from pathlib import Path

from contextkeeper.agent.types import ToolCallSummary
from contextkeeper.utils.helpers import resolve_agent_id

FEEDBACK_TERMS = ("checkpoint", "last session", "previously", "was working on", "continued from")


@dataclass
class FeedbackCounters:
    """How often the agent referred back to injected checkpoint data."""
    checkpoint_injected: bool = False
    references_detected: int = 0
    sections_referenced: list[str] = field(default_factory=list)

    def record(self, text: str) -> bool:
        """Count the first feedback term found in *text*."""
        if not self.checkpoint_injected or not text:
            return False
        lower = text.lower()
        for term in FEEDBACK_TERMS:
            if term in lower:
                self.references_detected += 1
                if term not in self.sections_referenced:
                    self.sections_referenced.append(term)
                return True
        return False


@dataclass
class SessionContext:
    session_key: str
    state_dir: Path
    context_window_tokens: int = 200_000
    agent_id: str = ""
    last_tool_call: ToolCallSummary | None = None
    initialized: bool = False
    resume_injected: bool = False
    feedback: FeedbackCounters = field(default_factory=FeedbackCounters)

    def __post_init__(self):
        self.state_dir = Path(self.state_dir).expanduser()
        if not self.agent_id:
            self.agent_id = resolve_agent_id(self.session_key)
