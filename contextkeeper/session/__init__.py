"""Per-session runtime context."""

from contextkeeper.session.context import FeedbackCounters, SessionContext

__all__ = ["FeedbackCounters", "SessionContext"]
