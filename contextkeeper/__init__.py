"""contextkeeper - context checkpoint & compaction engine for long-running agents."""

__version__ = "0.1.0"
__logo__ = "📌"
