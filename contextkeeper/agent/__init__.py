"""Context checkpoint and compaction engine."""
