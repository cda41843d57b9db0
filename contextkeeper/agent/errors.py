"""Exception types raised inside the engine."""


class ContextKeeperError(Exception):
    """Base class for engine errors."""


class CheckpointWriteError(ContextKeeperError):
    """A checkpoint or its latest pointer could not be persisted."""


class SummarizationError(ContextKeeperError):
    """The summarization collaborator failed or returned nothing usable."""


class EnrichmentError(ContextKeeperError):
    """The enrichment collaborator failed."""
