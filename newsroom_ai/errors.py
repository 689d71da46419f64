"""Exception hierarchy shared by the pipeline components."""


class PipelineError(Exception):
    """Base class for all newsroom_ai errors."""


class RepositoryError(PipelineError):
    """Raised when a persisted collection cannot be read or written."""


class NotFoundError(RepositoryError):
    """Raised when an entity looked up by key does not exist."""

    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"{collection} {key!r} not found")
        self.collection = collection
        self.key = key


class ProviderError(PipelineError):
    """Raised when the text-generation provider is misconfigured."""
