"""Exception hierarchy for the memory search engine."""


class MemorySearchError(Exception):
    """Base exception for memsearch errors."""

    pass


class ConfigurationError(MemorySearchError):
    """Invalid chunking, fusion or provider configuration.

    Raised at construction time, never while serving queries.
    """

    pass


class ProviderError(MemorySearchError):
    """Embedding provider call failed, timed out or returned malformed data."""

    pass


class CorpusReadError(MemorySearchError):
    """The document source could not be enumerated or read.

    Aborts the sync pass; the current generation stays authoritative.
    """

    pass


class ClosedError(MemorySearchError):
    """Raised on any call made after close()."""

    def __init__(self, message: str = "memory search manager is closed") -> None:
        super().__init__(message)


class IntegrityError(MemorySearchError):
    """Persisted index failed validation on load."""

    pass
