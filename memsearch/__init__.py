"""
memsearch - hybrid memory search for agent context files.

A local, incrementally synced index over markdown documents that fuses
embedding similarity with lexical matching.
"""

from .embeddings import EmbeddingProvider, OpenAIEmbeddingProvider, resolve_provider
from .errors import (
    ClosedError,
    ConfigurationError,
    CorpusReadError,
    IntegrityError,
    MemorySearchError,
    ProviderError,
)
from .logging import configure_logging
from .manager import MemorySearchManager
from .models import (
    Chunk,
    Document,
    IndexEntry,
    MemoryConfig,
    MemorySearchResult,
    MemoryStatus,
    SyncReport,
)
from .sources import DirectorySource, DocumentSource, StaticSource

__version__ = "0.1.0"

__all__ = [
    "MemorySearchManager",
    "MemoryConfig",
    "MemorySearchResult",
    "MemoryStatus",
    "SyncReport",
    "Chunk",
    "Document",
    "IndexEntry",
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "resolve_provider",
    "DocumentSource",
    "DirectorySource",
    "StaticSource",
    "MemorySearchError",
    "ConfigurationError",
    "ProviderError",
    "CorpusReadError",
    "ClosedError",
    "IntegrityError",
    "configure_logging",
]
