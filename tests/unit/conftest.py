"""Shared fixtures: deterministic fake embedding providers."""

import hashlib
import re
import threading

import pytest

from memsearch.models import Document, MemoryConfig
from memsearch.sources import StaticSource

DIMENSIONS = 16


def bag_of_words_vector(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    """Hash each word into a bucket; similar texts get similar vectors."""
    vector = [0.0] * dimensions
    for word in re.findall(r"\w+", text.lower()):
        bucket = hashlib.sha256(word.encode()).digest()[0] % dimensions
        vector[bucket] += 1.0
    return vector


class FakeProvider:
    """Deterministic in-process provider that records every call."""

    id = "fake"
    model = "bag-of-words"

    def __init__(self, dimensions: int = DIMENSIONS, fail_on: str | None = None) -> None:
        self.dimensions = dimensions
        self.fail_on = fail_on
        self.fail_queries = False
        self.batch_calls: list[list[str]] = []
        self.query_calls: list[str] = []
        self._lock = threading.Lock()

    @property
    def embedded_texts(self) -> list[str]:
        return [text for batch in self.batch_calls for text in batch]

    def embed_query(self, text: str) -> list[float]:
        with self._lock:
            self.query_calls.append(text)
        if self.fail_queries:
            raise RuntimeError("query embedding unavailable")
        return bag_of_words_vector(text, self.dimensions)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        with self._lock:
            self.batch_calls.append(list(texts))
        if self.fail_on is not None and any(self.fail_on in t for t in texts):
            raise RuntimeError(f"provider rejected batch containing {self.fail_on!r}")
        return [bag_of_words_vector(t, self.dimensions) for t in texts]


def numbered_document(n_tokens: int, words_per_line: int = 10, prefix: str = "tok") -> str:
    """A document of distinct tokens ``tok0 tok1 ...``, ``words_per_line`` per line."""
    words = [f"{prefix}{i}" for i in range(n_tokens)]
    lines = [
        " ".join(words[i : i + words_per_line]) for i in range(0, n_tokens, words_per_line)
    ]
    return "\n".join(lines) + "\n"


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def config():
    return MemoryConfig(tokens=400, overlap=80)


@pytest.fixture
def source():
    return StaticSource(
        [
            Document(path="MEMORY.md", text="The user prefers dark roast coffee.\n", source="long_term"),
            Document(
                path="memory/2026-01-20.md",
                text="Deployed the payments service.\nRollback plan uses blue green deployment.\n",
            ),
        ]
    )
