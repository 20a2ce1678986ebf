"""Pydantic models for the memsearch engine."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigurationError

SNIPPET_MAX_CHARS = 700

ChunkKey = tuple[str, str]


class MemoryConfig(BaseModel):
    """Chunking and fusion settings for one engine instance.

    Weights need not sum to 1; they are normalized when scores are fused.
    When ``min_score`` is not given it defaults to the normalized text weight,
    the score of a chunk that is the best lexical match and has no vector.
    """

    model_config = ConfigDict(frozen=True)

    tokens: int = 400
    overlap: int = 80
    vector_weight: float = 0.7
    text_weight: float = 0.3
    max_results: int = 6
    min_score: float = 0.3
    candidate_multiplier: int = 4

    @model_validator(mode="before")
    @classmethod
    def default_min_score(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("min_score") is not None:
            return data
        vector_weight = data.get("vector_weight", cls.model_fields["vector_weight"].default)
        text_weight = data.get("text_weight", cls.model_fields["text_weight"].default)
        try:
            total = float(vector_weight) + float(text_weight)
            floor = round(float(text_weight) / total, 6) if total > 0 else 0.0
        except (TypeError, ValueError):
            return data
        return {**data, "min_score": floor}

    @model_validator(mode="after")
    def check_ranges(self) -> "MemoryConfig":
        if self.tokens < 1:
            raise ConfigurationError(f"tokens must be >= 1, got {self.tokens}")
        if self.overlap < 0 or self.overlap >= self.tokens:
            raise ConfigurationError(
                f"overlap must satisfy 0 <= overlap < tokens, got overlap={self.overlap} tokens={self.tokens}"
            )
        if self.vector_weight < 0 or self.text_weight < 0:
            raise ConfigurationError("fusion weights must be non-negative")
        if self.vector_weight + self.text_weight <= 0:
            raise ConfigurationError("at least one fusion weight must be positive")
        if self.max_results < 0:
            raise ConfigurationError(f"max_results must be >= 0, got {self.max_results}")
        if not 0.0 <= self.min_score <= 1.0:
            raise ConfigurationError(f"min_score must be in [0, 1], got {self.min_score}")
        if self.candidate_multiplier < 1:
            raise ConfigurationError("candidate_multiplier must be >= 1")
        return self


class Document(BaseModel):
    """A document as handed over by a document source."""

    model_config = ConfigDict(frozen=True)

    path: str
    text: str
    source: str = "memory"


class Chunk(BaseModel):
    """A line-bounded slice of one document."""

    model_config = ConfigDict(frozen=True)

    path: str
    start_line: int
    end_line: int
    text: str
    hash: str

    @property
    def key(self) -> ChunkKey:
        return (self.path, self.hash)


class IndexEntry(BaseModel):
    """The persisted unit: chunk metadata plus its vector, if embedding succeeded."""

    model_config = ConfigDict(frozen=True)

    chunk: Chunk
    vector: tuple[float, ...] | None = None
    source: str = "memory"

    @property
    def key(self) -> ChunkKey:
        return self.chunk.key

    @property
    def degraded(self) -> bool:
        return self.vector is None


class MemorySearchResult(BaseModel):
    """A single fused search result.

    Dumps with camelCase keys (``startLine``) when ``by_alias=True``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    path: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    source: str
    citation: str

    @classmethod
    def from_entry(cls, entry: IndexEntry, score: float) -> "MemorySearchResult":
        chunk = entry.chunk
        return cls(
            path=chunk.path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            score=score,
            snippet=make_snippet(chunk.text),
            source=entry.source,
            citation=make_citation(chunk.path, chunk.start_line, chunk.end_line),
        )


class MemoryStatus(BaseModel):
    """Counts reported by status()."""

    file_count: int
    chunk_count: int
    degraded_count: int = 0
    provider: str = ""
    model: str = ""


class SyncReport(BaseModel):
    """Outcome of one sync pass.

    ``failed`` counts chunks left without a vector because the provider
    failed; they stay searchable lexically and are retried next pass.
    """

    files: int = 0
    chunks: int = 0
    embedded: int = 0
    cached: int = 0
    carried: int = 0
    removed: int = 0
    failed: int = 0
    forced: bool = False
    provider_errors: list[str] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        return self.failed > 0


def make_citation(path: str, start_line: int, end_line: int) -> str:
    return f"{path}:{start_line}-{end_line}"


def make_snippet(text: str, max_chars: int = SNIPPET_MAX_CHARS) -> str:
    snippet = text.strip()
    if len(snippet) <= max_chars:
        return snippet
    return snippet[:max_chars].rstrip() + "..."
