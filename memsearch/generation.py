"""Immutable index generations and their copy-on-write builder."""

from __future__ import annotations

import itertools
from collections.abc import Iterable, Mapping, Sequence
from types import MappingProxyType

from .lexical import LexicalIndex
from .models import Chunk, ChunkKey, IndexEntry
from .vector import VectorIndex

_numbers = itertools.count(1)


class Generation:
    """A read-only snapshot of every index entry plus the derived indexes.

    Readers grab a reference to the current generation and use only that
    for the whole call; sync never mutates a published generation.
    """

    __slots__ = ("number", "entries", "lexical", "vectors", "file_count", "degraded_count")

    def __init__(
        self,
        entries: Mapping[ChunkKey, IndexEntry],
        lexical: LexicalIndex,
        vectors: VectorIndex,
        number: int | None = None,
    ) -> None:
        self.number = next(_numbers) if number is None else number
        self.entries: Mapping[ChunkKey, IndexEntry] = MappingProxyType(dict(entries))
        self.lexical = lexical
        self.vectors = vectors
        self.file_count = len({path for path, _ in self.entries})
        self.degraded_count = sum(1 for e in self.entries.values() if e.vector is None)

    @classmethod
    def empty(cls) -> "Generation":
        return cls({}, LexicalIndex(), VectorIndex(), number=0)

    @classmethod
    def from_entries(cls, entries: Iterable[IndexEntry]) -> "Generation":
        """Build a generation from scratch, e.g. when loading a persisted index."""
        builder = GenerationBuilder(cls.empty())
        for entry in entries:
            builder.add(entry.chunk, entry.source, entry.vector)
        return builder.build()

    @property
    def chunk_count(self) -> int:
        return len(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, key: ChunkKey) -> IndexEntry | None:
        return self.entries.get(key)

    def entries_for(self, path: str) -> dict[str, IndexEntry]:
        """Entries of one path keyed by hash."""
        return {h: e for (p, h), e in self.entries.items() if p == path}

    def paths(self) -> set[str]:
        return {path for path, _ in self.entries}

    def chunks(self) -> list[Chunk]:
        """All chunks ordered by path, then start line."""
        return sorted(
            (e.chunk for e in self.entries.values()),
            key=lambda c: (c.path, c.start_line, c.end_line, c.hash),
        )

    def start_lines(self, keys: Iterable[ChunkKey]) -> dict[ChunkKey, int]:
        return {k: self.entries[k].chunk.start_line for k in keys if k in self.entries}


class GenerationBuilder:
    """Assembles the next generation from a base without touching the base."""

    def __init__(self, base: Generation) -> None:
        self._entries: dict[ChunkKey, IndexEntry] = dict(base.entries)
        self._lexical = base.lexical.copy()
        self._vectors = base.vectors.copy()

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[ChunkKey]:
        return list(self._entries)

    def carry(self, entry: IndexEntry) -> None:
        """Keep an entry unchanged; its lexical and vector data are already present."""
        self._entries[entry.key] = entry

    def add(self, chunk: Chunk, source: str, vector: Sequence[float] | None = None) -> None:
        vec = tuple(float(v) for v in vector) if vector is not None else None
        self._entries[chunk.key] = IndexEntry(chunk=chunk, vector=vec, source=source)
        self._lexical.index(chunk)
        if vec is None:
            self._vectors.remove(*chunk.key)
        else:
            self._vectors.index(chunk.key, vec)

    def set_vector(self, key: ChunkKey, vector: Sequence[float]) -> None:
        entry = self._entries[key]
        vec = tuple(float(v) for v in vector)
        self._entries[key] = entry.model_copy(update={"vector": vec})
        self._vectors.index(key, vec)

    def drop(self, key: ChunkKey) -> None:
        if self._entries.pop(key, None) is None:
            return
        self._lexical.remove(*key)
        self._vectors.remove(*key)

    def build(self) -> Generation:
        return Generation(self._entries, self._lexical, self._vectors)
