"""In-memory lexical index over chunk text."""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Mapping

from .models import Chunk, ChunkKey

_TERM_RE = re.compile(r"\w+")


def tokenize(text: str) -> list[str]:
    return _TERM_RE.findall(text.lower())


def query_terms(query: str) -> list[str]:
    """Distinct query terms, in first-seen order.

    Multi-word queries also match the snake_case joined form, so
    "capability test token" finds ``capability_test_token``.
    """
    words = tokenize(query)
    terms = list(dict.fromkeys(words))
    if len(words) > 1:
        joined = "_".join(words)
        if joined not in terms:
            terms.append(joined)
    return terms


def top_scores(scores: Mapping[ChunkKey, float], limit: int | None) -> dict[ChunkKey, float]:
    """Keep the ``limit`` best scores, ties broken by key."""
    if limit is None or len(scores) <= limit:
        return dict(scores)
    ordered = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    return dict(ordered[:limit])


def normalize_scores(raw: Mapping[ChunkKey, float]) -> dict[ChunkKey, float]:
    """Scale one query's raw scores into [0, 1] against its best candidate."""
    if not raw:
        return {}
    best = max(raw.values())
    if best <= 0:
        return {key: 0.0 for key in raw}
    return {key: score / best for key, score in raw.items()}


class LexicalIndex:
    """Term-frequency index keyed by (path, hash).

    A chunk scores ``1 + log(tf)`` for every distinct query term it contains,
    so identical text always scores identically and each additional matching
    term strictly raises the score. Indexes are built copy-on-write: a
    published generation's index is never mutated.
    """

    def __init__(self) -> None:
        self._terms: dict[ChunkKey, dict[str, int]] = {}
        self._postings: dict[str, set[ChunkKey]] = {}

    def __len__(self) -> int:
        return len(self._terms)

    def __contains__(self, key: object) -> bool:
        return key in self._terms

    def copy(self) -> "LexicalIndex":
        clone = LexicalIndex()
        # Term-frequency maps are never mutated after indexing, share them.
        clone._terms = dict(self._terms)
        clone._postings = {term: set(keys) for term, keys in self._postings.items()}
        return clone

    def index(self, chunk: Chunk) -> None:
        key = chunk.key
        if key in self._terms:
            self.remove(*key)
        freqs = dict(Counter(tokenize(chunk.text)))
        self._terms[key] = freqs
        for term in freqs:
            self._postings.setdefault(term, set()).add(key)

    def remove(self, path: str, hash: str) -> None:
        key = (path, hash)
        freqs = self._terms.pop(key, None)
        if freqs is None:
            return
        for term in freqs:
            keys = self._postings.get(term)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._postings[term]

    def score_query(self, query: str, limit: int | None = None) -> dict[ChunkKey, float]:
        """Raw scores for every chunk sharing at least one term with the query."""
        scores: dict[ChunkKey, float] = {}
        for term in query_terms(query):
            for key in self._postings.get(term, ()):
                tf = self._terms[key][term]
                scores[key] = scores.get(key, 0.0) + 1.0 + math.log(tf)
        return top_scores(scores, limit)
