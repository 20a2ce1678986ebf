"""Weighted fusion of vector and lexical scores into one ranking."""

from __future__ import annotations

from collections.abc import Mapping
from typing import NamedTuple

import structlog

from .models import ChunkKey, MemoryConfig

logger = structlog.get_logger(__name__)

SCORE_PRECISION = 6


class RankedHit(NamedTuple):
    path: str
    hash: str
    score: float


def normalized_weights(config: MemoryConfig) -> tuple[float, float]:
    """Return (vector_weight, text_weight) scaled to sum to 1."""
    total = config.vector_weight + config.text_weight
    return config.vector_weight / total, config.text_weight / total


def fuse_score(vector_score: float, lexical_score: float, config: MemoryConfig) -> float:
    vw, tw = normalized_weights(config)
    combined = vw * vector_score + tw * lexical_score
    return min(1.0, max(0.0, round(combined, SCORE_PRECISION)))


def rank(
    lexical_scores: Mapping[ChunkKey, float],
    vector_scores: Mapping[ChunkKey, float],
    config: MemoryConfig,
    *,
    start_lines: Mapping[ChunkKey, int] | None = None,
    limit: int | None = None,
) -> list[RankedHit]:
    """Fuse two score maps (both already in [0, 1]).

    A chunk missing from one map contributes 0 for that signal. Results
    below ``min_score`` are dropped; the rest are ordered by score, then
    path, then start line, and cut to ``limit`` (default ``max_results``).
    """
    max_results = config.max_results if limit is None else limit
    if max_results <= 0:
        return []

    lines = start_lines or {}
    hits: list[tuple[float, str, int, str]] = []
    for key in set(lexical_scores) | set(vector_scores):
        score = fuse_score(vector_scores.get(key, 0.0), lexical_scores.get(key, 0.0), config)
        if score < config.min_score:
            continue
        path, chunk_hash = key
        hits.append((score, path, lines.get(key, 0), chunk_hash))

    hits.sort(key=lambda h: (-h[0], h[1], h[2], h[3]))
    ranked = [RankedHit(path, chunk_hash, score) for score, path, _, chunk_hash in hits[:max_results]]
    logger.debug(
        f"fusion_done candidates={len(set(lexical_scores) | set(vector_scores))} above_min={len(hits)} returned={len(ranked)} min_score={config.min_score}"
    )
    return ranked
