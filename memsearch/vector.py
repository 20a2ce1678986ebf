"""Vector index and batched chunk embedding."""

from __future__ import annotations

import threading
import time
from collections.abc import Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

import numpy as np
import structlog

from .embeddings import EmbeddingProvider
from .errors import ProviderError
from .lexical import top_scores
from .models import ChunkKey

logger = structlog.get_logger(__name__)

Vector = tuple[float, ...]


class VectorIndex:
    """Maps (path, hash) to an embedding. Entries without a vector are simply absent.

    Vectors are kept as float32 rows, the precision they are persisted with.
    Queries score every row with one matrix-vector product; the matrix and
    its row norms are built on first use and rebuilt after any change.
    """

    def __init__(self) -> None:
        self._vectors: dict[ChunkKey, np.ndarray] = {}
        self._packed: tuple[list[ChunkKey], np.ndarray, np.ndarray] | None = None
        self._pack_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, key: object) -> bool:
        return key in self._vectors

    def copy(self) -> "VectorIndex":
        clone = VectorIndex()
        # Rows are never mutated after indexing, share them.
        clone._vectors = dict(self._vectors)
        return clone

    def index(self, key: ChunkKey, vector: Sequence[float]) -> None:
        self._vectors[key] = np.asarray(vector, dtype=np.float32)
        self._packed = None

    def remove(self, path: str, hash: str) -> None:
        if self._vectors.pop((path, hash), None) is not None:
            self._packed = None

    def _pack(self) -> tuple[list[ChunkKey], np.ndarray, np.ndarray]:
        with self._pack_lock:
            if self._packed is None:
                keys = list(self._vectors)
                matrix = np.vstack([self._vectors[key] for key in keys])
                self._packed = (keys, matrix, np.linalg.norm(matrix, axis=1))
            return self._packed

    def score_query(
        self,
        query_vector: Sequence[float],
        limit: int | None = None,
        floor: float | None = None,
    ) -> dict[ChunkKey, float]:
        """Cosine similarity mapped from [-1, 1] to [0, 1] for every indexed vector.

        Zero-norm vectors on either side score 0.5. With ``floor`` only scores
        strictly above it are returned; with ``limit`` only the best ``limit``,
        ties broken by key.
        """
        if not self._vectors:
            return {}
        keys, matrix, norms = self._pack()
        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape != (matrix.shape[1],):
            raise ValueError(
                f"query vector has dimension {query.size}, index holds {matrix.shape[1]}"
            )

        denom = norms * np.linalg.norm(query)
        cos = np.divide(matrix @ query, denom, out=np.zeros(len(keys), dtype=np.float32), where=denom > 0)
        scores = np.clip((cos.astype(np.float64) + 1.0) / 2.0, 0.0, 1.0)

        selected = np.arange(len(keys))
        if floor is not None:
            selected = selected[scores[selected] > floor]
        if limit is not None and len(selected) > limit:
            if limit <= 0:
                return {}
            # Keep every row tied with the limit-th best so ties resolve by key.
            kth = np.partition(scores[selected], len(selected) - limit)[len(selected) - limit]
            selected = selected[scores[selected] >= kth]
        return top_scores({keys[i]: float(scores[i]) for i in selected}, limit)


@dataclass
class EmbeddingOutcome:
    """Vectors aligned with the input texts; None where the batch failed."""

    vectors: list[Vector | None]
    errors: list[str] = field(default_factory=list)
    calls: int = 0

    @property
    def failed(self) -> int:
        return sum(1 for v in self.vectors if v is None)


def _check_batch(result: object, expected: int, dimensions: int) -> list[Vector]:
    if not isinstance(result, Sequence) or len(result) != expected:
        got = len(result) if isinstance(result, Sequence) else type(result).__name__
        raise ProviderError(f"embed_batch returned {got} vectors for {expected} texts")
    vectors: list[Vector] = []
    for vec in result:
        if len(vec) != dimensions:
            raise ProviderError(
                f"embed_batch returned a vector of dimension {len(vec)}, expected {dimensions}"
            )
        vectors.append(tuple(float(v) for v in vec))
    return vectors


def _collect(
    outcome: EmbeddingOutcome, future: Future, start: int, batch: list[str], dimensions: int
) -> None:
    try:
        vectors = _check_batch(future.result(), len(batch), dimensions)
    except Exception as exc:
        message = f"embed_batch failed (offset={start} size={len(batch)}): {exc}"
        outcome.errors.append(message)
        logger.warning(
            f"embed_batch_failed offset={start} size={len(batch)} error={type(exc).__name__}: {exc}"
        )
    else:
        outcome.vectors[start : start + len(batch)] = vectors
        logger.debug(f"embed_batch_done offset={start} size={len(batch)}")


def embed_texts(
    provider: EmbeddingProvider,
    texts: Sequence[str],
    *,
    batch_size: int = 64,
    concurrency: int = 4,
    timeout: float | None = 30.0,
) -> EmbeddingOutcome:
    """Embed texts in batches with at most ``concurrency`` provider calls in flight.

    A failed, timed out or malformed batch leaves None for each of its texts;
    it never aborts the other batches. ``timeout`` runs from the moment a
    call starts. Once every worker is held by a timed out call, batches that
    never started are cancelled and left for the next sync.
    """
    outcome = EmbeddingOutcome(vectors=[None] * len(texts))
    if not texts:
        return outcome

    batches = [
        (start, list(texts[start : start + batch_size]))
        for start in range(0, len(texts), batch_size)
    ]
    workers = max(1, min(concurrency, len(batches)))
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="memsearch-embed")
    started: dict[int, float] = {}

    def call(start: int, batch: list[str]):
        started[start] = time.monotonic()
        return provider.embed_batch(batch)

    try:
        pending: dict[Future, tuple[int, list[str]]] = {
            executor.submit(call, start, batch): (start, batch) for start, batch in batches
        }
        expired: list[Future] = []
        while pending:
            wait_for = None
            if timeout is not None:
                deadlines = [started[start] + timeout for start, _ in pending.values() if start in started]
                # Poll until some call has started and its deadline is known.
                wait_for = max(0.0, min(deadlines) - time.monotonic()) if deadlines else min(timeout, 0.05)
            done, _ = wait(pending, timeout=wait_for, return_when=FIRST_COMPLETED)
            for future in done:
                start, batch = pending.pop(future)
                _collect(outcome, future, start, batch, provider.dimensions)
            if timeout is None:
                continue

            now = time.monotonic()
            for future, (start, batch) in list(pending.items()):
                began = started.get(start)
                if began is None or now - began < timeout:
                    continue
                del pending[future]
                expired.append(future)
                outcome.errors.append(
                    f"embed_batch timed out after {timeout}s (offset={start} size={len(batch)})"
                )
                logger.warning(f"embed_batch_timeout offset={start} size={len(batch)} timeout={timeout}")

            if sum(1 for future in expired if not future.done()) >= workers:
                for future, (start, batch) in list(pending.items()):
                    if not future.cancel():
                        continue
                    del pending[future]
                    outcome.errors.append(
                        f"embed_batch not attempted (offset={start} size={len(batch)}): "
                        f"all workers held by timed out calls"
                    )
                    logger.warning(f"embed_batch_cancelled offset={start} size={len(batch)}")
        outcome.calls = len(started)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    return outcome
