"""MemorySearchManager: the public search/sync/status/close facade."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from pathlib import Path

import structlog

from .embeddings import EmbeddingProvider
from .errors import ClosedError, ConfigurationError, IntegrityError, ProviderError
from .fusion import rank
from .generation import Generation, GenerationBuilder
from .lexical import normalize_scores
from .models import Chunk, ChunkKey, MemoryConfig, MemorySearchResult, MemoryStatus, SyncReport
from .sources import DocumentSource
from .store import MemoryStore
from .sync import SyncAborted, SyncManager
from .watcher import MemoryWatcher

logger = structlog.get_logger(__name__)

# Only vectors with positive cosine to the query are candidates.
VECTOR_CANDIDATE_FLOOR = 0.5


class MemorySearchManager:
    """Hybrid vector + lexical search over a corpus of context documents.

    Readers (``search``, ``status``) work on whichever generation is current
    when they start and are never blocked by a sync. At most one sync pass
    runs at a time; a second caller waits for the first to finish and then
    runs its own pass.

    Args:
        source: Document source for the corpus.
        provider: Embedding provider.
        config: Chunking and fusion settings. Defaults to MemoryConfig().
        db_path: Optional SQLite file to persist the index and embedding cache.
        batch_size: Texts per embed_batch call during sync.
        concurrency: Maximum embed_batch calls in flight during sync.
        timeout: Seconds to wait for one embed_batch call.
        cache_embeddings: Reuse vectors by content hash across files and passes.
    """

    def __init__(
        self,
        source: DocumentSource,
        provider: EmbeddingProvider,
        config: MemoryConfig | None = None,
        *,
        db_path: str | Path | None = None,
        batch_size: int = 64,
        concurrency: int = 4,
        timeout: float | None = 30.0,
        cache_embeddings: bool = True,
    ) -> None:
        if not isinstance(provider, EmbeddingProvider):
            raise ConfigurationError(f"{type(provider).__name__} is not an embedding provider")
        if provider.dimensions < 1:
            raise ConfigurationError(f"provider dimensions must be >= 1, got {provider.dimensions}")
        if batch_size < 1 or concurrency < 1:
            raise ConfigurationError("batch_size and concurrency must be >= 1")

        self._config = config or MemoryConfig()
        self._source = source
        self._provider = provider
        self._closed = False
        self._force_next_sync = False
        self._sync_lock = threading.Lock()
        self._swap_lock = threading.Lock()
        self._watcher: MemoryWatcher | None = None

        self._store = MemoryStore(Path(db_path)) if db_path is not None else None
        self._generation = Generation.empty()
        if self._store is not None:
            try:
                self._generation = self._store.load(provider)
            except IntegrityError as e:
                logger.warning(f"persisted_index_rejected path={self._store.path} reason={e}")
                self._store.clear()
                self._force_next_sync = True

        self._sync_manager = SyncManager(
            source,
            provider,
            self._config,
            store=self._store,
            cache_embeddings=cache_embeddings,
            batch_size=batch_size,
            concurrency=concurrency,
            timeout=timeout,
        )
        logger.info(
            f"memory_manager_initialized provider={provider.id} model={provider.model} "
            f"db_path={db_path} chunks={self._generation.chunk_count}"
        )

    def __enter__(self) -> "MemorySearchManager":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def config(self) -> MemoryConfig:
        return self._config

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def watching(self) -> bool:
        return self._watcher is not None and self._watcher.running

    @property
    def generation(self) -> Generation:
        """The generation readers currently see."""
        return self._generation

    def _check_open(self) -> None:
        if self._closed:
            raise ClosedError()

    def _embed_query(self, query: str) -> list[float] | None:
        try:
            vector = self._provider.embed_query(query)
            if len(vector) != self._provider.dimensions:
                raise ProviderError(
                    f"query vector has dimension {len(vector)}, expected {self._provider.dimensions}"
                )
            return vector
        except Exception as e:
            logger.warning(f"query_embedding_failed error={type(e).__name__}: {e} fallback=lexical_only")
            return None

    def search(self, query: str, max_results: int | None = None) -> list[MemorySearchResult]:
        """Search the current generation.

        Args:
            query: Natural language search query.
            max_results: Overrides the configured result cap.

        Returns:
            Results ordered by fused score; empty when nothing reaches min_score.
        """
        self._check_open()
        generation = self._generation
        limit = self._config.max_results if max_results is None else max_results
        if limit <= 0 or not query.strip() or len(generation) == 0:
            return []

        logger.info(f"memory_search query={query[:80]} max_results={limit} generation={generation.number}")
        pool = limit * self._config.candidate_multiplier
        lexical = normalize_scores(generation.lexical.score_query(query, limit=pool))

        vector: dict[ChunkKey, float] = {}
        if len(generation.vectors) > 0:
            query_vector = self._embed_query(query)
            if query_vector is not None:
                vector = generation.vectors.score_query(
                    query_vector, limit=pool, floor=VECTOR_CANDIDATE_FLOOR
                )

        candidates = set(lexical) | set(vector)
        ranked = rank(
            lexical,
            vector,
            self._config,
            start_lines=generation.start_lines(candidates),
            limit=limit,
        )
        results = [
            MemorySearchResult.from_entry(generation.entries[(hit.path, hit.hash)], hit.score)
            for hit in ranked
        ]
        logger.debug(
            f"memory_search_done results={len(results)} candidates={len(candidates)} "
            f"vec_hits={len(vector)} fts_hits={len(lexical)}"
        )
        return results

    def sync(self, force: bool = False) -> SyncReport:
        """Bring the index up to date with the corpus.

        Blocks while another sync is running. Embedding failures do not raise;
        they are counted in the returned report and retried next time.

        Raises:
            CorpusReadError: the corpus could not be read; the index is unchanged.
            ClosedError: the manager is closed.
        """
        self._check_open()
        with self._sync_lock:
            self._check_open()
            forced = force or self._force_next_sync
            try:
                generation, report = self._sync_manager.run(
                    self._generation, force=forced, should_abort=lambda: self._closed
                )
            except SyncAborted:
                logger.info("sync_abandoned reason=closed")
                raise ClosedError() from None
            with self._swap_lock:
                if self._closed:
                    raise ClosedError()
                self._generation = generation
            self._force_next_sync = False
        if report.degraded:
            logger.warning(
                f"sync_degraded failed={report.failed} errors={len(report.provider_errors)}"
            )
        return report

    def status(self) -> MemoryStatus:
        """Counts from the current generation. Never triggers a sync."""
        self._check_open()
        generation = self._generation
        return MemoryStatus(
            file_count=generation.file_count,
            chunk_count=generation.chunk_count,
            degraded_count=generation.degraded_count,
            provider=self._provider.id,
            model=self._provider.model,
        )

    def list_chunks(self, limit: int = 100, offset: int = 0) -> list[Chunk]:
        """Page through indexed chunks ordered by path and start line."""
        self._check_open()
        return self._generation.chunks()[offset : offset + limit]

    def reset(self) -> None:
        """Drop every indexed chunk. The embedding cache survives."""
        self._check_open()
        with self._sync_lock:
            self._check_open()
            if self._store is not None:
                self._store.clear()
            with self._swap_lock:
                self._generation = Generation.empty()
        logger.info("memory_reset")

    def delete_chunks(self, keys: Iterable[ChunkKey]) -> int:
        """Remove chunks by (path, hash) and return how many were indexed.

        Unknown keys are ignored. The deletion is persisted, but the next sync
        indexes the chunks again if their documents still contain them.
        """
        self._check_open()
        with self._sync_lock:
            self._check_open()
            current = self._generation
            builder = GenerationBuilder(current)
            deleted = 0
            for key in set(keys):
                if key in builder:
                    builder.drop(key)
                    deleted += 1
            if deleted == 0:
                return 0
            generation = builder.build()
            if self._store is not None:
                self._store.replace(current, generation, self._provider)
            with self._swap_lock:
                self._generation = generation
        logger.info(f"chunks_deleted count={deleted} generation={generation.number}")
        return deleted

    def start_watcher(self, poll_interval: float = 2.0) -> None:
        """Re-sync in the background whenever corpus files change."""
        self._check_open()
        if self._watcher is not None:
            return
        snapshot = getattr(self._source, "snapshot", None)
        if snapshot is None:
            raise ConfigurationError(
                f"{type(self._source).__name__} does not support change snapshots"
            )
        self._watcher = MemoryWatcher(snapshot, lambda _paths: self.sync(), poll_interval)
        self._watcher.start()

    def stop_watcher(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

    def close(self) -> None:
        """Stop the watcher, wait for an in-flight sync and release the store.

        Safe to call more than once and while a sync is running; that sync
        finishes without installing its result.
        """
        with self._swap_lock:
            if self._closed:
                return
            self._closed = True
        self.stop_watcher()
        with self._sync_lock:
            if self._store is not None:
                self._store.close()
        logger.info("memory_manager_closed")
