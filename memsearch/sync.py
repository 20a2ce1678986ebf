"""Sync pass: diff the corpus against the current generation and build the next one."""

from __future__ import annotations

from collections.abc import Callable

import structlog

from .chunker import chunk_document
from .embeddings import EmbeddingProvider
from .errors import CorpusReadError
from .generation import Generation, GenerationBuilder
from .models import Chunk, ChunkKey, Document, MemoryConfig, SyncReport
from .sources import DocumentSource
from .store import MemoryStore
from .vector import embed_texts

logger = structlog.get_logger(__name__)


class SyncAborted(Exception):
    """The pass was abandoned before its result could be installed."""


class SyncManager:
    """Builds the next generation from the corpus.

    Unchanged chunks (same path and hash) are carried over without being
    re-embedded or re-indexed; new chunks are indexed and embedded in
    batches; chunks that vanished are dropped. Entries whose embedding
    failed on an earlier pass are retried. ``force`` rebuilds from empty.

    Args:
        source: Document source to read the corpus from.
        provider: Embedding provider.
        config: Chunking configuration.
        store: Optional persistent store; the new generation is written to it
            before being returned.
        cache_embeddings: Reuse vectors by content hash from the store's cache.
        batch_size: Texts per embed_batch call.
        concurrency: Maximum embed_batch calls in flight.
        timeout: Seconds to wait for one embed_batch call.
    """

    def __init__(
        self,
        source: DocumentSource,
        provider: EmbeddingProvider,
        config: MemoryConfig,
        *,
        store: MemoryStore | None = None,
        cache_embeddings: bool = True,
        batch_size: int = 64,
        concurrency: int = 4,
        timeout: float | None = 30.0,
    ) -> None:
        self._source = source
        self._provider = provider
        self._config = config
        self._store = store
        self._cache_embeddings = cache_embeddings
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._timeout = timeout

    def read_corpus(self) -> list[Document]:
        try:
            documents = self._source.list_documents()
        except CorpusReadError:
            raise
        except Exception as e:
            raise CorpusReadError(f"cannot list documents: {e}") from e

        seen: set[str] = set()
        unique: list[Document] = []
        for doc in documents:
            if doc.path in seen:
                logger.warning(f"duplicate_document_skipped path={doc.path}")
                continue
            seen.add(doc.path)
            unique.append(doc)
        return unique

    def _chunk_corpus(self, documents: list[Document]) -> dict[ChunkKey, tuple[Chunk, str]]:
        wanted: dict[ChunkKey, tuple[Chunk, str]] = {}
        for doc in documents:
            for chunk in chunk_document(doc.path, doc.text, self._config):
                # Byte-identical windows in one document share a key; first one wins.
                if chunk.key not in wanted:
                    wanted[chunk.key] = (chunk, doc.source)
        return wanted

    def _known_vectors(self, current: Generation, hashes: set[str], force: bool) -> dict[str, tuple[float, ...]]:
        """Vectors already computed for these hashes, from the current generation or the cache."""
        if force or not hashes:
            return {}
        known: dict[str, tuple[float, ...]] = {}
        for (_, chunk_hash), entry in current.entries.items():
            if entry.vector is not None and chunk_hash in hashes:
                known.setdefault(chunk_hash, entry.vector)
        if self._store is not None and self._cache_embeddings:
            missing = hashes - known.keys()
            if missing:
                known.update(self._store.load_cached(self._provider, missing))
        return known

    def run(
        self,
        current: Generation,
        force: bool = False,
        should_abort: Callable[[], bool] | None = None,
    ) -> tuple[Generation, SyncReport]:
        """Run one pass and return the new generation with its report.

        Raises:
            CorpusReadError: the corpus could not be read; nothing changed.
            SyncAborted: ``should_abort`` turned true before persisting.
        """
        documents = self.read_corpus()
        wanted = self._chunk_corpus(documents)
        logger.info(
            f"sync_start documents={len(documents)} chunks={len(wanted)} force={force} generation={current.number}"
        )

        base = Generation.empty() if force else current
        builder = GenerationBuilder(base)
        report = SyncReport(files=len({path for path, _ in wanted}), forced=force)
        report.removed = sum(1 for key in current.entries if key not in wanted)

        for key in builder.keys():
            if key not in wanted:
                builder.drop(key)

        pending: list[ChunkKey] = []
        for key, (chunk, source) in wanted.items():
            existing = base.get(key)
            if existing is None:
                builder.add(chunk, source)
                pending.append(key)
                continue
            if existing.chunk != chunk or existing.source != source:
                # Same text, moved lines: refresh metadata, keep vector and terms.
                existing = existing.model_copy(update={"chunk": chunk, "source": source})
            builder.carry(existing)
            if existing.vector is None:
                pending.append(key)
            else:
                report.carried += 1

        self._embed_pending(current, builder, wanted, pending, force, report)

        if should_abort is not None and should_abort():
            raise SyncAborted("sync abandoned before install")

        generation = builder.build()
        if self._store is not None:
            self._store.replace(current, generation, self._provider)

        report.chunks = generation.chunk_count
        report.failed = generation.degraded_count
        logger.info(
            f"sync_done generation={generation.number} files={report.files} chunks={report.chunks} "
            f"embedded={report.embedded} cached={report.cached} carried={report.carried} "
            f"removed={report.removed} failed={report.failed}"
        )
        return generation, report

    def _embed_pending(
        self,
        current: Generation,
        builder: GenerationBuilder,
        wanted: dict[ChunkKey, tuple[Chunk, str]],
        pending: list[ChunkKey],
        force: bool,
        report: SyncReport,
    ) -> None:
        if not pending:
            return

        hashes = {chunk_hash for _, chunk_hash in pending}
        known = self._known_vectors(current, hashes, force)

        texts_by_hash: dict[str, str] = {}
        for key in pending:
            chunk_hash = key[1]
            if chunk_hash not in known and chunk_hash not in texts_by_hash:
                texts_by_hash[chunk_hash] = wanted[key][0].text

        fresh: dict[str, tuple[float, ...]] = {}
        if texts_by_hash:
            order = list(texts_by_hash)
            logger.debug(f"embedding_batch count={len(order)} reused={len(known)}")
            outcome = embed_texts(
                self._provider,
                [texts_by_hash[h] for h in order],
                batch_size=self._batch_size,
                concurrency=self._concurrency,
                timeout=self._timeout,
            )
            report.provider_errors.extend(outcome.errors)
            for chunk_hash, vector in zip(order, outcome.vectors):
                if vector is not None:
                    fresh[chunk_hash] = vector
            if self._store is not None and self._cache_embeddings and fresh:
                self._store.store_cached(self._provider, fresh)

        for key in pending:
            chunk_hash = key[1]
            if chunk_hash in fresh:
                builder.set_vector(key, fresh[chunk_hash])
                report.embedded += 1
            elif chunk_hash in known:
                builder.set_vector(key, known[chunk_hash])
                report.cached += 1
