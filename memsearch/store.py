"""SQLite persistence for index generations and the embedding cache."""

from __future__ import annotations

import sqlite3
import struct
from collections.abc import Iterable, Sequence
from pathlib import Path

import sqlite_vec
import structlog

from .chunker import hash_text
from .embeddings import EmbeddingProvider
from .errors import IntegrityError
from .generation import Generation
from .models import Chunk, IndexEntry

logger = structlog.get_logger(__name__)

_CACHE_BATCH = 500


def _load_extensions(conn: sqlite3.Connection) -> None:
    """Load sqlite-vec extension."""
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)


def vector_to_blob(vector: Sequence[float]) -> bytes:
    return sqlite_vec.serialize_float32(list(vector))


def blob_to_vector(blob: bytes) -> tuple[float, ...]:
    if len(blob) % 4:
        raise IntegrityError(f"vector blob of {len(blob)} bytes is not float32 aligned")
    return struct.unpack(f"{len(blob) // 4}f", blob)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    path TEXT NOT NULL,
    hash TEXT NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    text TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'memory',
    embedding BLOB,
    PRIMARY KEY (path, hash)
);

CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path);

CREATE TABLE IF NOT EXISTS embedding_cache (
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    hash TEXT NOT NULL,
    embedding BLOB NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (provider, model, hash)
);
"""


class MemoryStore:
    """SQLite file holding the current generation and cached embeddings.

    A generation is stored as rows keyed by (path, hash); a NULL embedding
    marks a chunk whose embedding failed.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._connect()
        logger.info(f"database_opened path={self._db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        _load_extensions(conn)
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript(_SCHEMA)
        conn.commit()
        return conn

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        self._conn.close()
        logger.debug(f"database_closed path={self._db_path}")

    def _meta(self) -> dict[str, str]:
        rows = self._conn.execute("SELECT key, value FROM meta").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def load(self, provider: EmbeddingProvider) -> Generation:
        """Load the persisted generation, verifying it against the provider.

        Raises:
            IntegrityError: on model mismatch, malformed vectors, inverted
                line ranges or text that no longer matches its hash.
        """
        try:
            count = self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            if count == 0:
                return Generation.empty()

            meta = self._meta()
            expected = {
                "provider": provider.id,
                "model": provider.model,
                "dimensions": str(provider.dimensions),
            }
            for key, value in expected.items():
                if meta.get(key) != value:
                    raise IntegrityError(
                        f"index was built with {key}={meta.get(key)!r}, provider has {value!r}"
                    )

            bad_vectors = self._conn.execute(
                "SELECT COUNT(*) FROM chunks"
                " WHERE embedding IS NOT NULL AND vec_length(embedding) != ?",
                (provider.dimensions,),
            ).fetchone()[0]
            if bad_vectors:
                raise IntegrityError(
                    f"{bad_vectors} stored vectors do not have {provider.dimensions} dimensions"
                )

            rows = self._conn.execute(
                "SELECT path, hash, start_line, end_line, text, source, embedding FROM chunks"
            ).fetchall()
        except sqlite3.Error as e:
            raise IntegrityError(f"cannot read persisted index: {e}") from e

        entries: list[IndexEntry] = []
        for row in rows:
            if row["start_line"] > row["end_line"]:
                raise IntegrityError(
                    f"chunk {row['path']}:{row['start_line']}-{row['end_line']} has an inverted line range"
                )
            if hash_text(row["text"]) != row["hash"]:
                raise IntegrityError(f"chunk text in {row['path']} does not match its hash")
            blob = row["embedding"]
            entries.append(
                IndexEntry(
                    chunk=Chunk(
                        path=row["path"],
                        start_line=row["start_line"],
                        end_line=row["end_line"],
                        text=row["text"],
                        hash=row["hash"],
                    ),
                    vector=blob_to_vector(blob) if blob is not None else None,
                    source=row["source"],
                )
            )
        generation = Generation.from_entries(entries)
        logger.info(
            f"generation_loaded path={self._db_path} files={generation.file_count} chunks={generation.chunk_count}"
        )
        return generation

    def replace(
        self,
        previous: Generation,
        generation: Generation,
        provider: EmbeddingProvider,
    ) -> None:
        """Persist ``generation`` by writing its diff against ``previous`` in one transaction."""
        removed = [key for key in previous.entries if key not in generation.entries]
        upserts = [
            entry
            for key, entry in generation.entries.items()
            if previous.entries.get(key) != entry
        ]
        with self._conn:
            self._conn.executemany(
                "DELETE FROM chunks WHERE path = ? AND hash = ?",
                removed,
            )
            self._conn.executemany(
                "INSERT OR REPLACE INTO chunks"
                " (path, hash, start_line, end_line, text, source, embedding)"
                " VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        e.chunk.path,
                        e.chunk.hash,
                        e.chunk.start_line,
                        e.chunk.end_line,
                        e.chunk.text,
                        e.source,
                        vector_to_blob(e.vector) if e.vector is not None else None,
                    )
                    for e in upserts
                ],
            )
            self._conn.executemany(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                [
                    ("provider", provider.id),
                    ("model", provider.model),
                    ("dimensions", str(provider.dimensions)),
                ],
            )
        logger.debug(
            f"generation_persisted number={generation.number} upserts={len(upserts)} removed={len(removed)}"
        )

    def clear(self) -> None:
        """Delete every persisted chunk. The embedding cache is kept."""
        with self._conn:
            self._conn.execute("DELETE FROM chunks")
        logger.info(f"index_cleared path={self._db_path}")

    def load_cached(
        self, provider: EmbeddingProvider, hashes: Iterable[str]
    ) -> dict[str, tuple[float, ...]]:
        """Look up cached embeddings by content hash."""
        wanted = list(dict.fromkeys(hashes))
        result: dict[str, tuple[float, ...]] = {}
        for i in range(0, len(wanted), _CACHE_BATCH):
            batch = wanted[i : i + _CACHE_BATCH]
            placeholders = ",".join("?" for _ in batch)
            rows = self._conn.execute(
                "SELECT hash, embedding FROM embedding_cache"
                f" WHERE provider = ? AND model = ? AND hash IN ({placeholders})",
                (provider.id, provider.model, *batch),
            ).fetchall()
            for row in rows:
                try:
                    vector = blob_to_vector(row["embedding"])
                except IntegrityError:
                    logger.warning(f"embedding_cache_skipped hash={row['hash']} reason=misaligned_blob")
                    continue
                if len(vector) == provider.dimensions:
                    result[row["hash"]] = vector
        return result

    def store_cached(
        self, provider: EmbeddingProvider, vectors: dict[str, Sequence[float]]
    ) -> None:
        if not vectors:
            return
        with self._conn:
            self._conn.executemany(
                "INSERT OR REPLACE INTO embedding_cache (provider, model, hash, embedding)"
                " VALUES (?, ?, ?, ?)",
                [
                    (provider.id, provider.model, h, vector_to_blob(v))
                    for h, v in vectors.items()
                ],
            )
        logger.debug(f"embedding_cache_stored count={len(vectors)}")
