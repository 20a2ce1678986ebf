"""Token-window chunking of documents into line-bounded chunks."""

from __future__ import annotations

import hashlib
import re
from bisect import bisect_right
from collections.abc import Sequence

import structlog
from chonkie import TokenChunker
from chonkie.tokenizer import Tokenizer

from .models import Chunk, MemoryConfig

logger = structlog.get_logger(__name__)

# One token per run of non-whitespace, carrying the whitespace after it.
# The first token also carries any leading whitespace, so decoding a run of
# tokens reproduces the source text exactly.
_PIECE_RE = re.compile(r"\s*\S+\s*")


def hash_text(text: str) -> str:
    """Content digest used as change key and chunk identity."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class WhitespaceTokenizer(Tokenizer):
    """chonkie tokenizer over whitespace-delimited words.

    chonkie's ``"word"`` tokenizer splits on single spaces only. Here any
    whitespace run separates tokens and ``decode`` concatenates the original
    pieces, so chunk offsets always index the source text.
    """

    def __repr__(self) -> str:
        return f"WhitespaceTokenizer(vocab_size={len(self.vocab)})"

    def tokenize(self, text: str) -> Sequence[str]:
        return _PIECE_RE.findall(text)

    def encode(self, text: str) -> Sequence[int]:
        encoded = []
        for piece in self.tokenize(text):
            token_id = self.token2id[piece]
            if token_id >= len(self.vocab):
                self.vocab.append(piece)
            encoded.append(token_id)
        return encoded

    def decode(self, tokens: Sequence[int]) -> str:
        return "".join(self.vocab[token] for token in tokens)


def _line_starts(text: str) -> list[int]:
    starts = [0]
    pos = text.find("\n")
    while pos != -1:
        starts.append(pos + 1)
        pos = text.find("\n", pos + 1)
    return starts


def _token_bounds(text: str, start: int, end: int) -> tuple[int, int]:
    """Shrink [start, end) to its first and last non-whitespace character."""
    window = text[start:end]
    return start + (len(window) - len(window.lstrip())), end - (len(window) - len(window.rstrip()))


def chunk_document(path: str, text: str, config: MemoryConfig) -> list[Chunk]:
    """Split a document into overlapping token windows.

    Windows come from chonkie's TokenChunker: ``config.tokens`` tokens each,
    consecutive windows sharing ``config.overlap`` tokens, the last one
    possibly shorter. Each chunk's text is the exact slice of the document
    from its first token to its last, and its line range is the minimal span
    of lines covering that slice.
    """
    if not text.strip():
        return []

    chunker = TokenChunker(
        tokenizer=WhitespaceTokenizer(),
        chunk_size=config.tokens,
        chunk_overlap=config.overlap,
    )
    line_starts = _line_starts(text)
    chunks: list[Chunk] = []
    for window in chunker.chunk(text):
        begin, end = _token_bounds(text, window.start_index, window.end_index)
        chunk_text = text[begin:end]
        chunks.append(
            Chunk(
                path=path,
                start_line=bisect_right(line_starts, begin),
                end_line=bisect_right(line_starts, end - 1),
                text=chunk_text,
                hash=hash_text(chunk_text),
            )
        )
    logger.debug(f"chunking_done path={path} chunks={len(chunks)}")
    return chunks
