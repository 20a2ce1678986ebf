"""Document sources: where the corpus comes from."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

from .errors import CorpusReadError
from .models import Document

logger = structlog.get_logger(__name__)

LONG_TERM_FILE = "MEMORY.md"


@runtime_checkable
class DocumentSource(Protocol):
    """Lists every (path, text, source) of the corpus.

    Implementations raise CorpusReadError (or any other exception) when the
    corpus cannot be enumerated; the sync pass is then aborted.
    """

    def list_documents(self) -> list[Document]: ...


class StaticSource:
    """In-memory corpus. Documents can be swapped with ``set``."""

    def __init__(self, documents: Iterable[Document] = ()) -> None:
        self._documents = list(documents)

    def set(self, documents: Iterable[Document]) -> None:
        self._documents = list(documents)

    def list_documents(self) -> list[Document]:
        return list(self._documents)


class DirectorySource:
    """Markdown files under a root directory.

    Hidden files and directories are skipped, which keeps the index database
    (``.memsearch/``) out of the corpus. ``MEMORY.md`` is labelled
    ``long_term``; everything else ``memory``.

    Args:
        root: Directory to walk.
        pattern: Glob matched against file names.
    """

    def __init__(self, root: str | Path, pattern: str = "*.md") -> None:
        self._root = Path(root)
        self._pattern = pattern

    @property
    def root(self) -> Path:
        return self._root

    def _files(self) -> list[Path]:
        if not self._root.is_dir():
            raise CorpusReadError(f"context directory does not exist: {self._root}")
        files: list[Path] = []
        try:
            for path in self._root.rglob(self._pattern):
                rel = path.relative_to(self._root)
                if any(part.startswith(".") for part in rel.parts):
                    continue
                if path.is_file():
                    files.append(path)
        except OSError as e:
            raise CorpusReadError(f"cannot walk {self._root}: {e}") from e
        return sorted(files)

    def _relative(self, path: Path) -> str:
        return path.relative_to(self._root).as_posix()

    def list_documents(self) -> list[Document]:
        documents: list[Document] = []
        for path in self._files():
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise CorpusReadError(f"cannot read {path}: {e}") from e
            rel = self._relative(path)
            source = "long_term" if path.name == LONG_TERM_FILE else "memory"
            documents.append(Document(path=rel, text=text, source=source))
        logger.debug(f"corpus_listed root={self._root} documents={len(documents)}")
        return documents

    def snapshot(self) -> dict[str, float]:
        """Current mtimes of all corpus files, keyed by relative path."""
        try:
            return {self._relative(p): p.stat().st_mtime for p in self._files()}
        except OSError as e:
            raise CorpusReadError(f"cannot stat files under {self._root}: {e}") from e
