"""Polling-based watcher that triggers a sync when corpus files change."""

from __future__ import annotations

import threading
from collections.abc import Callable

import structlog

logger = structlog.get_logger(__name__)


class MemoryWatcher:
    """Watches a document source for changes and triggers a callback.

    Uses polling (2s interval by default) over ``snapshot()``, a mapping of
    path to mtime. Additions, modifications and deletions each count as a
    change; the callback runs at most once per poll.

    Args:
        snapshot: Returns the current {path: mtime} of the corpus.
        on_change: Callback invoked with the sorted list of changed paths.
        poll_interval: Seconds between polls.
    """

    def __init__(
        self,
        snapshot: Callable[[], dict[str, float]],
        on_change: Callable[[list[str]], None],
        poll_interval: float = 2.0,
    ) -> None:
        self._snapshot = snapshot
        self._on_change = on_change
        self._poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._mtimes: dict[str, float] = {}

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        """Start the watcher in a daemon thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._mtimes = self._snapshot()
        self._thread = threading.Thread(
            target=self._poll_loop, name="memsearch-watcher", daemon=True
        )
        self._thread.start()
        logger.info(f"watcher_started poll_interval={self._poll_interval}")

    def stop(self) -> None:
        """Stop the watcher thread."""
        self._stop_event.set()
        if self._thread is not None:
            if self._thread is not threading.current_thread():
                self._thread.join(timeout=5.0)
            self._thread = None
            logger.info("watcher_stopped")

    def changed_paths(self, current: dict[str, float]) -> list[str]:
        changed = {
            path
            for path, mtime in current.items()
            if path not in self._mtimes or mtime != self._mtimes[path]
        }
        changed.update(path for path in self._mtimes if path not in current)
        return sorted(changed)

    def poll_once(self) -> list[str]:
        """Take one snapshot and fire the callback if anything changed.

        The snapshot is only committed once the callback returns, so a failed
        callback is retried on the next poll.
        """
        current = self._snapshot()
        changed = self.changed_paths(current)
        if changed:
            logger.info(f"files_changed count={len(changed)} first={changed[0]}")
            self._on_change(changed)
        self._mtimes = current
        return changed

    def _poll_loop(self) -> None:
        """Main polling loop."""
        while not self._stop_event.wait(self._poll_interval):
            try:
                self.poll_once()
            except Exception as e:
                logger.warning(f"poll_error error={type(e).__name__}: {e}")
