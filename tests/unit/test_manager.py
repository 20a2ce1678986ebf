"""Unit tests for MemorySearchManager: sync, search, status and close."""

import threading

import pytest

from conftest import FakeProvider, numbered_document

from memsearch.errors import ClosedError, ConfigurationError, CorpusReadError
from memsearch.manager import MemorySearchManager
from memsearch.models import Document, MemoryConfig
from memsearch.sources import StaticSource


@pytest.fixture
def manager(source, provider):
    mgr = MemorySearchManager(source, provider, MemoryConfig(min_score=0.0))
    yield mgr
    mgr.close()


def thousand_token_corpus(text=None):
    return StaticSource([Document(path="notes.md", text=text or numbered_document(1000))])


class TestSync:
    """Tests for sync passes."""

    def test_single_document_indexes_three_chunks(self, provider, config):
        mgr = MemorySearchManager(thousand_token_corpus(), provider, config)

        report = mgr.sync()
        status = mgr.status()

        assert status.file_count == 1
        assert status.chunk_count == 3
        assert report.embedded == 3
        assert report.failed == 0
        assert len(provider.embedded_texts) == 3

    def test_second_sync_without_changes_calls_no_provider(self, provider, config):
        mgr = MemorySearchManager(thousand_token_corpus(), provider, config)
        mgr.sync()
        before = mgr.status()
        calls = len(provider.batch_calls)

        report = mgr.sync()

        assert len(provider.batch_calls) == calls
        assert mgr.status() == before
        assert report.carried == 3
        assert report.embedded == 0

    def test_editing_middle_chunk_reembeds_only_that_chunk(self, provider, config):
        source = thousand_token_corpus()
        mgr = MemorySearchManager(source, provider, config)
        mgr.sync()
        old = {e.chunk.start_line: e for e in mgr.generation.entries.values()}
        provider.batch_calls.clear()

        # tok500 only appears in the middle window [320, 720)
        source.set([Document(path="notes.md", text=numbered_document(1000).replace("tok500 ", "edited "))])
        report = mgr.sync()

        assert len(provider.embedded_texts) == 1
        assert "edited" in provider.embedded_texts[0]
        assert report.embedded == 1
        assert report.carried == 2
        assert report.removed == 1
        new = {e.chunk.start_line: e for e in mgr.generation.entries.values()}
        assert new[1] == old[1]
        assert new[65] == old[65]
        assert new[33] != old[33]
        assert mgr.status().chunk_count == 3

    def test_deleted_document_is_dropped(self, source, provider):
        mgr = MemorySearchManager(source, provider)
        mgr.sync()
        source.set([d for d in source.list_documents() if d.path == "MEMORY.md"])

        report = mgr.sync()

        assert report.removed == 1
        assert mgr.status().file_count == 1
        assert mgr.generation.paths() == {"MEMORY.md"}

    def test_moved_lines_keep_vector_and_update_range(self, provider):
        source = StaticSource([Document(path="a.md", text="coffee notes")])
        mgr = MemorySearchManager(source, provider)
        mgr.sync()
        provider.batch_calls.clear()

        source.set([Document(path="a.md", text="\n\n\ncoffee notes")])
        mgr.sync()

        chunk = mgr.list_chunks()[0]
        assert (chunk.start_line, chunk.end_line) == (4, 4)
        assert provider.batch_calls == []

    def test_renamed_file_reuses_vectors(self, provider):
        source = StaticSource([Document(path="old.md", text="renamed content stays the same")])
        mgr = MemorySearchManager(source, provider)
        mgr.sync()
        provider.batch_calls.clear()

        source.set([Document(path="new.md", text="renamed content stays the same")])
        report = mgr.sync()

        assert provider.batch_calls == []
        assert report.cached == 1
        assert mgr.generation.paths() == {"new.md"}

    def test_force_rebuilds_everything(self, source, provider):
        mgr = MemorySearchManager(source, provider)
        mgr.sync()
        provider.batch_calls.clear()

        report = mgr.sync(force=True)

        assert report.forced
        assert report.embedded == 2
        assert len(provider.embedded_texts) == 2
        assert mgr.status().chunk_count == 2

    def test_corpus_read_failure_keeps_current_generation(self, source, provider):
        mgr = MemorySearchManager(source, provider)
        mgr.sync()
        before = mgr.generation

        def broken():
            raise OSError("disk gone")

        source.list_documents = broken
        with pytest.raises(CorpusReadError, match="disk gone"):
            mgr.sync()

        assert mgr.generation is before
        assert mgr.status().chunk_count == 2

    def test_empty_documents_are_not_counted(self, provider):
        source = StaticSource([Document(path="empty.md", text="\n\n"), Document(path="a.md", text="hello")])
        mgr = MemorySearchManager(source, provider)

        mgr.sync()

        assert mgr.status().file_count == 1


class TestDegradedMode:
    """Embedding failures degrade chunks to lexical-only."""

    def test_failed_chunk_is_counted_and_searchable(self):
        provider = FakeProvider(fail_on="secret")
        source = StaticSource(
            [
                Document(path="a.md", text="the secret launch codename is bluebird"),
                Document(path="b.md", text="lunch menu for friday"),
            ]
        )
        mgr = MemorySearchManager(source, provider, MemoryConfig(min_score=0.0), batch_size=1)

        report = mgr.sync()
        results = mgr.search("bluebird codename")

        assert report.failed == 1
        assert report.degraded
        assert len(report.provider_errors) == 1
        assert mgr.status().chunk_count == 2
        assert mgr.status().degraded_count == 1
        degraded = [r for r in results if r.path == "a.md"]
        assert len(degraded) == 1
        assert degraded[0].score == pytest.approx(0.3)

    def test_default_config_returns_degraded_exact_match(self):
        provider = FakeProvider(fail_on="kubernetes")
        source = StaticSource(
            [
                Document(path="a.md", text="kubernetes cluster upgrade runbook"),
                Document(path="b.md", text="grocery list milk eggs bread"),
            ]
        )
        mgr = MemorySearchManager(source, provider, batch_size=1)
        mgr.sync()

        results = mgr.search("kubernetes cluster upgrade")

        assert mgr.status().degraded_count == 1
        matches = [r for r in results if r.path == "a.md"]
        assert len(matches) == 1
        assert matches[0].score == pytest.approx(0.3)

    def test_next_sync_retries_only_absent_vectors(self):
        provider = FakeProvider(fail_on="secret")
        source = StaticSource(
            [
                Document(path="a.md", text="the secret launch codename is bluebird"),
                Document(path="b.md", text="lunch menu for friday"),
            ]
        )
        mgr = MemorySearchManager(source, provider, batch_size=1)
        mgr.sync()
        provider.batch_calls.clear()
        provider.fail_on = None

        report = mgr.sync()

        assert provider.embedded_texts == ["the secret launch codename is bluebird"]
        assert report.embedded == 1
        assert report.failed == 0
        assert mgr.status().degraded_count == 0

    def test_whole_provider_outage_does_not_abort_sync(self, source):
        provider = FakeProvider(fail_on="")
        mgr = MemorySearchManager(source, provider, MemoryConfig(min_score=0.0))

        report = mgr.sync()

        assert report.failed == 2
        assert mgr.status().chunk_count == 2
        assert mgr.search("coffee")[0].path == "MEMORY.md"

    def test_query_embedding_failure_falls_back_to_lexical(self, manager, provider):
        manager.sync()
        provider.fail_queries = True

        results = manager.search("payments")

        assert results
        assert results[0].path == "memory/2026-01-20.md"


class TestSearch:
    """Tests for search results."""

    def test_result_fields(self, manager):
        manager.sync()

        result = manager.search("dark roast coffee")[0]

        assert result.path == "MEMORY.md"
        assert result.source == "long_term"
        assert (result.start_line, result.end_line) == (1, 1)
        assert result.citation == "MEMORY.md:1-1"
        assert result.snippet == "The user prefers dark roast coffee."
        assert 0.0 <= result.score <= 1.0

    def test_results_dump_with_camel_case(self, manager):
        manager.sync()

        dumped = manager.search("coffee")[0].model_dump(by_alias=True)

        assert dumped["startLine"] == 1
        assert dumped["endLine"] == 1

    def test_empty_index_returns_nothing(self, manager, provider):
        assert manager.search("coffee") == []
        assert provider.query_calls == []

    def test_blank_query_returns_nothing(self, manager):
        manager.sync()
        assert manager.search("   ") == []

    def test_max_results_override(self, manager):
        manager.sync()

        assert len(manager.search("the", max_results=1)) == 1
        assert manager.search("coffee", max_results=0) == []

    def test_min_score_one_yields_only_exact_matches(self, source, provider):
        mgr = MemorySearchManager(source, provider, MemoryConfig(min_score=1.0))
        mgr.sync()

        results = mgr.search("The user prefers dark roast coffee.")
        assert all(r.score == 1.0 for r in results)
        assert mgr.search("unrelated words entirely") == []

    def test_default_config_ignores_unrelated_vectors(self):
        class AxisProvider(FakeProvider):
            """One axis per known topic; anything else points along a third axis."""

            def _axis(self, text):
                vector = [0.0] * self.dimensions
                vector[0 if "alpha" in text else 1 if "beta" in text else 2] = 1.0
                return vector

            def embed_query(self, text):
                return self._axis(text)

            def embed_batch(self, texts):
                return [self._axis(t) for t in texts]

        source = StaticSource(
            [Document(path="a.md", text="alpha release"), Document(path="b.md", text="beta release")]
        )
        mgr = MemorySearchManager(source, AxisProvider())
        mgr.sync()

        assert [r.path for r in mgr.search("alpha")] == ["a.md"]
        assert mgr.search("zzz qqq") == []

    def test_search_sees_one_generation_during_sync(self, provider):
        """A search that started before a swap finishes against its own generation."""
        source = StaticSource([Document(path="a.md", text="original coffee notes")])
        mgr = MemorySearchManager(source, provider, MemoryConfig(min_score=0.0))
        mgr.sync()

        entered = threading.Event()
        proceed = threading.Event()
        embed_query = provider.embed_query

        def slow_embed_query(text):
            entered.set()
            proceed.wait(5.0)
            return embed_query(text)

        provider.embed_query = slow_embed_query
        results = []
        reader = threading.Thread(target=lambda: results.extend(mgr.search("coffee")))
        reader.start()
        assert entered.wait(5.0)

        source.set([Document(path="b.md", text="replacement coffee notes")])
        mgr.sync()
        proceed.set()
        reader.join(5.0)

        assert [r.path for r in results] == ["a.md"]
        provider.embed_query = embed_query
        assert [r.path for r in mgr.search("coffee")] == ["b.md"]


class TestConcurrentSync:
    """Only one sync pass runs at a time."""

    def test_second_sync_waits_for_first(self, provider):
        source = StaticSource([Document(path="a.md", text="alpha beta gamma")])
        started = threading.Event()
        release = threading.Event()
        order = []
        embed_batch = provider.embed_batch

        def blocking_embed_batch(texts):
            order.append(("embed", tuple(texts)))
            started.set()
            release.wait(5.0)
            return embed_batch(texts)

        provider.embed_batch = blocking_embed_batch
        mgr = MemorySearchManager(source, provider)

        first = threading.Thread(target=mgr.sync)
        first.start()
        assert started.wait(5.0)

        source.set([Document(path="a.md", text="delta epsilon")])
        second = threading.Thread(target=mgr.sync)
        second.start()
        second.join(0.2)
        assert second.is_alive()
        assert len(order) == 1

        release.set()
        first.join(5.0)
        second.join(5.0)

        assert [texts for _, texts in order] == [("alpha beta gamma",), ("delta epsilon",)]
        assert [c.text for c in mgr.list_chunks()] == ["delta epsilon"]


class TestLifecycle:
    """Tests for status, reset, list_chunks and close."""

    def test_status_does_not_sync(self, manager, provider):
        status = manager.status()

        assert (status.file_count, status.chunk_count) == (0, 0)
        assert status.provider == "fake"
        assert provider.batch_calls == []

    def test_list_chunks_is_ordered_and_paged(self, manager):
        manager.sync()

        chunks = manager.list_chunks()

        assert [c.path for c in chunks] == ["MEMORY.md", "memory/2026-01-20.md"]
        assert [c.path for c in manager.list_chunks(limit=1, offset=1)] == ["memory/2026-01-20.md"]

    def test_reset_empties_index(self, manager):
        manager.sync()

        manager.reset()

        assert manager.status().chunk_count == 0
        assert manager.search("coffee") == []

    def test_delete_chunks_removes_from_search(self, manager):
        manager.sync()
        coffee = next(c for c in manager.list_chunks() if c.path == "MEMORY.md")

        deleted = manager.delete_chunks([coffee.key, ("missing.md", "nope")])

        assert deleted == 1
        assert manager.status().chunk_count == 1
        assert all(r.path != "MEMORY.md" for r in manager.search("coffee"))

    def test_delete_unknown_chunks_keeps_generation(self, manager):
        manager.sync()
        before = manager.generation

        assert manager.delete_chunks([("missing.md", "nope")]) == 0
        assert manager.generation is before

    def test_next_sync_restores_deleted_chunks(self, manager):
        manager.sync()
        manager.delete_chunks([c.key for c in manager.list_chunks()])

        report = manager.sync()

        assert manager.status().chunk_count == 2
        assert report.embedded == 2

    def test_calls_after_close_fail(self, manager):
        manager.sync()
        manager.close()

        with pytest.raises(ClosedError):
            manager.search("coffee")
        with pytest.raises(ClosedError):
            manager.sync()
        with pytest.raises(ClosedError):
            manager.status()
        with pytest.raises(ClosedError):
            manager.reset()
        with pytest.raises(ClosedError):
            manager.delete_chunks([])

    def test_close_is_idempotent(self, manager):
        manager.close()
        manager.close()
        assert manager.closed

    def test_close_during_sync_discards_result(self, provider):
        source = StaticSource([Document(path="a.md", text="alpha beta")])
        started = threading.Event()
        release = threading.Event()
        embed_batch = provider.embed_batch

        def blocking_embed_batch(texts):
            started.set()
            release.wait(5.0)
            return embed_batch(texts)

        provider.embed_batch = blocking_embed_batch
        mgr = MemorySearchManager(source, provider)
        errors = []

        def run_sync():
            try:
                mgr.sync()
            except ClosedError as e:
                errors.append(e)

        worker = threading.Thread(target=run_sync)
        worker.start()
        assert started.wait(5.0)

        closer = threading.Thread(target=mgr.close)
        closer.start()
        closer.join(0.2)
        assert closer.is_alive()

        release.set()
        worker.join(5.0)
        closer.join(5.0)

        assert len(errors) == 1
        assert len(mgr.generation) == 0

    def test_context_manager_closes(self, source, provider):
        with MemorySearchManager(source, provider) as mgr:
            mgr.sync()
        assert mgr.closed

    def test_rejects_non_provider(self, source):
        with pytest.raises(ConfigurationError):
            MemorySearchManager(source, object())

    def test_watcher_needs_snapshot_support(self, manager):
        with pytest.raises(ConfigurationError):
            manager.start_watcher()
