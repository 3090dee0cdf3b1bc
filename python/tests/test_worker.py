"""
Worker Tests - Verify one document goes from vault file to index record.
"""

import asyncio

import numpy as np
import pytest

from vaultindex.content import VaultContentSource
from vaultindex.errors import EmbeddingTimeoutError, EmptyContentError, classify_error, ErrorAction
from vaultindex.fingerprint import FingerprintCache
from vaultindex.index import DocumentIndex
from vaultindex.models import QueueItem
from vaultindex.worker import IndexingWorker

from conftest import FakeEmbedder


def make_worker(config, embedder=None):
    index = DocumentIndex(config=config)
    cache = FingerprintCache()
    worker = IndexingWorker(
        index,
        VaultContentSource(config.vault_root, config),
        embedder or FakeEmbedder(),
        cache,
        config,
    )
    return worker, index, cache


class TestIndexingWorker:
    """Tests for IndexingWorker.process()."""

    @pytest.mark.asyncio
    async def test_indexes_document(self, test_config, sample_vault):
        """A note becomes a record with extracted text and stamped metadata."""
        worker, index, cache = make_worker(test_config)

        await worker.process(QueueItem(key="finance/budget_report.md"))

        record = index.get("finance/budget_report.md")
        assert record is not None
        assert record.title == "budget report"
        assert record.content_preview.startswith("Budget report")
        assert "#" not in record.content_preview
        assert record.metadata.embedding_model == "test-model"
        assert record.metadata.source_path == "finance/budget_report.md"
        assert record.metadata.size_bytes == sample_vault["budget"].stat().st_size
        assert record.metadata.vectorized_at > 0

    @pytest.mark.asyncio
    async def test_refreshes_fingerprint(self, test_config, sample_vault):
        worker, _, cache = make_worker(test_config)
        content = VaultContentSource(test_config.vault_root, test_config)

        await worker.process(QueueItem(key="todo.md"))

        assert not cache.is_changed(content.stat("todo.md"))

    @pytest.mark.asyncio
    async def test_preview_is_bounded(self, test_config, vault_dir):
        test_config.preview_chars = 50
        (vault_dir / "long.md").write_text("word " * 500)
        worker, index, _ = make_worker(test_config)

        await worker.process(QueueItem(key="long.md"))

        assert len(index.get("long.md").content_preview) == 50

    @pytest.mark.asyncio
    async def test_embed_input_is_bounded(self, test_config, vault_dir):
        test_config.max_embed_chars = 100
        (vault_dir / "long.md").write_text("word " * 500)
        embedder = FakeEmbedder()
        worker, _, _ = make_worker(test_config, embedder)

        await worker.process(QueueItem(key="long.md"))

        assert len(embedder.calls[0]) <= 100

    @pytest.mark.asyncio
    async def test_empty_note_is_terminal(self, test_config, vault_dir):
        (vault_dir / "empty.md").write_text("```\nonly code\n```\n")
        worker, index, cache = make_worker(test_config)

        with pytest.raises(EmptyContentError) as excinfo:
            await worker.process(QueueItem(key="empty.md"))

        assert classify_error(excinfo.value) == ErrorAction.FAIL
        assert not index.exists("empty.md")
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_missing_document(self, test_config):
        worker, _, _ = make_worker(test_config)

        with pytest.raises(FileNotFoundError) as excinfo:
            await worker.process(QueueItem(key="nowhere.md"))

        assert classify_error(excinfo.value) == ErrorAction.FAIL

    @pytest.mark.asyncio
    async def test_embedding_timeout_is_retryable(self, test_config, sample_vault):
        test_config.embedding_timeout_seconds = 0.01
        worker, index, _ = make_worker(test_config, FakeEmbedder(delay=1.0))

        with pytest.raises(EmbeddingTimeoutError) as excinfo:
            await worker.process(QueueItem(key="todo.md"))

        assert classify_error(excinfo.value) == ErrorAction.RETRY
        assert not index.exists("todo.md")

    @pytest.mark.asyncio
    async def test_reindex_replaces_record(self, test_config, sample_vault):
        worker, index, _ = make_worker(test_config)
        await worker.process(QueueItem(key="todo.md"))
        first = index.get("todo.md")

        sample_vault["todo"].write_text("Completely different words now")
        await worker.process(QueueItem(key="todo.md"))

        second = index.get("todo.md")
        assert len(index) == 1
        assert "different" in second.content_preview
        assert not np.array_equal(first.vector, second.vector)

    @pytest.mark.asyncio
    async def test_uses_swapped_index(self, test_config, sample_vault):
        worker, old_index, _ = make_worker(test_config)
        worker.index = DocumentIndex(config=test_config)

        await worker.process(QueueItem(key="todo.md"))

        assert worker.index.exists("todo.md")
        assert not old_index.exists("todo.md")

    @pytest.mark.asyncio
    async def test_deleted_while_embedding_is_not_upserted(self, test_config, sample_vault):
        """A document removed during the embed call leaves no record behind."""
        worker, index, cache = make_worker(test_config, FakeEmbedder(delay=0.2))

        job = asyncio.ensure_future(worker.process(QueueItem(key="todo.md")))
        await asyncio.sleep(0.05)
        sample_vault["todo"].unlink()
        await job

        assert not index.exists("todo.md")
        assert cache.get("todo.md") is None
