"""
Indexing Service - Main entry point for the vault index.

Owns one instance of every component and wires them together:

    Ingestion: ChangeSource -> Debouncer -> FingerprintCache -> WorkQueue
               -> IndexingWorker -> DocumentIndex -> IndexStore
    Retrieval: query -> DocumentIndex keyword/vector search -> RRF

Nothing is process-global: several services (one per vault) can run in
the same process.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Sequence

import numpy as np

from .config import IndexerConfig, get_config
from .content import ContentSource, VaultContentSource
from .debounce import Debouncer
from .embedder import DEFAULT_LOCAL_MODEL, EmbeddingProvider, HttpEmbeddingProvider, get_embedder
from .errors import EmbeddingTimeoutError, SnapshotFormatError, handle_error
from .extractor import title_from_key
from .fingerprint import FingerprintCache
from .index import DocumentIndex
from .models import ChangeEvent, ChangeType, FailureRecord, Priority, QueueProgress, SearchHit
from .persistence import FileStorage, IndexStore, QueueStateStore, Storage
from .watcher import FileSystemChangeSource
from .work_queue import QueueEventHandlers, WorkQueue
from .worker import IndexingWorker


logger = logging.getLogger(__name__)


class IndexingService:
    """
    Incremental hybrid index over one vault.

    Usage:
        service = IndexingService(config)
        await service.start(watch=True)
        await service.start_initial_indexing()
        hits = await service.search_hybrid("budget report")
        await service.stop()
    """

    def __init__(
        self,
        config: IndexerConfig | None = None,
        content: Optional[ContentSource] = None,
        embedder: Optional[EmbeddingProvider] = None,
        storage: Optional[Storage] = None,
        change_source: Optional[FileSystemChangeSource] = None,
        handlers: Optional[QueueEventHandlers] = None,
    ):
        self.config = config or get_config()

        self.content = content or VaultContentSource(self.config.vault_root, self.config)
        self._owns_embedder = embedder is None
        self.embedder = embedder or HttpEmbeddingProvider(self.config)

        if storage is None:
            index_storage = FileStorage(self.config.storage_dir, encoding=self.config.storage_encoding)
            queue_storage = FileStorage(self.config.storage_dir)
        else:
            index_storage = queue_storage = storage
        self.index_store = IndexStore(index_storage, self.config.index_snapshot_key, self.config)
        self.queue_store = QueueStateStore(queue_storage, self.config.queue_state_key)

        self.cache = FingerprintCache()
        self.debouncer = Debouncer(self.config.debounce_ms)
        self.index = DocumentIndex(dimension=self.config.dimension, config=self.config)
        self.worker = IndexingWorker(self.index, self.content, self.embedder, self.cache, self.config)
        self.queue = WorkQueue(self.worker.process, self.config, self.queue_store, handlers)

        self.change_source = change_source
        self._autosave_task: Optional[asyncio.Task] = None
        self._save_lock = asyncio.Lock()
        self._index_write: Optional[asyncio.Future] = None
        self._started = False

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def handle_change(self, event: ChangeEvent) -> None:
        """Route one change notification. Must run on the event loop thread."""
        if event.type in (ChangeType.CREATE, ChangeType.MODIFY):
            self._debounce_index(event.key)

        elif event.type == ChangeType.DELETE:
            self._forget(event.key)

        elif event.type == ChangeType.RENAME:
            old_key = event.old_key
            if old_key:
                self.debouncer.cancel(old_key)
                self.queue.discard(old_key)
                if self.index.rename(old_key, event.key, title=title_from_key(event.key)):
                    logger.info(f"Renamed in index: {old_key} -> {event.key}")
                self.cache.rename(old_key, event.key)
            self._debounce_index(event.key)

    def _debounce_index(self, key: str) -> None:
        self.debouncer.debounce(key, lambda: self._enqueue_if_changed(key))

    def _enqueue_if_changed(self, key: str) -> bool:
        stat = self.content.stat(key)
        if stat is None:
            logger.debug(f"Gone before indexing: {key}")
            return False
        if not self.cache.is_changed(stat):
            logger.debug(f"Unchanged, skipped: {key}")
            return False
        return self.queue.enqueue(key, Priority.LOW)

    def _forget(self, key: str) -> None:
        self.debouncer.cancel(key)
        self.queue.discard(key)
        if self.index.remove(key):
            logger.info(f"Removed from index: {key}")
        self.cache.remove(key)

    def index_now(self, key: str) -> bool:
        """Queue `key` at HIGH priority, ignoring the fingerprint cache."""
        self.debouncer.cancel(key)
        return self.queue.enqueue(key, Priority.HIGH)

    async def start_initial_indexing(self) -> int:
        """
        Bring the index in line with the vault.

        Queues every document that is not indexed, or whose mtime or size
        differs from the indexed record. Unchanged documents prime the
        fingerprint cache; indexed keys no longer in the vault are removed.

        Returns:
            Number of documents queued
        """
        loop = asyncio.get_running_loop()
        keys, stats = await loop.run_in_executor(None, self._scan_vault)

        queued = 0
        for key in keys:
            record = self.index.get(key)
            if record is not None:
                stat = stats.get(key)
                if stat is None:
                    continue
                meta = record.metadata
                if meta.last_modified == stat.mtime and meta.size_bytes == stat.size:
                    self.cache.update(stat)
                    continue
            if self.queue.enqueue(key, Priority.LOW):
                queued += 1

        present = set(keys)
        stale = [doc_id for doc_id in self.index.ids() if doc_id not in present]
        for doc_id in stale:
            self._forget(doc_id)
        if stale:
            logger.info(f"Removed {len(stale)} stale documents")

        logger.info(f"Initial indexing: {queued} of {len(keys)} documents queued")
        return queued

    def _scan_vault(self):
        """List the vault and stat every already-indexed key. Runs in a thread."""
        keys = self.content.list_keys()
        stats = {key: self.content.stat(key) for key in keys if self.index.exists(key)}
        return keys, stats

    async def rebuild_index(self, dimension: Optional[int] = None) -> int:
        """
        Destructive full rebuild, e.g. after switching embedding model.

        Drops the index, its snapshot, the fingerprint cache and all queued
        work, then queues every document again.
        """
        logger.info("Rebuilding index from scratch")

        self.debouncer.cancel_all()
        self.queue.clear()
        self.cache.clear()

        self.index = DocumentIndex(
            dimension=dimension if dimension is not None else self.config.dimension,
            config=self.config,
        )
        self.worker.index = self.index

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.index_store.delete)

        return await self.start_initial_indexing()

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def search_keyword(self, query: str, limit: int = 20) -> List[SearchHit]:
        return self.index.search_keyword(query, limit)

    def search_vector(self, vector: Sequence[float], limit: int = 10) -> List[SearchHit]:
        return self.index.search_vector(vector, limit)

    async def search_hybrid(
        self,
        query: str,
        vector: Optional[Sequence[float]] = None,
        limit: int = 10,
    ) -> List[SearchHit]:
        """Hybrid search; the query is embedded when no vector is given."""
        if vector is None:
            vector = await self._embed_query(query)
        return self.index.search_hybrid(query, vector, limit)

    async def search_semantic(self, query: str, limit: int = 10) -> List[SearchHit]:
        """Vector search for a text query."""
        vector = await self._embed_query(query)
        if vector is None:
            return []
        return self.index.search_vector(vector, limit)

    async def _embed_query(self, query: str) -> Optional[np.ndarray]:
        # Nothing to compare against; skip the provider call
        if not query.strip() or len(self.index) == 0:
            return None

        timeout = self.config.embedding_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.embedder.embed(query, self.config.embedding_model, timeout),
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingTimeoutError(timeout) from e

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def save_index(self) -> int:
        """
        Write an index snapshot off the event loop. Returns its size.

        One write at a time: a cancelled caller does not stop its thread,
        so the next save waits for that write to land first.
        """
        async with self._save_lock:
            if self._index_write is not None:
                await asyncio.gather(self._index_write, return_exceptions=True)

            loop = asyncio.get_running_loop()
            self._index_write = loop.run_in_executor(None, self.index_store.save, self.index)
            return await asyncio.shield(self._index_write)

    async def load_index(self) -> bool:
        """
        Replace the in-memory index with the saved snapshot.

        Returns False if there is no snapshot.

        Raises:
            SnapshotFormatError: snapshot is incompatible
        """
        loop = asyncio.get_running_loop()
        index = await loop.run_in_executor(None, self.index_store.load, self.config.dimension)
        if index is None:
            return False
        self.index = index
        self.worker.index = index
        return True

    def save_queue(self) -> int:
        self.queue.save()
        return len(self.queue)

    def load_queue(self) -> int:
        """Restore queued work, dropping documents that no longer exist."""
        return self.queue.load(exists=lambda key: self.content.stat(key) is not None)

    async def save(self) -> None:
        await self.save_index()
        self.save_queue()

    async def _autosave_loop(self) -> None:
        interval = self.config.autosave_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.save()
            except Exception as e:
                logger.error(f"Autosave failed: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, watch: bool = False) -> None:
        """
        Restore saved state and start processing.

        An incompatible snapshot is logged and discarded; the documents
        are then re-indexed by start_initial_indexing().
        """
        if self._started:
            return

        try:
            await self.load_index()
        except SnapshotFormatError as e:
            handle_error(e, self.config.index_snapshot_key, "load_index")

        self.load_queue()
        self.queue.start()

        if self.config.autosave_interval_seconds > 0:
            self._autosave_task = asyncio.get_running_loop().create_task(
                self._autosave_loop(), name="autosave"
            )

        if watch:
            if self.change_source is None:
                self.change_source = FileSystemChangeSource(self.config.vault_root, self.config)
            self.change_source.on_change(self.handle_change)
            self.change_source.start()

        self._started = True
        logger.info(f"Indexing service started ({len(self.index)} documents indexed)")

    async def stop(self) -> None:
        """Stop watching and processing, then save index and queue."""
        if self.change_source is not None:
            self.change_source.stop()
            self.change_source.off(self.handle_change)

        self.debouncer.cancel_all()

        if self._autosave_task is not None:
            self._autosave_task.cancel()
            await asyncio.gather(self._autosave_task, return_exceptions=True)
            self._autosave_task = None

        await self.queue.stop()
        # A service that never loaded the snapshot must not overwrite it
        if self._started:
            await self.save()

        if self._owns_embedder:
            await self.embedder.aclose()

        self._started = False
        logger.info("Indexing service stopped")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_progress(self) -> QueueProgress:
        return self.queue.get_progress()

    def get_failures(self) -> List[FailureRecord]:
        return self.queue.get_failures()

    def retry_failed(self) -> int:
        return self.queue.retry_failed()


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Incremental hybrid search index for a Markdown vault")
    parser.add_argument("root", help="Vault directory to index")
    parser.add_argument("--storage-dir", help="Where the index snapshot and queue state live")
    parser.add_argument("--watch", action="store_true", help="Watch for changes")
    parser.add_argument("--query", "-q", help="Run a hybrid search after indexing")
    parser.add_argument("--limit", type=int, default=10, help="Number of results")
    parser.add_argument("--local", action="store_true", help="Embed with sentence-transformers")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    config = IndexerConfig.from_env()
    config.vault_root = Path(args.root)
    if args.storage_dir:
        config.storage_dir = Path(args.storage_dir)
    if args.local:
        config.embedding_model = DEFAULT_LOCAL_MODEL
    config.__post_init__()

    async def _main():
        embedder = get_embedder(config, local=args.local)
        service = IndexingService(config, embedder=embedder)

        try:
            await service.start(watch=args.watch)
            queued = await service.start_initial_indexing()
            print(f"Queued {queued} documents")

            await service.queue.join()
            print(f"\n{service.get_progress()}")
            for failure in service.get_failures():
                print(f"  FAILED {failure.key}: {failure.last_error}")

            if args.query:
                hits = await service.search_hybrid(args.query, limit=args.limit)
                print(f"\nResults for {args.query!r}:")
                for rank, hit in enumerate(hits, 1):
                    print(f"{rank:3}. {hit.title}  [{hit.id}]  {hit.score:.4f}")

            if args.watch:
                print("\nWatching for changes (Ctrl+C to stop)...")
                await asyncio.Event().wait()
        finally:
            await service.stop()
            await embedder.aclose()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        print("\nStopped.")


if __name__ == "__main__":
    main()
