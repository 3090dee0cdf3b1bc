"""
Indexing Worker - Turns one queued document into one index record.

stat -> read -> extract -> embed -> re-stat -> upsert -> refresh fingerprint.

This is the only stage that calls the embedding provider. Every
exception it raises goes back to the work queue, which decides whether
to retry.
"""

import asyncio
import errno
import logging
import time

from .config import IndexerConfig, get_config
from .content import ContentSource
from .embedder import EmbeddingProvider
from .errors import EmbeddingTimeoutError, EmptyContentError
from .extractor import chunk_text, extract_text_from_markdown, title_from_key
from .fingerprint import FingerprintCache
from .index import DocumentIndex
from .models import DocumentMetadata, DocumentRecord, QueueItem


logger = logging.getLogger(__name__)


class IndexingWorker:
    """
    Processing function for the work queue.

    `index` may be swapped for a fresh instance (full rebuild); the next
    job picks up the new one.
    """

    def __init__(
        self,
        index: DocumentIndex,
        content: ContentSource,
        embedder: EmbeddingProvider,
        cache: FingerprintCache,
        config: IndexerConfig | None = None,
    ):
        self.config = config or get_config()
        self.index = index
        self.content = content
        self.embedder = embedder
        self.cache = cache

    async def process(self, item: QueueItem) -> None:
        """
        Index the document behind `item`.

        Raises:
            FileNotFoundError: the document no longer exists
            EmptyContentError: no text left after extraction
            EmbeddingTimeoutError: provider exceeded the timeout
            Any provider or I/O error, unchanged
        """
        key = item.key

        # Stat before reading so a concurrent edit leaves the fingerprint stale
        stat = self.content.stat(key)
        if stat is None:
            raise FileNotFoundError(errno.ENOENT, "Document not found", key)

        raw = await self.content.read(key)
        text = extract_text_from_markdown(raw)
        if not text:
            raise EmptyContentError(key)

        vector = await self._embed(text)

        # Deleted or renamed away while embedding; the change handler has
        # already dropped it from the index
        if self.content.stat(key) is None:
            logger.debug(f"Gone during indexing, not upserted: {key}")
            return

        model = self.config.embedding_model
        record = DocumentRecord(
            id=key,
            title=title_from_key(key),
            content_preview=text[:self.config.preview_chars],
            vector=vector,
            metadata=DocumentMetadata(
                source_path=key,
                last_modified=stat.mtime,
                size_bytes=stat.size,
                vectorized_at=time.time(),
                embedding_model=model,
            ),
        )

        self.index.upsert(record)
        self.cache.update(stat)
        logger.debug(f"Upserted {key} ({len(text)} chars, dim={record.dimension})")

    async def _embed(self, text: str):
        """Embed the first chunk of `text` within the configured timeout."""
        max_chars = self.config.max_embed_chars
        embed_input = chunk_text(text, max_chars)[0][:max_chars]
        timeout = self.config.embedding_timeout_seconds

        try:
            return await asyncio.wait_for(
                self.embedder.embed(embed_input, self.config.embedding_model, timeout),
                timeout,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingTimeoutError(timeout) from e
