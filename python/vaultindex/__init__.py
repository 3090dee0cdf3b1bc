"""
Vault Index - Incremental hybrid (keyword + vector) index for Markdown vaults.

Modules:
    - config: Centralized configuration
    - errors: Error policies and custom exceptions
    - models: Data types shared by every stage
    - debounce: Per-key debounce timers
    - fingerprint: xxHash mtime+size change detection
    - work_queue: Priority queue with retry and backoff
    - content: Vault document access
    - extractor: Markdown to plain text, tokenizer
    - embedder: HTTP (OpenAI-compatible) and local embedding providers
    - worker: Extract, embed and upsert one document
    - index: Document store with BM25 keyword and cosine vector search
    - fusion: Reciprocal Rank Fusion
    - persistence: Index snapshots and queue state
    - watcher: Real-time file change detection
    - service: Main entry point

Ingestion Flow:
    Change → Debounce → Fingerprint → Queue → Embed → Index → Snapshot

Usage:
    from vaultindex import IndexingService

    service = IndexingService()
    await service.start()
    await service.start_initial_indexing()
    hits = await service.search_hybrid("budget report")
"""

from .config import IndexerConfig, get_config, set_config
from .index import DocumentIndex
from .models import ChangeEvent, ChangeType, Priority, SearchHit
from .service import IndexingService
from .work_queue import WorkQueue

__all__ = [
    "ChangeEvent",
    "ChangeType",
    "DocumentIndex",
    "IndexerConfig",
    "IndexingService",
    "Priority",
    "SearchHit",
    "WorkQueue",
    "get_config",
    "set_config",
]
