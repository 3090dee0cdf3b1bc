"""
Indexing Configuration - Centralized settings for the vault index.

Uses environment variables with sensible defaults. Every component takes
an explicit config; get_config() only provides the process default.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set


@dataclass
class IndexerConfig:
    """
    Configuration for the indexing pipeline and search engine.

    Timings are in milliseconds where the name says so, otherwise seconds.
    """

    # --- Paths ---
    vault_root: Path = field(default_factory=lambda: Path.cwd())
    storage_dir: Path = field(default_factory=lambda: Path.home() / ".vaultindex")

    # --- Work Queue ---
    concurrency_limit: int = 2        # Parallel indexing jobs
    max_retries: int = 5              # Retryable failures before FAILED
    max_backoff_seconds: int = 60     # Cap for 2^retry_count
    backoff_unit_seconds: float = 1.0 # Length of one backoff step
    idle_poll_ms: int = 100           # Scheduler idle wait
    failure_ledger_size: int = 100    # Failed items kept for inspection

    # --- Watcher ---
    debounce_ms: int = 3000           # Quiet period before indexing an edit

    # --- Embedding ---
    embedding_model: str = "openai/text-embedding-ada-002"
    embedding_timeout_seconds: float = 60.0
    api_base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = ""
    max_embed_chars: int = 8000       # Text sent to the provider per document
    use_onnx: bool = False            # Local provider only

    # --- Index ---
    dimension: Optional[int] = None   # None: fixed by the first upsert
    preview_chars: int = 1000         # Stored content preview
    vector_preview_chars: int = 500   # Preview returned by vector search
    rrf_k: int = 60

    # --- Persistence ---
    autosave_interval_seconds: float = 30.0
    index_snapshot_key: str = "index-data.bin"
    queue_state_key: str = "queue-state.json"
    storage_encoding: str = "binary"  # "binary" or "base64"

    # --- Skip Patterns ---
    skip_dirs: Set[str] = field(default_factory=lambda: {
        ".obsidian", ".git", ".trash", ".vscode", ".idea",
        "node_modules", "__pycache__",
    })
    excluded_folders: List[str] = field(default_factory=list)
    text_extensions: Set[str] = field(default_factory=lambda: {".md"})

    def __post_init__(self):
        """Ensure paths are absolute."""
        self.vault_root = Path(self.vault_root).expanduser().resolve()
        self.storage_dir = Path(self.storage_dir).expanduser().resolve()

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        """
        Create config from environment variables.

        Supported env vars:
            VAULTINDEX_ROOT: Vault directory to index
            VAULTINDEX_STORAGE_DIR: Where snapshots and queue state live
            VAULTINDEX_CONCURRENCY: Parallel indexing jobs
            VAULTINDEX_MAX_RETRIES: Retry bound for transient failures
            VAULTINDEX_DEBOUNCE_MS: Debounce window for edits
            VAULTINDEX_EMBEDDING_MODEL: Embedding model name
            VAULTINDEX_TIMEOUT_SECONDS: Embedding request timeout
            VAULTINDEX_API_BASE_URL: OpenAI-compatible endpoint
            VAULTINDEX_API_KEY / OPENROUTER_API_KEY: Provider credentials
        """
        config = cls()

        if root := os.environ.get("VAULTINDEX_ROOT"):
            config.vault_root = Path(root)

        if storage_dir := os.environ.get("VAULTINDEX_STORAGE_DIR"):
            config.storage_dir = Path(storage_dir)

        if concurrency := os.environ.get("VAULTINDEX_CONCURRENCY"):
            config.concurrency_limit = int(concurrency)

        if retries := os.environ.get("VAULTINDEX_MAX_RETRIES"):
            config.max_retries = int(retries)

        if debounce := os.environ.get("VAULTINDEX_DEBOUNCE_MS"):
            config.debounce_ms = int(debounce)

        if model := os.environ.get("VAULTINDEX_EMBEDDING_MODEL"):
            config.embedding_model = model

        if timeout := os.environ.get("VAULTINDEX_TIMEOUT_SECONDS"):
            config.embedding_timeout_seconds = float(timeout)

        if base_url := os.environ.get("VAULTINDEX_API_BASE_URL"):
            config.api_base_url = base_url

        config.api_key = (
            os.environ.get("VAULTINDEX_API_KEY")
            or os.environ.get("OPENROUTER_API_KEY")
            or config.api_key
        )

        config.__post_init__()
        return config


# Process default, used only when a component is built without a config
_default_config: IndexerConfig | None = None


def get_config() -> IndexerConfig:
    """Get the default configuration."""
    global _default_config
    if _default_config is None:
        _default_config = IndexerConfig.from_env()
    return _default_config


def set_config(config: IndexerConfig) -> None:
    """Override the default configuration (for testing)."""
    global _default_config
    _default_config = config
