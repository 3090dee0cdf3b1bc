"""
Test Configuration - Shared fixtures for vault index tests.

Uses pytest fixtures to create isolated vaults, configs and fake
collaborators (embedding provider, storage).
"""

import asyncio
import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional

import numpy as np
import pytest

from vaultindex.config import IndexerConfig, set_config
from vaultindex.models import DocumentMetadata, DocumentRecord
from vaultindex.persistence import MemoryStorage


DIMENSION = 8


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="vaultindex_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def vault_dir(temp_dir: Path) -> Path:
    vault = temp_dir / "vault"
    vault.mkdir()
    return vault


@pytest.fixture
def test_config(temp_dir: Path, vault_dir: Path) -> IndexerConfig:
    """Create an isolated test configuration with fast timings."""
    config = IndexerConfig(
        vault_root=vault_dir,
        storage_dir=temp_dir / "storage",
        concurrency_limit=2,
        max_retries=5,
        backoff_unit_seconds=0.001,
        idle_poll_ms=5,
        debounce_ms=20,
        embedding_model="test-model",
        embedding_timeout_seconds=2.0,
        autosave_interval_seconds=0,
    )
    set_config(config)
    return config


@pytest.fixture
def sample_vault(vault_dir: Path) -> Dict[str, Path]:
    """Create a small vault of Markdown notes."""
    files = {}

    budget = vault_dir / "finance" / "budget_report.md"
    budget.parent.mkdir(parents=True)
    budget.write_text("# Budget report\n\nQuarterly budget report with spending totals.\n")
    files["budget"] = budget

    recipe = vault_dir / "recipes" / "pancakes.md"
    recipe.parent.mkdir(parents=True)
    recipe.write_text("# Pancakes\n\nFlour, eggs, milk. Whisk and fry.\n")
    files["recipe"] = recipe

    todo = vault_dir / "todo.md"
    todo.write_text("- [ ] call the bank\n- [ ] renew passport\n")
    files["todo"] = todo

    # Should be skipped
    obsidian = vault_dir / ".obsidian"
    obsidian.mkdir()
    (obsidian / "workspace.md").write_text("internal")
    files["hidden"] = obsidian / "workspace.md"

    image = vault_dir / "diagram.png"
    image.write_bytes(b"\x89PNG")
    files["image"] = image

    return files


def text_vector(text: str, dimension: int = DIMENSION) -> np.ndarray:
    """Deterministic bag-of-words vector: similar texts give similar vectors."""
    vector = np.zeros(dimension, dtype=np.float32)
    for word in text.lower().split():
        vector[sum(word.encode()) % dimension] += 1.0
    if not vector.any():
        vector[0] = 1.0
    return vector


class FakeEmbedder:
    """
    Embedding provider stand-in.

    `failures` is a list of exceptions raised on successive calls before
    embeddings start succeeding.
    """

    def __init__(
        self,
        dimension: int = DIMENSION,
        failures: Optional[List[BaseException]] = None,
        delay: float = 0.0,
        vector_fn: Optional[Callable[[str], np.ndarray]] = None,
    ):
        self.dimension = dimension
        self.failures = list(failures or [])
        self.delay = delay
        self.vector_fn = vector_fn or (lambda text: text_vector(text, dimension))
        self.calls: List[str] = []

    async def embed(self, text, model=None, timeout_seconds=None):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return self.vector_fn(text)

    async def aclose(self):
        pass


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def memory_storage() -> MemoryStorage:
    return MemoryStorage()


def make_record(
    doc_id: str,
    content: str = "",
    vector=None,
    title: Optional[str] = None,
    last_modified: Optional[float] = None,
    model: str = "test-model",
) -> DocumentRecord:
    """Build a DocumentRecord with sensible defaults."""
    if vector is None:
        vector = text_vector(content or doc_id)
    return DocumentRecord(
        id=doc_id,
        title=title if title is not None else Path(doc_id).stem,
        content_preview=content,
        vector=vector,
        metadata=DocumentMetadata(
            source_path=doc_id,
            last_modified=last_modified if last_modified is not None else time.time(),
            size_bytes=len(content),
            vectorized_at=time.time(),
            embedding_model=model,
        ),
    )
