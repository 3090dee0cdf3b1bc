"""
Content Source - Read-only access to the documents of a vault.

Documents are addressed by key: the POSIX path relative to the vault
root ("projects/plan.md"). Stat and listing are cheap and never read
file contents; read() runs off the event loop.
"""

import asyncio
import logging
import os
from pathlib import Path, PurePosixPath
from typing import List, Optional, Protocol

from .config import IndexerConfig, get_config
from .errors import handle_error
from .models import DocumentStat


logger = logging.getLogger(__name__)

SYSTEM_FILES = {".DS_Store", "Thumbs.db", "desktop.ini"}


class ContentSource(Protocol):
    """Where the worker gets document facts and text from."""

    def stat(self, key: str) -> Optional[DocumentStat]:
        ...

    async def read(self, key: str) -> str:
        ...

    def list_keys(self) -> List[str]:
        ...


def is_excluded(key: str, config: IndexerConfig) -> bool:
    """
    Check if a document key should never be indexed.

    Excludes hidden path parts, skip dirs, user-excluded folders,
    system files and extensions that are not indexed.
    """
    path = PurePosixPath(key)

    if path.name in SYSTEM_FILES:
        return True

    for part in path.parts:
        if part.startswith(".") or part in config.skip_dirs:
            return True

    for folder in config.excluded_folders:
        folder = folder.strip("/")
        if folder and (key == folder or key.startswith(folder + "/")):
            return True

    return path.suffix.lower() not in config.text_extensions


class VaultContentSource:
    """Documents stored as UTF-8 files under config.vault_root."""

    def __init__(self, root: Path | None = None, config: IndexerConfig | None = None):
        self.config = config or get_config()
        self.root = Path(root or self.config.vault_root).expanduser().resolve()

    def path_for(self, key: str) -> Path:
        return self.root / PurePosixPath(key)

    def stat(self, key: str) -> Optional[DocumentStat]:
        """Modification time and size, or None if the document is gone."""
        try:
            st = os.stat(self.path_for(key))
        except FileNotFoundError:
            return None
        if not os.path.isfile(self.path_for(key)):
            return None
        return DocumentStat(key=key, mtime=st.st_mtime, size=st.st_size)

    async def read(self, key: str) -> str:
        """
        Read a document as text.

        Raises:
            FileNotFoundError: document was deleted
            UnicodeDecodeError: not a UTF-8 text file
            OSError: any other I/O failure
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._read_sync, key)

    def _read_sync(self, key: str) -> str:
        return self.path_for(key).read_text(encoding="utf-8")

    def list_keys(self) -> List[str]:
        """All indexable document keys under the vault root, sorted."""
        if not self.root.exists():
            logger.warning(f"Vault root not found: {self.root}")
            return []

        keys: List[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root, onerror=self._on_walk_error):
            # Prune hidden and skipped directories in place
            dirnames[:] = [
                d for d in dirnames
                if not d.startswith(".") and d not in self.config.skip_dirs
            ]
            for name in filenames:
                key = Path(dirpath, name).relative_to(self.root).as_posix()
                if not is_excluded(key, self.config):
                    keys.append(key)

        keys.sort()
        logger.debug(f"Listed {len(keys)} documents under {self.root}")
        return keys

    def _on_walk_error(self, error: OSError) -> None:
        handle_error(error, error.filename, "list_keys")
