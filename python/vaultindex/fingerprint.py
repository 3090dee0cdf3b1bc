"""
Fingerprint Cache - Cheap change detection using xxHash.

A fingerprint is derived from modification time and size only, so
checking it never reads document content. Missing entries count as
changed: a cold cache re-indexes everything rather than skip new content.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import xxhash

from .models import DocumentStat


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FingerprintEntry:
    """Cached fingerprint for one document."""
    key: str
    mtime: int
    hash: str


def compute_fingerprint(stat: DocumentStat) -> str:
    """xxh64 of "<mtime_ns>-<size>"."""
    hasher = xxhash.xxh64()
    hasher.update(f"{_mtime_ns(stat.mtime)}-{stat.size}".encode("ascii"))
    return hasher.hexdigest()


def _mtime_ns(mtime: float) -> int:
    return int(round(mtime * 1_000_000_000))


class FingerprintCache:
    """
    In-memory fingerprint store keyed by document key.

    Owned by one indexing service; not shared between indexes.
    """

    def __init__(self):
        self._entries: Dict[str, FingerprintEntry] = {}

    def is_changed(self, stat: DocumentStat) -> bool:
        """True if there is no entry or the fingerprint differs."""
        cached = self._entries.get(stat.key)
        if cached is None:
            return True
        return cached.hash != compute_fingerprint(stat)

    def update(self, stat: DocumentStat) -> None:
        """Store the current fingerprint, replacing any previous entry."""
        self._entries[stat.key] = FingerprintEntry(
            key=stat.key,
            mtime=_mtime_ns(stat.mtime),
            hash=compute_fingerprint(stat),
        )

    def get(self, key: str) -> Optional[FingerprintEntry]:
        return self._entries.get(key)

    def remove(self, key: str) -> None:
        self._entries.pop(key, None)

    def rename(self, old_key: str, new_key: str) -> None:
        """Carry an entry over to a renamed document."""
        entry = self._entries.pop(old_key, None)
        if entry is not None:
            self._entries[new_key] = FingerprintEntry(
                key=new_key, mtime=entry.mtime, hash=entry.hash
            )

    def clear(self) -> None:
        self._entries.clear()
        logger.debug("Fingerprint cache cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
