"""
Persistence - Index snapshots and queue state on pluggable storage.

Storage is anything that can write, read, test and delete bytes under a
string key. Two formats live on top of it:

- Index snapshot: one msgpack blob with a magic tag, a format version,
  the vector dimension and every record (vectors as raw float32 bytes).
- Queue state: JSON {"version": 1, "items": [...]} holding pending and
  processing items only.

Both carry a version and are rejected when incompatible.
"""

import base64
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import msgpack
import numpy as np

from .config import IndexerConfig, get_config
from .errors import SnapshotFormatError
from .index import DocumentIndex
from .models import DocumentMetadata, DocumentRecord, QueueItem, QueueStatus


logger = logging.getLogger(__name__)

SNAPSHOT_MAGIC = "vaultindex-snapshot"
SNAPSHOT_FORMAT_VERSION = 1
QUEUE_STATE_VERSION = 1

VECTOR_DTYPE = np.dtype("<f4")


class Storage(Protocol):
    """Durable byte storage addressed by key."""

    def write_bytes(self, key: str, data: bytes) -> None:
        ...

    def read_bytes(self, key: str) -> Optional[bytes]:
        ...

    def exists(self, key: str) -> bool:
        ...

    def delete_bytes(self, key: str) -> None:
        ...


class FileStorage:
    """
    One file per key under a root directory.

    Writes go to a temporary file that is then renamed over the target,
    so readers see either the old or the new content. With
    encoding="base64" the bytes are stored as base64 text.
    """

    def __init__(self, root: Path, encoding: str = "binary"):
        if encoding not in ("binary", "base64"):
            raise ValueError(f"Unknown storage encoding: {encoding}")
        self.root = Path(root).expanduser()
        self.encoding = encoding

    def _path(self, key: str) -> Path:
        return self.root / key

    def write_bytes(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)

        if self.encoding == "base64":
            data = base64.b64encode(data)

        # Unique temp name per write so concurrent writers never share one
        with tempfile.NamedTemporaryFile(
            dir=path.parent, prefix=f"{path.name}.", suffix=".tmp", delete=False
        ) as f:
            tmp_path = f.name
            try:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            except BaseException:
                f.close()
                os.unlink(tmp_path)
                raise
        os.replace(tmp_path, path)

    def read_bytes(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return None

        if self.encoding == "base64":
            return base64.b64decode(data)
        return data

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete_bytes(self, key: str) -> None:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            pass


class MemoryStorage:
    """Storage kept in a dict. For tests and hosts without a filesystem."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    def write_bytes(self, key: str, data: bytes) -> None:
        self.blobs[key] = bytes(data)

    def read_bytes(self, key: str) -> Optional[bytes]:
        return self.blobs.get(key)

    def exists(self, key: str) -> bool:
        return key in self.blobs

    def delete_bytes(self, key: str) -> None:
        self.blobs.pop(key, None)


# ----------------------------------------------------------------------
# Index snapshot
# ----------------------------------------------------------------------

def save_index_snapshot(index: DocumentIndex) -> bytes:
    """
    Encode the index as a versioned msgpack blob.

    Works on index.snapshot(), so writers are only blocked while the
    record list is copied, not while it is encoded.
    """
    records = index.snapshot()

    payload = {
        "magic": SNAPSHOT_MAGIC,
        "format_version": SNAPSHOT_FORMAT_VERSION,
        "dimension": index.dimension,
        "saved_at": time.time(),
        "embedding_models": sorted({r.metadata.embedding_model for r in records}),
        "records": [
            {
                "id": r.id,
                "title": r.title,
                "content_preview": r.content_preview,
                "vector": r.vector.astype(VECTOR_DTYPE, copy=False).tobytes(),
                "metadata": r.metadata.to_dict(),
            }
            for r in records
        ],
    }
    return msgpack.packb(payload, use_bin_type=True)


def load_index_snapshot(
    blob: bytes,
    dimension: Optional[int] = None,
    config: IndexerConfig | None = None,
) -> DocumentIndex:
    """
    Restore an index from a snapshot blob.

    Args:
        blob: Bytes produced by save_index_snapshot
        dimension: Required dimension; None accepts the stored one

    Raises:
        SnapshotFormatError: unreadable blob, wrong tag or version, or a
            dimension different from the requested one
    """
    try:
        payload = msgpack.unpackb(blob, raw=False)
    except (msgpack.UnpackException, ValueError, TypeError) as e:
        raise SnapshotFormatError(f"Unreadable index snapshot: {e}") from e

    if not isinstance(payload, dict) or payload.get("magic") != SNAPSHOT_MAGIC:
        raise SnapshotFormatError("Not an index snapshot")

    version = payload.get("format_version")
    if version != SNAPSHOT_FORMAT_VERSION:
        raise SnapshotFormatError(
            f"Unsupported snapshot version {version} (expected {SNAPSHOT_FORMAT_VERSION})"
        )

    stored_dimension = payload.get("dimension")
    if dimension is not None and stored_dimension is not None and stored_dimension != dimension:
        raise SnapshotFormatError(
            f"Snapshot dimension {stored_dimension} does not match required {dimension}"
        )

    index = DocumentIndex(dimension=dimension or stored_dimension, config=config)

    try:
        for raw in payload.get("records", []):
            vector = np.frombuffer(raw["vector"], dtype=VECTOR_DTYPE)
            if stored_dimension is not None and vector.shape[0] != stored_dimension:
                raise SnapshotFormatError(
                    f"Record {raw['id']} has {vector.shape[0]} dimensions, "
                    f"snapshot declares {stored_dimension}"
                )
            index.upsert(DocumentRecord(
                id=raw["id"],
                title=raw["title"],
                content_preview=raw["content_preview"],
                vector=vector,
                metadata=DocumentMetadata.from_dict(raw["metadata"]),
            ))
    except SnapshotFormatError:
        raise
    except (KeyError, TypeError, ValueError) as e:
        raise SnapshotFormatError(f"Corrupt snapshot record: {e}") from e

    return index


class IndexStore:
    """Index snapshot under one storage key."""

    def __init__(
        self,
        storage: Storage,
        key: str = "index-data.bin",
        config: IndexerConfig | None = None,
    ):
        self.storage = storage
        self.key = key
        self.config = config or get_config()

    def save(self, index: DocumentIndex) -> int:
        """Write a snapshot. Returns its size in bytes."""
        start = time.monotonic()
        blob = save_index_snapshot(index)
        self.storage.write_bytes(self.key, blob)
        logger.info(
            f"Saved index snapshot: {len(index)} documents, "
            f"{len(blob)} bytes in {time.monotonic() - start:.2f}s"
        )
        return len(blob)

    def load(self, dimension: Optional[int] = None) -> Optional[DocumentIndex]:
        """Restore the saved index, or None if nothing was saved."""
        blob = self.storage.read_bytes(self.key)
        if blob is None:
            return None
        index = load_index_snapshot(blob, dimension, self.config)
        logger.info(f"Loaded index snapshot: {len(index)} documents (dim={index.dimension})")
        return index

    def exists(self) -> bool:
        return self.storage.exists(self.key)

    def delete(self) -> None:
        self.storage.delete_bytes(self.key)


# ----------------------------------------------------------------------
# Queue state
# ----------------------------------------------------------------------

class QueueStateStore:
    """Pending and processing queue items as versioned JSON."""

    RESUMABLE = (QueueStatus.PENDING, QueueStatus.PROCESSING)

    def __init__(self, storage: Storage, key: str = "queue-state.json"):
        self.storage = storage
        self.key = key

    def save(self, items: List[QueueItem]) -> int:
        """Write resumable items. Returns how many were written."""
        resumable = [item for item in items if item.status in self.RESUMABLE]
        state = {
            "version": QUEUE_STATE_VERSION,
            "saved_at": time.time(),
            "items": [item.to_dict() for item in resumable],
        }
        self.storage.write_bytes(self.key, json.dumps(state).encode("utf-8"))
        logger.debug(f"Saved queue state: {len(resumable)} items")
        return len(resumable)

    def load(self) -> List[QueueItem]:
        """
        Read saved items.

        Missing, unreadable or incompatible state yields an empty list.
        """
        data = self.storage.read_bytes(self.key)
        if data is None:
            return []

        try:
            state = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable queue state: {e}")
            return []

        if not isinstance(state, dict) or state.get("version") != QUEUE_STATE_VERSION:
            logger.warning("Queue state version mismatch, ignoring saved queue")
            return []

        items: List[QueueItem] = []
        for raw in state.get("items", []):
            try:
                item = QueueItem.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid queue item: {e}")
                continue
            if item.status in self.RESUMABLE:
                items.append(item)
        return items

    def clear(self) -> None:
        self.storage.delete_bytes(self.key)
