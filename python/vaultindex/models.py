"""
Data Models - Type definitions for the indexing pipeline.

These dataclasses represent the data flowing between the change source,
the work queue, the index and the search layer.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


class ChangeType(Enum):
    """Type of document change."""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"


class Priority(Enum):
    """Queue priority. HIGH items always dispatch before LOW ones."""
    HIGH = "high"
    LOW = "low"


class QueueStatus(Enum):
    """Lifecycle state of a queue item."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ChangeEvent:
    """A change notification from the change source."""
    type: ChangeType
    key: str
    old_key: Optional[str] = None  # For RENAME events


@dataclass(frozen=True)
class DocumentStat:
    """
    Cheap facts about a document, available without reading it.

    This is what the fingerprint cache compares.
    """
    key: str
    mtime: float
    size: int


@dataclass
class QueueItem:
    """A pending or running indexing job."""
    key: str
    priority: Priority = Priority.LOW
    status: QueueStatus = QueueStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    added_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "key": self.key,
            "priority": self.priority.value,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "added_at": self.added_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueueItem":
        return cls(
            key=data["key"],
            priority=Priority(data.get("priority", Priority.LOW.value)),
            status=QueueStatus(data.get("status", QueueStatus.PENDING.value)),
            retry_count=int(data.get("retry_count", 0)),
            last_error=data.get("last_error"),
            added_at=float(data.get("added_at") or 0.0),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class QueueProgress:
    """Snapshot of queue counters."""
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    def __str__(self) -> str:
        return (
            f"{self.completed}/{self.total} indexed "
            f"({self.processing} processing, "
            f"{self.pending} pending, "
            f"{self.failed} failed)"
        )


@dataclass(frozen=True)
class FailureRecord:
    """Entry in the failure ledger."""
    key: str
    last_error: str
    retry_count: int
    failed_at: float


@dataclass(frozen=True)
class DocumentMetadata:
    """Metadata stamped on every indexed document."""
    source_path: str
    last_modified: float
    size_bytes: int
    vectorized_at: float
    embedding_model: str

    def to_dict(self) -> dict:
        return {
            "source_path": self.source_path,
            "last_modified": self.last_modified,
            "size_bytes": self.size_bytes,
            "vectorized_at": self.vectorized_at,
            "embedding_model": self.embedding_model,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DocumentMetadata":
        return cls(
            source_path=data["source_path"],
            last_modified=float(data["last_modified"]),
            size_bytes=int(data["size_bytes"]),
            vectorized_at=float(data["vectorized_at"]),
            embedding_model=data["embedding_model"],
        )


@dataclass(frozen=True, eq=False)
class DocumentRecord:
    """
    A document stored in the index.

    Records are never mutated after insertion; the index replaces them
    wholesale. The vector is kept as a read-only float32 array.
    """
    id: str
    title: str
    content_preview: str
    vector: np.ndarray
    metadata: DocumentMetadata

    def __post_init__(self):
        vector = np.array(self.vector, dtype=np.float32).reshape(-1)
        vector.setflags(write=False)
        object.__setattr__(self, "vector", vector)

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass
class SearchHit:
    """A single ranked search result."""
    id: str
    score: float
    title: str
    content: str
    metadata: Optional[DocumentMetadata] = None

    @classmethod
    def from_record(
        cls,
        record: DocumentRecord,
        score: float,
        preview_chars: Optional[int] = None,
    ) -> "SearchHit":
        content = record.content_preview
        if preview_chars is not None:
            content = content[:preview_chars]
        return cls(
            id=record.id,
            score=float(score),
            title=record.title,
            content=content,
            metadata=record.metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "title": self.title,
            "content": self.content,
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


@dataclass
class FusionCandidate:
    """Per-query RRF accumulator. Never persisted."""
    id: str
    rrf_score: float
    source_ranks: List[int] = field(default_factory=list)  # 1-based
    hit: Optional[SearchHit] = None
