"""
Index - In-memory document store with keyword and vector search.

Holds one DocumentRecord per document id, a BM25 inverted index over
title and content preview, and a lazily rebuilt float32 matrix for exact
cosine similarity. All reads and writes go through one lock per index,
so a reader never sees a half-replaced document.
"""

import functools
import logging
import math
import threading
from collections import Counter
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from .config import IndexerConfig, get_config
from .errors import DimensionMismatchError
from .extractor import tokenize
from .fusion import fused_hits, reciprocal_rank_fusion
from .models import DocumentMetadata, DocumentRecord, SearchHit


logger = logging.getLogger(__name__)

# BM25 parameters
BM25_K1 = 1.2
BM25_B = 0.75

# Scores closer than this are treated as equal in keyword ranking
SCORE_TIE_EPSILON = 0.001

MIN_VECTOR_LIMIT = 10
MAX_VECTOR_LIMIT = 100

Tokenizer = Callable[[str], List[str]]


class DocumentIndex:
    """
    Document store supporting exact lookup, keyword and vector search.

    The embedding dimension is fixed for the lifetime of an instance:
    either passed in or taken from the first upserted record. Switching
    embedding models means building a new index.
    """

    def __init__(
        self,
        dimension: Optional[int] = None,
        config: IndexerConfig | None = None,
        tokenizer: Tokenizer = tokenize,
    ):
        self.config = config or get_config()
        self._dimension = dimension
        self._tokenizer = tokenizer
        self._lock = threading.RLock()

        self._records: Dict[str, DocumentRecord] = {}
        self._term_freqs: Dict[str, Counter] = {}
        self._postings: Dict[str, Dict[str, int]] = {}
        self._total_length = 0

        self._matrix: Optional[np.ndarray] = None
        self._matrix_ids: List[str] = []

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def upsert(self, record: DocumentRecord) -> None:
        """
        Insert a record or fully replace the one with the same id.

        Raises:
            DimensionMismatchError: if the vector length differs from
                the index dimension
        """
        # Tokenize outside the lock; the swap below is the only critical part
        term_freqs = Counter(self._tokenizer(f"{record.title}\n{record.content_preview}"))

        with self._lock:
            if self._dimension is None:
                self._dimension = record.dimension
                logger.info(f"Index dimension fixed at {self._dimension}")
            elif record.dimension != self._dimension:
                raise DimensionMismatchError(self._dimension, record.dimension, record.id)

            self._drop_postings(record.id)
            self._records[record.id] = record
            self._add_postings(record.id, term_freqs)
            self._matrix = None

    def remove(self, doc_id: str) -> bool:
        """Delete by id. Returns False (not an error) if absent."""
        with self._lock:
            if doc_id not in self._records:
                return False
            self._drop_postings(doc_id)
            del self._records[doc_id]
            self._matrix = None
            return True

    def rename(
        self,
        old_id: str,
        new_id: str,
        title: Optional[str] = None,
        source_path: Optional[str] = None,
    ) -> bool:
        """
        Re-key a record without re-embedding it.

        Returns False if `old_id` is not indexed.
        """
        with self._lock:
            record = self._records.get(old_id)
            if record is None:
                return False

            meta = record.metadata
            renamed = DocumentRecord(
                id=new_id,
                title=title if title is not None else record.title,
                content_preview=record.content_preview,
                vector=record.vector,
                metadata=DocumentMetadata(
                    source_path=source_path or new_id,
                    last_modified=meta.last_modified,
                    size_bytes=meta.size_bytes,
                    vectorized_at=meta.vectorized_at,
                    embedding_model=meta.embedding_model,
                ),
            )
            self.remove(old_id)
            self.upsert(renamed)
            return True

    def clear(self) -> None:
        """Drop every record. The dimension stays fixed."""
        with self._lock:
            self._records.clear()
            self._term_freqs.clear()
            self._postings.clear()
            self._total_length = 0
            self._matrix = None

    def _add_postings(self, doc_id: str, term_freqs: Counter) -> None:
        self._term_freqs[doc_id] = term_freqs
        self._total_length += sum(term_freqs.values())
        for token, tf in term_freqs.items():
            self._postings.setdefault(token, {})[doc_id] = tf

    def _drop_postings(self, doc_id: str) -> None:
        term_freqs = self._term_freqs.pop(doc_id, None)
        if term_freqs is None:
            return
        self._total_length -= sum(term_freqs.values())
        for token in term_freqs:
            docs = self._postings.get(token)
            if docs is None:
                continue
            docs.pop(doc_id, None)
            if not docs:
                del self._postings[token]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def exists(self, doc_id: str) -> bool:
        """Exact-id membership."""
        with self._lock:
            return doc_id in self._records

    def get(self, doc_id: str) -> Optional[DocumentRecord]:
        with self._lock:
            return self._records.get(doc_id)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._records)

    def snapshot(self) -> List[DocumentRecord]:
        """
        Frozen list of the current records.

        Records are immutable, so the list can be serialized without
        holding the lock while writers carry on.
        """
        with self._lock:
            return list(self._records.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, doc_id: str) -> bool:
        return self.exists(doc_id)

    # ------------------------------------------------------------------
    # Keyword search
    # ------------------------------------------------------------------

    def search_keyword(self, query: str, limit: int = 20) -> List[SearchHit]:
        """
        AND-first keyword search.

        Documents containing every whitespace-separated term come first,
        ranked by average per-term BM25 score (near-equal scores fall back
        to most recently modified). Documents matching only some terms
        follow, newest first.
        """
        terms = query.split()
        if not terms or limit <= 0:
            return []

        with self._lock:
            if not self._records:
                return []

            per_term = [self._score_term(term) for term in terms]

            and_ids = set(per_term[0])
            for scores in per_term[1:]:
                and_ids &= set(scores)

            and_hits: List[SearchHit] = []
            or_hits: List[SearchHit] = []
            seen = set()

            for scores in per_term:
                for doc_id in scores:
                    if doc_id in seen:
                        continue
                    seen.add(doc_id)
                    average = sum(s.get(doc_id, 0.0) for s in per_term) / len(terms)
                    hit = SearchHit.from_record(self._records[doc_id], average)
                    if doc_id in and_ids:
                        and_hits.append(hit)
                    else:
                        or_hits.append(hit)

        and_hits.sort(key=functools.cmp_to_key(_compare_and_hits))
        or_hits.sort(key=_last_modified, reverse=True)

        return (and_hits + or_hits)[:limit]

    def _score_term(self, term: str) -> Dict[str, float]:
        """
        BM25 score of one query term for every document containing it.

        A term that tokenizes to several tokens must match all of them.
        Terms with no word characters are looked up literally.
        """
        tokens = self._tokenizer(term) or [term.lower()]

        matched: Optional[set] = None
        for token in tokens:
            docs = set(self._postings.get(token, ()))
            matched = docs if matched is None else matched & docs
            if not matched:
                return {}

        n_docs = len(self._records)
        avg_length = self._total_length / n_docs if n_docs else 0.0

        scores: Dict[str, float] = {}
        for doc_id in matched or ():
            doc_length = sum(self._term_freqs[doc_id].values())
            score = 0.0
            for token in tokens:
                postings = self._postings[token]
                tf = postings[doc_id]
                df = len(postings)
                idf = math.log(1.0 + (n_docs - df + 0.5) / (df + 0.5))
                norm = 1.0 - BM25_B + BM25_B * (doc_length / avg_length if avg_length else 0.0)
                score += idf * (tf * (BM25_K1 + 1.0)) / (tf + BM25_K1 * norm)
            scores[doc_id] = score
        return scores

    # ------------------------------------------------------------------
    # Vector search
    # ------------------------------------------------------------------

    def search_vector(self, vector: Sequence[float], limit: int = 10) -> List[SearchHit]:
        """
        Exact cosine-similarity search.

        `limit` is clamped to [10, 100]. Hits carry a shortened preview.

        Raises:
            DimensionMismatchError: if the query vector has the wrong length
        """
        limit = max(MIN_VECTOR_LIMIT, min(MAX_VECTOR_LIMIT, limit))
        query = np.asarray(vector, dtype=np.float32).reshape(-1)

        with self._lock:
            if not self._records:
                return []
            if query.shape[0] != self._dimension:
                raise DimensionMismatchError(self._dimension, query.shape[0])

            matrix, ids = self._get_matrix()
            records = [self._records[doc_id] for doc_id in ids]

        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            scores = np.zeros(len(ids), dtype=np.float32)
        else:
            scores = matrix @ (query / query_norm)

        if limit < len(scores):
            top = np.argpartition(-scores, limit - 1)[:limit]
            top = top[np.argsort(-scores[top], kind="stable")]
        else:
            top = np.argsort(-scores, kind="stable")

        preview_chars = self.config.vector_preview_chars
        return [
            SearchHit.from_record(records[i], float(scores[i]), preview_chars)
            for i in top
        ]

    def _get_matrix(self):
        """Row-normalised vector matrix, rebuilt after writes. Caller holds the lock."""
        if self._matrix is None:
            ids = list(self._records)
            matrix = np.vstack([self._records[doc_id].vector for doc_id in ids])
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0.0] = 1.0
            self._matrix = matrix / norms
            self._matrix_ids = ids
        return self._matrix, self._matrix_ids

    # ------------------------------------------------------------------
    # Hybrid search
    # ------------------------------------------------------------------

    def search_hybrid(
        self,
        query: str,
        vector: Optional[Sequence[float]],
        limit: int = 10,
    ) -> List[SearchHit]:
        """
        Keyword and vector search fused with RRF (k from config, 1:1 weights).

        Each side is searched with max(limit * 2, 20) candidates.
        """
        search_limit = max(limit * 2, 20)

        keyword_hits = self.search_keyword(query, search_limit)
        vector_hits = self.search_vector(vector, search_limit) if vector is not None else []

        fused = reciprocal_rank_fusion(
            [keyword_hits, vector_hits],
            k=self.config.rrf_k,
        )
        return fused_hits(fused[:limit])

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_records(
        cls,
        records: Iterable[DocumentRecord],
        dimension: Optional[int] = None,
        config: IndexerConfig | None = None,
    ) -> "DocumentIndex":
        index = cls(dimension=dimension, config=config)
        for record in records:
            index.upsert(record)
        return index


def _last_modified(hit: SearchHit) -> float:
    return hit.metadata.last_modified if hit.metadata else 0.0


def _compare_and_hits(a: SearchHit, b: SearchHit) -> int:
    if abs(a.score - b.score) > SCORE_TIE_EPSILON:
        return -1 if a.score > b.score else 1
    la, lb = _last_modified(a), _last_modified(b)
    if la == lb:
        return 0
    return -1 if la > lb else 1
