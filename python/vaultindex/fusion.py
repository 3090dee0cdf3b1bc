"""
Reciprocal Rank Fusion - merge ranked result lists by rank, not score.

Keyword relevance scores and cosine similarities live on different
scales, so only their ordering is used: an item at 0-based rank r in a
list adds weight / (k + r) to its total.
"""

from typing import Dict, List, Optional, Sequence

from .models import FusionCandidate, SearchHit


DEFAULT_RRF_K = 60


def reciprocal_rank_fusion(
    result_lists: Sequence[Sequence[SearchHit]],
    k: int = DEFAULT_RRF_K,
    weights: Optional[Sequence[float]] = None,
) -> List[FusionCandidate]:
    """
    Fuse several ranked lists into one.

    Args:
        result_lists: Lists of hits, each already sorted best-first
        k: RRF constant
        weights: Per-list weight; missing entries default to 1.0

    Returns:
        Candidates sorted by descending fused score. Ties keep the order
        in which ids were first seen.
    """
    weights = list(weights or [])
    while len(weights) < len(result_lists):
        weights.append(1.0)

    candidates: Dict[str, FusionCandidate] = {}

    for hits, weight in zip(result_lists, weights):
        for rank, hit in enumerate(hits):
            contribution = weight / (k + rank)
            candidate = candidates.get(hit.id)
            if candidate is None:
                candidates[hit.id] = FusionCandidate(
                    id=hit.id,
                    rrf_score=contribution,
                    source_ranks=[rank + 1],
                    hit=hit,
                )
            else:
                candidate.rrf_score += contribution
                candidate.source_ranks.append(rank + 1)

    # sorted() is stable, so equal scores keep first-seen order
    return sorted(candidates.values(), key=lambda c: c.rrf_score, reverse=True)


def fused_hits(candidates: Sequence[FusionCandidate]) -> List[SearchHit]:
    """Turn fusion candidates back into hits scored by their RRF score."""
    hits: List[SearchHit] = []
    for candidate in candidates:
        source = candidate.hit
        hits.append(SearchHit(
            id=candidate.id,
            score=candidate.rrf_score,
            title=source.title if source else "",
            content=source.content if source else "",
            metadata=source.metadata if source else None,
        ))
    return hits


def to_ranked(ids: Sequence[str]) -> List[SearchHit]:
    """Build a ranked list from bare ids (scores follow list order)."""
    total = len(ids)
    return [
        SearchHit(id=doc_id, score=float(total - i), title="", content="")
        for i, doc_id in enumerate(ids)
    ]
