"""
Hybrid fusion of similarity and keyword hits.

Similarity scores follow the cosine + 1.0 convention (1.0 = orthogonal,
2.0 = identical) while keyword scores are unbounded relevance scores, so the two
are never compared for ordering on equal terms: a similarity hit above
STRONG_SIMILARITY is placed ahead of every keyword hit, and everything else is
ordered by raw score.
"""

from typing import Dict, Iterable, List, Optional, Sequence

from ..core.models import FusedResult, HitKind, SearchHit

STRONG_SIMILARITY = 1.3
HIGH_SIMILARITY = 1.4


def normalize_label(label: Optional[str]) -> str:
    return (label or "").strip().lower()


def similarity_percent(score: float) -> float:
    return round((score - 1.0) * 100, 1)


def _should_replace(stored: SearchHit, candidate: SearchHit, trust_strong_similarity: bool) -> bool:
    if (
        trust_strong_similarity
        and stored.kind == HitKind.SIMILARITY
        and candidate.kind == HitKind.KEYWORD
        and stored.score > STRONG_SIMILARITY
    ):
        return False
    return candidate.score > stored.score


def fuse(
    similarity_hits: Sequence[SearchHit],
    keyword_hits: Sequence[SearchHit],
    max_results: Optional[int] = None,
    trust_strong_similarity: bool = False,
) -> List[FusedResult]:
    """
    Merge both hit lists into one deduplicated, ranked list.

    Labels are compared case-insensitively after trimming; hits without a label
    are dropped. Per label the highest raw score wins (later hits only replace an
    earlier one when strictly greater). With `trust_strong_similarity`, a
    similarity hit above STRONG_SIMILARITY is kept even when a keyword hit for
    the same label scores higher numerically.
    """
    if max_results is not None and max_results < 0:
        raise ValueError("max_results must be >= 0")

    best: Dict[str, SearchHit] = {}
    for hit in list(similarity_hits) + list(keyword_hits):
        key = normalize_label(hit.label)
        if not key:
            continue
        stored = best.get(key)
        if stored is None or _should_replace(stored, hit, trust_strong_similarity):
            best[key] = hit

    fused = [
        FusedResult(
            label=hit.label.strip(),
            score=hit.score,
            kind=hit.kind,
            similarity_percent=similarity_percent(hit.score) if hit.kind == HitKind.SIMILARITY else None,
            raw=hit.raw,
        )
        for hit in best.values()
    ]
    fused.sort(key=_rank_key)

    if max_results is not None:
        fused = fused[:max_results]
    return fused


def _rank_key(result: FusedResult):
    strong = result.kind == HitKind.SIMILARITY and result.score > STRONG_SIMILARITY
    return (0 if strong else 1, -result.score, normalize_label(result.label))


def hybrid_confidence(
    fused: Sequence[FusedResult],
    similarity_hits: Iterable[SearchHit],
    keyword_hits: Iterable[SearchHit],
    entity_confidence: Optional[float] = None,
) -> float:
    """
    Confidence of the fused search: the extractor's confidence (0.5 when absent),
    +0.1 per high similarity match kept in the final list, +0.15 when both
    searches agreed on at least one label. 0.0 when nothing was found.
    """
    if not fused:
        return 0.0

    confidence = entity_confidence or 0.5
    confidence += 0.1 * sum(
        1 for r in fused if r.kind == HitKind.SIMILARITY and r.score > HIGH_SIMILARITY
    )

    similarity_labels = {normalize_label(h.label) for h in similarity_hits} - {""}
    keyword_labels = {normalize_label(h.label) for h in keyword_hits} - {""}
    if similarity_labels & keyword_labels:
        confidence += 0.15

    return min(confidence, 1.0)
