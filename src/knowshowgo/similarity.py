"""Vector and ranking helpers shared by the memory backends and the search layer."""
import math
from typing import List, Dict, Any, Optional, Iterable, Sequence

from src.knowshowgo.models import Node, SearchHit

# Score reported for a label substring match when no query embedding is available
TEXT_MATCH_SCORE = 0.5


def cosine(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def mean_embedding(
    embeddings: List[Sequence[float]],
    weights: Optional[List[float]] = None,
) -> Optional[List[float]]:
    """
    Element-wise (weighted) mean of vectors.

    Vectors whose dimension differs from the first one are skipped, so a
    mismatched association cannot corrupt the result.
    """
    if not embeddings:
        return None
    weights = weights if weights is not None else [1.0] * len(embeddings)
    dim = len(embeddings[0])
    total = [0.0] * dim
    weight_sum = 0.0
    for emb, w in zip(embeddings, weights):
        if not emb or len(emb) != dim:
            continue
        for i in range(dim):
            total[i] += emb[i] * w
        weight_sum += w
    if weight_sum == 0:
        return None
    return [x / weight_sum for x in total]


def matches_filters(node: Node, filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    for key, expected in filters.items():
        if key == "labels":
            if expected not in node.labels:
                return False
        elif key in ("kind", "status", "uuid"):
            if getattr(node, key) != expected:
                return False
        elif node.props.get(key) != expected:
            return False
    return True


def rank_nodes(
    candidates: Iterable[Node],
    query_text: str,
    top_k: int,
    query_embedding: Optional[Sequence[float]] = None,
    min_similarity: float = 0.0,
) -> List[SearchHit]:
    """
    Rank candidates against a query.

    With an embedding, candidates are scored by cosine similarity; otherwise a
    case-insensitive substring match on the label scores TEXT_MATCH_SCORE.
    Results under `min_similarity` are dropped before truncating to `top_k`.
    `sorted` is stable, so equal scores keep insertion order.
    """
    if top_k <= 0:
        return []
    hits: List[SearchHit] = []
    if query_embedding:
        for node in candidates:
            score = cosine(query_embedding, node.llm_embedding)
            if score >= min_similarity:
                hits.append(SearchHit(node=node, similarity=score))
        hits = sorted(hits, key=lambda h: h.similarity, reverse=True)
    else:
        needle = (query_text or "").lower()
        if TEXT_MATCH_SCORE < min_similarity:
            return []
        for node in candidates:
            if needle in str(node.label).lower():
                hits.append(SearchHit(node=node, similarity=TEXT_MATCH_SCORE))
    return hits[:top_k]
