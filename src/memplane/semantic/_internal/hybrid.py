"""Merge keyword and vector results into one ranking."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

from memplane.semantic.models import (
    Embeddable,
    HybridSearchOptions,
    MatchSource,
    SearchResult,
    VectorMatch,
)

EntityResolver = Callable[[Any], Embeddable | None]


def merge_hybrid(
    keyword_results: Sequence[SearchResult],
    semantic_results: Sequence[VectorMatch],
    options: HybridSearchOptions | None = None,
    resolve: EntityResolver | None = None,
) -> list[SearchResult]:
    """Combine keyword relevance and cosine similarity.

    Keyword scores are divided by the best keyword score so the top keyword
    hit scores 1.0. Semantic matches at or above ``min_similarity`` either
    attach to the keyword entry for the same entity or, when ``resolve`` can
    materialise the entity, become semantic-only entries. Final relevance is
    ``(bm25 * bm25_weight + semantic * semantic_weight) * 100``, sorted
    descending with ties kept in input order.

    With no semantic results the keyword list comes back unchanged apart
    from truncation. With ``semantic_weight == 0`` the keyword order is
    preserved exactly.
    """
    options = options or HybridSearchOptions()
    limit = max(0, options.limit)
    if not semantic_results:
        return list(keyword_results[:limit])

    max_score = max((r.relevance for r in keyword_results), default=0.0)
    scale = max_score if max_score > 0 else 1.0

    merged: dict[Any, SearchResult] = {}
    order: list[Any] = []
    for result in keyword_results:
        key = result.entity_id
        if key in merged:
            continue
        merged[key] = SearchResult(
            entity=result.entity,
            relevance=0.0,
            source=MatchSource.KEYWORD,
            bm25=result.relevance / scale,
            semantic=None,
        )
        order.append(key)

    for match in semantic_results:
        if match.similarity < options.min_similarity:
            continue
        existing = merged.get(match.entity_id)
        if existing is not None:
            if existing.semantic is None or match.similarity > existing.semantic:
                existing.semantic = match.similarity
                existing.source = MatchSource.HYBRID
            continue
        entity = resolve(match.entity_id) if resolve is not None else None
        if entity is None:
            continue
        merged[match.entity_id] = SearchResult(
            entity=entity,
            relevance=0.0,
            source=MatchSource.SEMANTIC,
            bm25=0.0,
            semantic=match.similarity,
        )
        order.append(match.entity_id)

    results = [merged[key] for key in order]
    for r in results:
        bm25 = (r.bm25 or 0.0) * options.bm25_weight
        semantic = (r.semantic or 0.0) * options.semantic_weight
        r.relevance = (bm25 + semantic) * 100

    if options.semantic_weight == 0:
        keyword_only = [r for r in results if r.source is not MatchSource.SEMANTIC]
        return keyword_only[:limit]

    # sorted() is stable, so ties keep input order
    results = sorted(results, key=lambda r: r.relevance, reverse=True)
    return results[:limit]
