"""Greedy similarity clustering for spotting recurring patterns.

Used by ``memplane skills``: a cluster of near-duplicate memories that
keeps growing is a candidate for promotion into a durable rule.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

import numpy as np

from memplane.core.errors import DimensionMismatchError
from memplane.semantic._internal.similarity import cosine_similarity
from memplane.semantic.models import Clusterable, SimilarityCluster

EmbeddingLookup = Callable[[Clusterable], np.ndarray | None]

DEFAULT_CLUSTER_THRESHOLD = 0.6
DEFAULT_MIN_CLUSTER_SIZE = 5

TITLE_WEIGHT = 0.6
DESCRIPTION_WEIGHT = 0.4
TEXT_BLEND_WEIGHT = 0.4
EMBEDDING_BLEND_WEIGHT = 0.6


def _words(text: str | None) -> set[str]:
    if not text:
        return set()
    return {w for w in text.lower().split() if len(w) > 2}


def jaccard(a: set[str], b: set[str]) -> float:
    """Jaccard index; 0.0 when either set is empty."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def text_similarity(a: Clusterable, b: Clusterable) -> float:
    title = jaccard(_words(a.title), _words(b.title))
    description = jaccard(_words(a.description), _words(b.description))
    return TITLE_WEIGHT * title + DESCRIPTION_WEIGHT * description


def record_similarity(
    a: Clusterable,
    b: Clusterable,
    embedding_a: np.ndarray | None = None,
    embedding_b: np.ndarray | None = None,
) -> float:
    """Text score, blended with cosine similarity when both embeddings exist."""
    score = text_similarity(a, b)
    if embedding_a is None or embedding_b is None:
        return score
    try:
        cosine = cosine_similarity(embedding_a, embedding_b)
    except DimensionMismatchError:
        return score
    return TEXT_BLEND_WEIGHT * score + EMBEDDING_BLEND_WEIGHT * cosine


def cluster_memories(
    records: Sequence[Clusterable],
    threshold: float = DEFAULT_CLUSTER_THRESHOLD,
    embedding_of: EmbeddingLookup | None = None,
) -> list[SimilarityCluster]:
    """Group records greedily around the first unassigned record.

    Each record becomes a centroid in input order unless an earlier
    centroid already claimed it. Clusters come back largest first; equal
    sizes keep centroid order.
    """
    embeddings = [embedding_of(r) if embedding_of is not None else None for r in records]
    assigned = [False] * len(records)
    clusters: list[SimilarityCluster] = []

    for i, centroid in enumerate(records):
        if assigned[i]:
            continue
        assigned[i] = True
        members = [centroid]
        scores: list[float] = []
        for j in range(i + 1, len(records)):
            if assigned[j]:
                continue
            sim = record_similarity(centroid, records[j], embeddings[i], embeddings[j])
            if sim >= threshold:
                assigned[j] = True
                members.append(records[j])
                scores.append(sim)
        clusters.append(
            SimilarityCluster(
                centroid=centroid,
                members=members,
                label=centroid.title,
                score=sum(scores) / len(scores) if scores else 0.0,
            )
        )

    clusters.sort(key=lambda c: c.size, reverse=True)
    return clusters


def filter_skill_candidates(
    clusters: Sequence[SimilarityCluster],
    min_size: int = DEFAULT_MIN_CLUSTER_SIZE,
) -> list[SimilarityCluster]:
    """Clusters with at least ``min_size`` members."""
    return [c for c in clusters if c.size >= min_size]
