"""Semantic retrieval - embeddings, vector search and hybrid ranking.

This module provides:
- Embedding service: model isolated in a worker thread, lazy load, idle release
- Embedding store: one table per entity type, sqlite-vec index with exact fallback
- Migration runner: batched backfill of entities stored without a vector
- Hybrid ranking and similarity clustering

Public API is in `memplane.semantic.ops`.
Internal implementations are in `memplane.semantic._internal/`.
"""

from memplane.semantic._internal.clustering import cluster_memories, filter_skill_candidates
from memplane.semantic._internal.hybrid import merge_hybrid
from memplane.semantic._internal.similarity import (
    bytes_to_vector,
    cosine_similarity,
    vector_to_bytes,
)
from memplane.semantic._internal.storage import INTEGER_IDS, STRING_IDS, scope_to
from memplane.semantic.models import (
    EmbeddingRecord,
    EmbeddingServiceStatus,
    HybridSearchOptions,
    MatchSource,
    MigrationResult,
    SearchResult,
    SimilarityCluster,
    VectorMatch,
)
from memplane.semantic.ops import (
    SemanticIndex,
    agent_index,
    doc_index,
    embed,
    embed_batch,
    get_embedding_service,
    get_embeddings_status,
    get_semantic_index,
    is_embeddings_ready,
    memory_index,
    preload_embedding_service,
    reset_embedding_service,
    reset_indexes,
)

__all__ = [
    # Ops
    "SemanticIndex",
    "agent_index",
    "doc_index",
    "embed",
    "embed_batch",
    "get_embedding_service",
    "get_embeddings_status",
    "get_semantic_index",
    "is_embeddings_ready",
    "memory_index",
    "preload_embedding_service",
    "reset_embedding_service",
    "reset_indexes",
    # Algorithms
    "cluster_memories",
    "filter_skill_candidates",
    "merge_hybrid",
    "cosine_similarity",
    "bytes_to_vector",
    "vector_to_bytes",
    "scope_to",
    "INTEGER_IDS",
    "STRING_IDS",
    # Models
    "EmbeddingRecord",
    "EmbeddingServiceStatus",
    "HybridSearchOptions",
    "MatchSource",
    "MigrationResult",
    "SearchResult",
    "SimilarityCluster",
    "VectorMatch",
]
