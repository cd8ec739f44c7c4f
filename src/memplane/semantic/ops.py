"""Public entry points for semantic storage and search.

This module owns the process-wide embedding service and a registry of
:class:`SemanticIndex` objects, one per (database, entity type). Callers
outside this package go through here:

- ``embed`` / ``embed_batch``: text to unit vectors
- ``SemanticIndex.store``: embed and persist, never raises
- ``SemanticIndex.search`` / ``semantic_search`` / ``hybrid_search``
- ``SemanticIndex.migrate``: backfill entities stored without a vector
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import numpy as np
import structlog

from memplane.config.constants import HYBRID_OVERFETCH, SEARCH_MAX_LIMIT
from memplane.config.loader import load_config
from memplane.config.models import EmbeddingConfig, MemplaneConfig
from memplane.core.errors import DimensionMismatchError, EmbeddingError
from memplane.semantic._internal.backends import BackendFactory
from memplane.semantic._internal.hybrid import EntityResolver, merge_hybrid
from memplane.semantic._internal.migration import (
    MigrationRunner,
    ProgressCallback,
    SqlEntitySource,
)
from memplane.semantic._internal.service import EmbeddingService
from memplane.semantic._internal.storage import (
    INTEGER_IDS,
    EmbeddingStore,
    IdSerializer,
    ScopeFilter,
)
from memplane.semantic.models import (
    Embeddable,
    EmbeddingRecord,
    EmbeddingServiceStatus,
    EntitySource,
    HybridSearchOptions,
    MigrationResult,
    SearchResult,
    VectorMatch,
)
from memplane.storage.models import Agent, DocSection, Memory

if TYPE_CHECKING:
    from sqlmodel import SQLModel

    from memplane.storage.database import Database

log = structlog.get_logger()

# =============================================================================
# Embedding service singleton
# =============================================================================

_service: EmbeddingService | None = None


def get_embedding_service(
    config: EmbeddingConfig | None = None,
    *,
    backend_factory: BackendFactory | None = None,
) -> EmbeddingService:
    """Process-wide embedding service, created on first call.

    Arguments only take effect on the call that creates the service.
    """
    global _service
    if _service is None:
        _service = EmbeddingService(
            config or load_config().embedding,
            backend_factory=backend_factory,
        )
    return _service


async def preload_embedding_service() -> None:
    """Start loading the model in the background."""
    await get_embedding_service().initialize_async()


def is_embeddings_ready() -> bool:
    return _service is not None and _service.ready


def get_embeddings_status() -> EmbeddingServiceStatus:
    if _service is None:
        return EmbeddingServiceStatus(ready=False, loading=False, error=None, worker_active=False)
    return _service.get_status()


async def reset_embedding_service() -> None:
    """Release the worker and forget the service and every index built on it."""
    global _service
    service, _service = _service, None
    _indexes.clear()
    if service is not None:
        await service.release()


async def embed(text: str) -> np.ndarray:
    """Unit-length embedding of ``text``."""
    return await get_embedding_service().generate_embedding(text)


async def embed_batch(texts: Sequence[str]) -> list[np.ndarray]:
    """Unit-length embeddings of ``texts``, in order."""
    return await get_embedding_service().generate_embeddings(texts)


# =============================================================================
# Per-entity-type facade
# =============================================================================


class SemanticIndex:
    """Embedding storage, backfill and search for one entity type."""

    def __init__(
        self,
        db: Database,
        entity_type: str,
        model: type[SQLModel],
        *,
        service: EmbeddingService | None = None,
        config: MemplaneConfig | None = None,
        ids: IdSerializer = INTEGER_IDS,
        source: EntitySource | None = None,
    ) -> None:
        config = config or MemplaneConfig()
        self._service = service or get_embedding_service(config.embedding)
        self._search_config = config.search
        self._auto_migrate = config.migration.auto_migrate
        self.entity_type = entity_type
        self.model = model
        self.embeddings = EmbeddingStore(
            db,
            entity_type,
            self._service,
            ids=ids,
            dimension=config.embedding.dimension,
            model_name=config.embedding.model_name,
            use_vector_index=config.storage.vector_index,
        )
        self._source = source or SqlEntitySource(db, model, self.embeddings)
        self.runner = MigrationRunner(
            self.embeddings, self._source, batch_size=config.migration.batch_size
        )

    # --- Storage ---

    async def store(self, entity_id: Any, text: str) -> bool:
        return await self.embeddings.store(entity_id, text)

    async def store_entity(self, entity: Embeddable) -> bool:
        return await self.embeddings.store(entity.entity_id, entity.embedding_text())

    def delete(self, entity_id: Any) -> None:
        self.embeddings.delete(entity_id)

    def has(self, entity_id: Any) -> bool:
        return self.embeddings.has(entity_id)

    def get(self, entity_id: Any) -> np.ndarray | None:
        return self.embeddings.get(entity_id)

    def get_all(self, scope: ScopeFilter | None = None) -> list[EmbeddingRecord]:
        return self.embeddings.get_all(scope)

    def count(self) -> int:
        return self.embeddings.count()

    def resolve(self, entity_id: Any) -> Embeddable | None:
        return self._source.fetch(entity_id)

    # --- Search ---

    def search(
        self,
        query_vector: np.ndarray | Sequence[float],
        *,
        limit: int | None = None,
        min_similarity: float | None = None,
        scope: ScopeFilter | None = None,
    ) -> list[VectorMatch]:
        return self.embeddings.search(
            query_vector,
            limit=self._limit(limit),
            min_similarity=(
                self._search_config.min_similarity if min_similarity is None else min_similarity
            ),
            scope=scope,
        )

    async def semantic_search(
        self,
        query: str,
        *,
        limit: int | None = None,
        min_similarity: float | None = None,
        scope: ScopeFilter | None = None,
    ) -> list[VectorMatch]:
        """Embed ``query`` and search. Empty when the model is unavailable or
        produces vectors of a different dimension than the stored ones.
        """
        vector = await self._embed_query(query)
        if vector is None:
            return []
        try:
            return self.search(vector, limit=limit, min_similarity=min_similarity, scope=scope)
        except DimensionMismatchError as e:
            log.warning(
                "semantic.search_dimension_mismatch",
                entity_type=self.entity_type,
                error=e.message,
            )
            return []

    async def hybrid_search(
        self,
        query: str,
        keyword_results: Sequence[SearchResult],
        *,
        options: HybridSearchOptions | None = None,
        scope: ScopeFilter | None = None,
        resolve: EntityResolver | None = None,
    ) -> list[SearchResult]:
        """Rank keyword hits together with semantic matches for ``query``.

        Degrades to the keyword list when the model is unavailable or its
        dimension does not match the stored vectors. Starts
        a background backfill the first time it runs when auto-migration is
        enabled.
        """
        options = options or HybridSearchOptions.from_config(self._search_config)
        vector = await self._embed_query(query)
        if vector is None:
            return list(keyword_results[: options.limit])

        if self._auto_migrate:
            self.runner.ensure_migrated()
        try:
            semantic = self.search(
                vector,
                limit=options.limit * HYBRID_OVERFETCH,
                min_similarity=options.min_similarity,
                scope=scope,
            )
        except DimensionMismatchError as e:
            log.warning(
                "semantic.search_dimension_mismatch",
                entity_type=self.entity_type,
                error=e.message,
            )
            return list(keyword_results[: options.limit])
        return merge_hybrid(keyword_results, semantic, options, resolve or self.resolve)

    async def _embed_query(self, query: str) -> np.ndarray | None:
        try:
            return await self._service.generate_embedding(query)
        except EmbeddingError as e:
            log.debug("semantic.query_embedding_failed", entity_type=self.entity_type, error=e.message)
            return None

    def _limit(self, limit: int | None) -> int:
        if limit is None:
            return self._search_config.default_limit
        return max(0, min(limit, SEARCH_MAX_LIMIT * HYBRID_OVERFETCH))

    # --- Backfill ---

    async def migrate(self, on_progress: ProgressCallback | None = None) -> MigrationResult:
        return await self.runner.migrate(on_progress)

    def ensure_migrated(self) -> None:
        self.runner.ensure_migrated()

    def get_missing_count(self) -> int:
        return self.runner.get_missing_count()


# =============================================================================
# Registry
# =============================================================================

_indexes: dict[tuple[str, str], SemanticIndex] = {}


def get_semantic_index(
    db: Database,
    entity_type: str,
    model: type[SQLModel],
    **kwargs: Any,
) -> SemanticIndex:
    """Shared index for ``entity_type`` in ``db``, created on first call."""
    key = (str(db.db_path), entity_type)
    index = _indexes.get(key)
    if index is None:
        if "config" not in kwargs:
            kwargs["config"] = load_config()
        index = SemanticIndex(db, entity_type, model, **kwargs)
        _indexes[key] = index
    return index


def memory_index(db: Database, **kwargs: Any) -> SemanticIndex:
    return get_semantic_index(db, "memory", Memory, **kwargs)


def doc_index(db: Database, **kwargs: Any) -> SemanticIndex:
    return get_semantic_index(db, "doc", DocSection, **kwargs)


def agent_index(db: Database, **kwargs: Any) -> SemanticIndex:
    return get_semantic_index(db, "agent", Agent, **kwargs)


def reset_indexes() -> None:
    """Forget every registered index (migration state included)."""
    _indexes.clear()
