"""Shared types for embedding storage, search, backfill and clustering."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    from memplane.config.models import SearchConfig


@runtime_checkable
class Embeddable(Protocol):
    """An entity that can be embedded and ranked."""

    @property
    def entity_id(self) -> Any: ...

    def embedding_text(self) -> str:
        """Text fed to the embedding model (truncated by the service)."""
        ...


class Clusterable(Embeddable, Protocol):
    """An entity with the fields clustering compares."""

    title: str
    description: str | None


class EntitySource(Protocol):
    """Where a migration runner finds entities lacking an embedding."""

    def count_missing(self) -> int: ...

    def fetch_missing_ids(self, limit: int, exclude: set[Any]) -> list[Any]: ...

    def fetch(self, entity_id: Any) -> Embeddable | None: ...


@dataclass(frozen=True, slots=True, eq=False)
class EmbeddingRecord:
    """One stored vector for one entity."""

    entity_id: Any
    vector: np.ndarray = field(repr=False)
    model: str
    created_at: datetime | None = None

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[0])


@dataclass(frozen=True, slots=True)
class VectorMatch:
    """A semantic candidate: entity id plus cosine similarity."""

    entity_id: Any
    similarity: float


class MatchSource(str, Enum):
    """Which retrieval path produced a search result."""

    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


@dataclass(slots=True)
class SearchResult:
    """A ranked entity.

    Keyword search hands these in with ``relevance`` holding the raw keyword
    score; hybrid ranking returns them with ``relevance`` on a 0..100 scale
    and the component scores filled in.
    """

    entity: Embeddable
    relevance: float
    source: MatchSource = MatchSource.KEYWORD
    bm25: float | None = None
    semantic: float | None = None

    @property
    def entity_id(self) -> Any:
        return self.entity.entity_id


@dataclass(frozen=True, slots=True)
class HybridSearchOptions:
    """Weights and cut-offs for hybrid ranking."""

    bm25_weight: float = 0.5
    semantic_weight: float = 0.5
    min_similarity: float = 0.3
    limit: int = 10

    @classmethod
    def from_config(cls, config: SearchConfig, **overrides: Any) -> HybridSearchOptions:
        values: dict[str, Any] = {
            "bm25_weight": config.bm25_weight,
            "semantic_weight": config.semantic_weight,
            "min_similarity": config.min_similarity,
            "limit": config.default_limit,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass(frozen=True, slots=True)
class MigrationResult:
    """Outcome of one backfill run."""

    processed: int
    total: int


@dataclass(slots=True)
class MigrationState:
    """Per-entity-type backfill state for the lifetime of the process."""

    complete: bool = False
    in_flight: asyncio.Task[MigrationResult] | None = None

    @property
    def running(self) -> bool:
        return self.in_flight is not None and not self.in_flight.done()


@dataclass(frozen=True, slots=True)
class EmbeddingServiceStatus:
    """Snapshot of the embedding worker pool."""

    ready: bool
    loading: bool
    error: str | None
    worker_active: bool
    last_used_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ready": self.ready,
            "loading": self.loading,
            "error": self.error,
            "worker_active": self.worker_active,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }


@dataclass(slots=True)
class SimilarityCluster:
    """A group of near-duplicate records around the first record seen."""

    centroid: Clusterable
    members: list[Clusterable]
    label: str
    score: float = 0.0

    @property
    def size(self) -> int:
        return len(self.members)

    @property
    def member_ids(self) -> Sequence[Any]:
        return [m.entity_id for m in self.members]
