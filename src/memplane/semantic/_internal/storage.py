"""Generic per-entity-type embedding store.

One ``<entity_type>_embeddings`` table per entity type, keyed by the host
entity's id. Writes are single-statement upserts. When sqlite-vec is
available every write is mirrored into a :class:`VectorIndex`; the mirror
is best-effort and a failed mirror only marks the index for rebuild.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import numpy as np
import structlog
from sqlalchemy import (
    Column,
    ColumnElement,
    DateTime,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    func,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeEngine

from memplane.config.constants import ENTITY_TYPE_PATTERN, KNN_OVERFETCH
from memplane.core.errors import (
    ConfigError,
    DimensionMismatchError,
    EmbeddingError,
    StorageError,
    StorageWriteFailedError,
    VectorIndexError,
)
from memplane.semantic._internal.similarity import (
    bytes_to_vector,
    cosine_similarities,
    normalize,
    validate_dimension,
    vector_to_bytes,
)
from memplane.semantic._internal.vector_index import VectorIndex, distance_to_similarity
from memplane.semantic.models import EmbeddingRecord, VectorMatch

if TYPE_CHECKING:
    from sqlalchemy import Connection

    from memplane.semantic._internal.service import EmbeddingService
    from memplane.storage.database import Database

log = structlog.get_logger()

_ENTITY_TYPE_RE = re.compile(ENTITY_TYPE_PATTERN)

# Scoped k-NN queries lose candidates to the scope filter
_SCOPED_OVERFETCH = 4

ScopeFilter = Callable[[Table], ColumnElement[bool]]
"""Restricts a query on an embeddings table, e.g. to one project's entities."""


@dataclass(frozen=True, slots=True)
class IdSerializer:
    """How entity ids are stored and read back."""

    name: str
    column_type: Callable[[], TypeEngine[Any]]
    sql_type: str
    to_db: Callable[[Any], Any]
    from_db: Callable[[Any], Any]


INTEGER_IDS = IdSerializer("integer", Integer, "INTEGER", int, int)
STRING_IDS = IdSerializer("string", String, "TEXT", str, str)

_metadata = MetaData()
_tables: dict[str, tuple[Table, IdSerializer]] = {}


def embeddings_table(entity_type: str, ids: IdSerializer = INTEGER_IDS) -> Table:
    """Table definition for ``<entity_type>_embeddings``.

    Raises:
        ConfigError: If the entity type is not a safe identifier, or was
            already registered with a different id type.
    """
    if not _ENTITY_TYPE_RE.match(entity_type):
        raise ConfigError.invalid_value(
            "entity_type", entity_type, f"must match {ENTITY_TYPE_PATTERN}"
        )
    name = f"{entity_type}_embeddings"
    cached = _tables.get(name)
    if cached is not None:
        table, registered = cached
        if registered.name != ids.name:
            raise ConfigError.invalid_value(
                "entity_type",
                entity_type,
                f"already registered with {registered.name} ids",
            )
        return table

    table = Table(
        name,
        _metadata,
        Column("entity_id", ids.column_type(), primary_key=True),
        Column("embedding", LargeBinary, nullable=False),
        Column("model", String, nullable=False),
        Column("created_at", DateTime, nullable=False),
    )
    _tables[name] = (table, ids)
    return table


def scope_to(model: Any, column: str, value: Any) -> ScopeFilter:
    """Scope filter keeping entities whose ``model.column == value``.

    Example::

        store.search(query, scope=scope_to(Memory, "project", "billing"))
    """
    host = model.__table__
    pk = next(iter(host.primary_key.columns))
    restricted = select(pk).where(host.c[column] == value)

    def _filter(table: Table) -> ColumnElement[bool]:
        return table.c.entity_id.in_(restricted)

    return _filter


class EmbeddingStore:
    """Embeddings for one entity type, plus search over them."""

    def __init__(
        self,
        db: Database,
        entity_type: str,
        service: EmbeddingService,
        *,
        ids: IdSerializer = INTEGER_IDS,
        dimension: int | None = None,
        model_name: str | None = None,
        use_vector_index: bool = True,
    ) -> None:
        self._db = db
        self.entity_type = entity_type
        self._service = service
        self._ids = ids
        self.dimension = dimension or service.dimension
        self.model_name = model_name or service.model_name
        self.table = embeddings_table(entity_type, ids)
        self.table.create(db.engine, checkfirst=True)
        self._index: VectorIndex | None = (
            VectorIndex(db, entity_type, self.dimension, ids.sql_type) if use_vector_index else None
        )
        self._index_checked = False

    @property
    def ids(self) -> IdSerializer:
        return self._ids

    @property
    def index_available(self) -> bool:
        return self._index is not None and self._index.available

    # --- Writes ---

    async def store(self, entity_id: Any, text: str) -> bool:
        """Embed ``text`` and upsert it for ``entity_id``.

        Never raises: embedding and storage failures are logged and
        reported as ``False`` so record creation is never blocked.
        """
        try:
            vector = await self._service.generate_embedding(text)
            await asyncio.get_running_loop().run_in_executor(
                None, self._write, [(entity_id, vector)]
            )
        except (EmbeddingError, StorageError) as e:
            log.warning(
                "semantic.store_failed",
                entity_type=self.entity_type,
                entity_id=entity_id,
                error=e.message,
            )
            return False
        return True

    def store_vector(self, entity_id: Any, vector: np.ndarray | Sequence[float]) -> bool:
        """Upsert a precomputed vector, normalised. False on a bad dimension or write failure."""
        try:
            self._write([(entity_id, normalize(vector))])
        except (EmbeddingError, StorageError) as e:
            log.warning(
                "semantic.store_failed",
                entity_type=self.entity_type,
                entity_id=entity_id,
                error=e.message,
            )
            return False
        return True

    async def store_many(self, items: Sequence[tuple[Any, str]]) -> int:
        """Embed and upsert several entities in one round trip.

        Returns the number stored (0 when the batch failed).
        """
        if not items:
            return 0
        try:
            vectors = await self._service.generate_embeddings([t for _, t in items])
            rows = [(eid, v) for (eid, _), v in zip(items, vectors, strict=True)]
            await asyncio.get_running_loop().run_in_executor(None, self._write, rows)
        except (EmbeddingError, StorageError) as e:
            log.warning(
                "semantic.store_many_failed",
                entity_type=self.entity_type,
                count=len(items),
                error=e.message,
            )
            return 0
        return len(items)

    def _write(self, items: Sequence[tuple[Any, np.ndarray]]) -> None:
        rows = []
        now = datetime.now(UTC)
        for entity_id, vector in items:
            validate_dimension(vector, self.dimension)
            rows.append(
                {
                    "entity_id": self._ids.to_db(entity_id),
                    "embedding": vector_to_bytes(vector),
                    "model": self.model_name,
                    "created_at": now,
                }
            )

        stmt = sqlite_insert(self.table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[self.table.c.entity_id],
            set_={
                "embedding": stmt.excluded.embedding,
                "model": stmt.excluded.model,
                "created_at": stmt.excluded.created_at,
            },
        )
        try:
            self._db.write(lambda conn: conn.execute(stmt, rows))
        except SQLAlchemyError as e:
            target = rows[0]["entity_id"] if len(rows) == 1 else f"{len(rows)} entities"
            raise StorageWriteFailedError.for_entity(self.entity_type, target, str(e)) from e

        def _mirror_rows(conn: Connection) -> None:
            assert self._index is not None
            for row in rows:
                self._index.upsert(conn, row["entity_id"], row["embedding"])

        self._mirror(_mirror_rows)

    def _mirror(self, fn: Callable[[Connection], Any]) -> None:
        if not self.index_available:
            return
        try:
            self._db.write(fn)
        except SQLAlchemyError as e:
            # Embeddings table is the source of truth; resync on next search
            self._index_checked = False
            log.warning("vector_index.mirror_failed", entity_type=self.entity_type, error=str(e))

    def delete(self, entity_id: Any) -> None:
        key = self._ids.to_db(entity_id)
        try:
            self._db.write(
                lambda conn: conn.execute(self.table.delete().where(self.table.c.entity_id == key))
            )
        except SQLAlchemyError as e:
            raise StorageWriteFailedError.for_entity(self.entity_type, entity_id, str(e)) from e
        self._mirror(lambda conn: self._index.delete(conn, key) if self._index else None)

    # --- Reads ---

    def has(self, entity_id: Any) -> bool:
        key = self._ids.to_db(entity_id)
        with self._db.engine.connect() as conn:
            row = conn.execute(
                select(self.table.c.entity_id).where(self.table.c.entity_id == key)
            ).first()
        return row is not None

    def get(self, entity_id: Any) -> np.ndarray | None:
        """Stored vector, or None when missing or of the wrong dimension."""
        key = self._ids.to_db(entity_id)
        with self._db.engine.connect() as conn:
            blob = conn.execute(
                select(self.table.c.embedding).where(self.table.c.entity_id == key)
            ).scalar_one_or_none()
        if blob is None:
            return None
        return self._decode(key, blob)

    def get_all(self, scope: ScopeFilter | None = None) -> list[EmbeddingRecord]:
        """Every valid record, optionally restricted by ``scope``."""
        query = select(
            self.table.c.entity_id,
            self.table.c.embedding,
            self.table.c.model,
            self.table.c.created_at,
        )
        if scope is not None:
            query = query.where(scope(self.table))
        with self._db.engine.connect() as conn:
            rows = conn.execute(query).all()

        records = []
        for entity_id, blob, model, created_at in rows:
            vector = self._decode(entity_id, blob)
            if vector is not None:
                records.append(
                    EmbeddingRecord(self._ids.from_db(entity_id), vector, model, created_at)
                )
        return records

    def count(self) -> int:
        with self._db.engine.connect() as conn:
            return int(conn.execute(select(func.count()).select_from(self.table)).scalar_one())

    def _decode(self, entity_id: Any, blob: bytes) -> np.ndarray | None:
        try:
            vector = bytes_to_vector(blob)
            validate_dimension(vector, self.dimension)
        except DimensionMismatchError as e:
            log.debug(
                "semantic.invalid_embedding",
                entity_type=self.entity_type,
                entity_id=entity_id,
                error=e.message,
            )
            return None
        return vector

    # --- Search ---

    def search(
        self,
        query_vector: np.ndarray | Sequence[float],
        *,
        limit: int = 10,
        min_similarity: float = 0.3,
        scope: ScopeFilter | None = None,
    ) -> list[VectorMatch]:
        """Entities most similar to ``query_vector``, best first.

        Uses the k-NN index when available and falls back to an exact scan
        when it is not or when the index query fails.

        Raises:
            DimensionMismatchError: If the query has the wrong dimension.
        """
        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        validate_dimension(query, self.dimension)
        if limit <= 0:
            return []

        if self.index_available:
            try:
                return self._search_index(query, limit, min_similarity, scope)
            except VectorIndexError as e:
                self._index_checked = False
                log.warning("vector_index.search_failed", entity_type=self.entity_type, error=e.message)

        return self._search_scan(query, limit, min_similarity, scope)

    def _search_index(
        self,
        query: np.ndarray,
        limit: int,
        min_similarity: float,
        scope: ScopeFilter | None,
    ) -> list[VectorMatch]:
        assert self._index is not None
        if not self._index_checked:
            if self._index.count() != self.count():
                self.rebuild_index()
            self._index_checked = True

        k = limit * KNN_OVERFETCH * (_SCOPED_OVERFETCH if scope is not None else 1)
        hits = [
            (entity_id, distance_to_similarity(distance))
            for entity_id, distance in self._index.knn(vector_to_bytes(query), k)
        ]
        hits = [(eid, sim) for eid, sim in hits if sim >= min_similarity]
        if scope is not None and hits:
            allowed = self._in_scope([eid for eid, _ in hits], scope)
            hits = [(eid, sim) for eid, sim in hits if eid in allowed]
        return [VectorMatch(self._ids.from_db(eid), sim) for eid, sim in hits[:limit]]

    def _in_scope(self, keys: list[Any], scope: ScopeFilter) -> set[Any]:
        query = select(self.table.c.entity_id).where(
            self.table.c.entity_id.in_(keys), scope(self.table)
        )
        with self._db.engine.connect() as conn:
            return set(conn.execute(query).scalars())

    def _search_scan(
        self,
        query: np.ndarray,
        limit: int,
        min_similarity: float,
        scope: ScopeFilter | None,
    ) -> list[VectorMatch]:
        records = self.get_all(scope)
        if not records:
            return []
        matrix = np.vstack([r.vector for r in records])
        sims = cosine_similarities(query, matrix)
        order = np.argsort(-sims, kind="stable")
        matches = []
        for i in order:
            sim = float(sims[i])
            if sim < min_similarity:
                break
            matches.append(VectorMatch(records[i].entity_id, sim))
            if len(matches) >= limit:
                break
        return matches

    def rebuild_index(self) -> int:
        """Re-mirror every valid record into the vector index."""
        if not self.index_available:
            return 0
        assert self._index is not None
        records = self.get_all()
        count = self._index.rebuild(
            (self._ids.to_db(r.entity_id), vector_to_bytes(r.vector)) for r in records
        )
        self._index_checked = True
        return count
