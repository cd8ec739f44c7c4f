"""sqlite-vec k-NN index mirrored from an embeddings table.

Two tables per entity type:

- ``<type>_vec``: vec0 virtual table holding ``float[dim]`` vectors
- ``<type>_vec_map``: ``vec_rowid`` to ``entity_id`` mapping

The index is a derived projection: anything in it can be rebuilt from
``<type>_embeddings``. Availability is probed once (``vec_version()``)
and cached for the lifetime of the index object.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from memplane.core.errors import VectorIndexError

if TYPE_CHECKING:
    from sqlalchemy import Connection

    from memplane.storage.database import Database

log = structlog.get_logger()

# vec0 rejects larger k values
MAX_KNN_K = 4096


def distance_to_similarity(distance: float) -> float:
    """Convert L2 distance between unit vectors to cosine similarity."""
    return max(0.0, 1.0 - (distance * distance) / 2.0)


class VectorIndex:
    """Accelerated nearest-neighbour lookups for one entity type."""

    def __init__(self, db: Database, entity_type: str, dimension: int, id_sql_type: str) -> None:
        self._db = db
        self.vec_table = f"{entity_type}_vec"
        self.map_table = f"{entity_type}_vec_map"
        self.dimension = dimension
        self._id_sql_type = id_sql_type
        self._available: bool | None = None
        self.version: str | None = None

    @property
    def available(self) -> bool:
        """Whether sqlite-vec is loaded and the index tables exist."""
        if self._available is None:
            self._available = self._probe()
        return self._available

    def _probe(self) -> bool:
        try:
            with self._db.engine.connect() as conn:
                self.version = conn.execute(text("SELECT vec_version()")).scalar()
        except SQLAlchemyError:
            log.debug("vector_index.unavailable", table=self.vec_table)
            return False
        try:
            self._db.write(self._create_tables)
        except SQLAlchemyError as e:
            log.warning("vector_index.create_failed", table=self.vec_table, error=str(e))
            return False
        log.debug("vector_index.ready", table=self.vec_table, sqlite_vec=self.version)
        return True

    def _create_tables(self, conn: Connection) -> None:
        conn.execute(
            text(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS {self.vec_table} "
                f"USING vec0(embedding float[{self.dimension}])"
            )
        )
        conn.execute(
            text(
                f"CREATE TABLE IF NOT EXISTS {self.map_table} ("
                "vec_rowid INTEGER PRIMARY KEY AUTOINCREMENT, "
                f"entity_id {self._id_sql_type} NOT NULL UNIQUE)"
            )
        )

    # --- Writes (caller owns the transaction) ---

    def upsert(self, conn: Connection, entity_id: Any, blob: bytes) -> None:
        conn.execute(
            text(f"INSERT OR IGNORE INTO {self.map_table} (entity_id) VALUES (:eid)"),
            {"eid": entity_id},
        )
        rowid = conn.execute(
            text(f"SELECT vec_rowid FROM {self.map_table} WHERE entity_id = :eid"),
            {"eid": entity_id},
        ).scalar_one()
        # vec0 has no upsert
        conn.execute(text(f"DELETE FROM {self.vec_table} WHERE rowid = :rowid"), {"rowid": rowid})
        conn.execute(
            text(f"INSERT INTO {self.vec_table} (rowid, embedding) VALUES (:rowid, :embedding)"),
            {"rowid": rowid, "embedding": blob},
        )

    def delete(self, conn: Connection, entity_id: Any) -> None:
        rowid = conn.execute(
            text(f"SELECT vec_rowid FROM {self.map_table} WHERE entity_id = :eid"),
            {"eid": entity_id},
        ).scalar_one_or_none()
        if rowid is None:
            return
        conn.execute(text(f"DELETE FROM {self.vec_table} WHERE rowid = :rowid"), {"rowid": rowid})
        conn.execute(text(f"DELETE FROM {self.map_table} WHERE vec_rowid = :rowid"), {"rowid": rowid})

    def clear(self, conn: Connection) -> None:
        conn.execute(text(f"DELETE FROM {self.vec_table}"))
        conn.execute(text(f"DELETE FROM {self.map_table}"))

    def rebuild(self, items: Iterable[tuple[Any, bytes]]) -> int:
        """Replace the index contents with ``items``."""

        def _rebuild(conn: Connection) -> int:
            self.clear(conn)
            n = 0
            for entity_id, blob in items:
                self.upsert(conn, entity_id, blob)
                n += 1
            return n

        try:
            count = self._db.write(_rebuild)
        except SQLAlchemyError as e:
            raise VectorIndexError.query_failed(self.vec_table, str(e)) from e
        log.info("vector_index.rebuilt", table=self.vec_table, count=count)
        return count

    # --- Reads ---

    def count(self) -> int:
        try:
            with self._db.engine.connect() as conn:
                return int(conn.execute(text(f"SELECT COUNT(*) FROM {self.map_table}")).scalar_one())
        except SQLAlchemyError as e:
            raise VectorIndexError.query_failed(self.map_table, str(e)) from e

    def knn(self, query_blob: bytes, k: int) -> list[tuple[Any, float]]:
        """Nearest ``k`` entities as ``(entity_id, distance)``, closest first.

        Raises:
            VectorIndexError: If the k-NN query fails.
        """
        k = max(1, min(k, MAX_KNN_K))
        sql = text(
            "SELECT m.entity_id, knn.distance FROM ("
            f"SELECT rowid, distance FROM {self.vec_table} "
            "WHERE embedding MATCH :query AND k = :k"
            f") AS knn JOIN {self.map_table} AS m ON m.vec_rowid = knn.rowid "
            "ORDER BY knn.distance"
        )
        try:
            with self._db.engine.connect() as conn:
                rows = conn.execute(sql, {"query": query_blob, "k": k}).all()
        except SQLAlchemyError as e:
            raise VectorIndexError.query_failed(self.vec_table, str(e)) from e
        return [(row[0], float(row[1])) for row in rows]
