"""Backfill embeddings for entities that were stored without one.

Entities created while the model was unavailable, or before semantic
search existed, have no row in their embeddings table. A
:class:`MigrationRunner` finds them in batches and embeds them one at a
time. One run per entity type is active at any moment; concurrent callers
join it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, select

from memplane.semantic.models import Embeddable, MigrationResult, MigrationState

if TYPE_CHECKING:
    from sqlmodel import SQLModel

    from memplane.semantic._internal.storage import EmbeddingStore
    from memplane.semantic.models import EntitySource
    from memplane.storage.database import Database

log = structlog.get_logger()

ProgressCallback = Callable[[int, int], None]

DEFAULT_BATCH_SIZE = 50


class SqlEntitySource:
    """Finds entities of a SQLModel table that lack an embedding."""

    def __init__(self, db: Database, model: type[SQLModel], store: EmbeddingStore) -> None:
        self._db = db
        self._model = model
        self._host = model.__table__  # type: ignore[attr-defined]
        self._pk = next(iter(self._host.primary_key.columns))
        self._embeddings = store.table

    def _missing(self) -> Any:
        return self._host.outerjoin(
            self._embeddings, self._pk == self._embeddings.c.entity_id
        )

    def count_missing(self) -> int:
        query = (
            select(func.count())
            .select_from(self._missing())
            .where(self._embeddings.c.entity_id.is_(None))
        )
        with self._db.engine.connect() as conn:
            return int(conn.execute(query).scalar_one())

    def fetch_missing_ids(self, limit: int, exclude: set[Any]) -> list[Any]:
        query = (
            select(self._pk)
            .select_from(self._missing())
            .where(self._embeddings.c.entity_id.is_(None))
            .order_by(self._pk)
            .limit(limit)
        )
        if exclude:
            query = query.where(self._pk.not_in(exclude))
        with self._db.engine.connect() as conn:
            return list(conn.execute(query).scalars())

    def fetch(self, entity_id: Any) -> Embeddable | None:
        with self._db.session() as session:
            entity = session.get(self._model, entity_id)
            if entity is None:
                return None
            session.expunge(entity)
            return entity  # type: ignore[return-value]


class MigrationRunner:
    """Embeds every entity a source reports as missing.

    Example::

        runner = MigrationRunner(store, SqlEntitySource(db, Memory, store))
        result = await runner.migrate(lambda done, total: print(done, total))
    """

    def __init__(
        self,
        store: EmbeddingStore,
        source: EntitySource,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self._store = store
        self._source = source
        self._batch_size = batch_size
        self._state = MigrationState()

    @property
    def entity_type(self) -> str:
        return self._store.entity_type

    @property
    def state(self) -> MigrationState:
        """Copy of the current state."""
        return MigrationState(self._state.complete, self._state.in_flight)

    def reset(self) -> None:
        """Forget that a run completed so the next call scans again."""
        self._state.complete = False

    def get_missing_count(self) -> int:
        return self._source.count_missing()

    def get_without_embeddings(self, limit: int) -> list[Any]:
        return self._source.fetch_missing_ids(limit, set())

    async def migrate(self, on_progress: ProgressCallback | None = None) -> MigrationResult:
        """Embed all missing entities, or join the run already in flight.

        Returns ``MigrationResult(0, 0)`` once the entity type is complete.
        ``on_progress`` is only used when this call starts the run.
        """
        if self._state.complete:
            return MigrationResult(0, 0)
        task = self._state.in_flight
        if task is None or task.done():
            task = self._start(on_progress)
        return await asyncio.shield(task)

    def ensure_migrated(self) -> None:
        """Start a background run unless complete or already running."""
        if self._state.complete or self._state.running:
            return
        task = self._start(None)
        task.add_done_callback(self._on_background_done)

    def _start(self, on_progress: ProgressCallback | None) -> asyncio.Task[MigrationResult]:
        task = asyncio.get_running_loop().create_task(self._run(on_progress))
        self._state.in_flight = task
        return task

    def _on_background_done(self, task: asyncio.Task[MigrationResult]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("migration.failed", entity_type=self.entity_type, error=str(exc))

    async def _run(self, on_progress: ProgressCallback | None) -> MigrationResult:
        try:
            return await self._backfill(on_progress)
        finally:
            if self._state.in_flight is asyncio.current_task():
                self._state.in_flight = None

    async def _backfill(self, on_progress: ProgressCallback | None) -> MigrationResult:
        loop = asyncio.get_running_loop()
        total = await loop.run_in_executor(None, self._source.count_missing)
        if total == 0:
            self._state.complete = True
            return MigrationResult(0, 0)

        log.info("migration.started", entity_type=self.entity_type, total=total)
        processed = 0
        failed: set[Any] = set()
        while True:
            batch = await loop.run_in_executor(
                None, self._source.fetch_missing_ids, self._batch_size, set(failed)
            )
            if not batch:
                break
            for entity_id in batch:
                if await self._migrate_one(entity_id):
                    processed += 1
                    if on_progress is not None:
                        on_progress(processed, total)
                else:
                    failed.add(entity_id)
            if len(batch) < self._batch_size:
                break

        remaining = await loop.run_in_executor(None, self._source.count_missing)
        self._state.complete = remaining == 0
        log.info(
            "migration.finished",
            entity_type=self.entity_type,
            processed=processed,
            failed=len(failed),
            remaining=remaining,
        )
        return MigrationResult(processed, total)

    async def _migrate_one(self, entity_id: Any) -> bool:
        try:
            entity = await asyncio.get_running_loop().run_in_executor(
                None, self._source.fetch, entity_id
            )
            if entity is None:
                log.debug("migration.entity_missing", entity_type=self.entity_type, entity_id=entity_id)
                return False
            return await self._store.store(entity.entity_id, entity.embedding_text())
        except Exception as e:  # noqa: BLE001
            log.warning(
                "migration.entity_failed",
                entity_type=self.entity_type,
                entity_id=entity_id,
                error=str(e),
            )
            return False
