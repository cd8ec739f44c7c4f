"""memplane backfill command - embed entities stored without a vector."""

import asyncio
from pathlib import Path

import click

from memplane.cli.utils import ENTITY_TYPES, index_for, open_project, selected_entity_types
from memplane.config import MemplaneConfig
from memplane.core.errors import EmbeddingError
from memplane.core.progress import migration_progress, pluralize, status
from memplane.semantic.models import MigrationResult
from memplane.semantic.ops import get_embedding_service, reset_embedding_service
from memplane.storage.database import Database


async def _backfill(
    db: Database, config: MemplaneConfig, entity_types: tuple[str, ...]
) -> dict[str, MigrationResult]:
    results: dict[str, MigrationResult] = {}
    try:
        await get_embedding_service(config.embedding).initialize()
        for entity_type in entity_types:
            index = index_for(db, entity_type, config)
            if index.get_missing_count() == 0:
                results[entity_type] = MigrationResult(processed=0, total=0)
                continue
            with migration_progress(f"Embedding {entity_type}") as on_progress:
                results[entity_type] = await index.migrate(on_progress)
    finally:
        await reset_embedding_service()
    return results


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--entity",
    type=click.Choice([*ENTITY_TYPES, "all"]),
    default="all",
    show_default=True,
    help="Entity type to backfill",
)
def backfill_command(path: Path, entity: str) -> None:
    """Generate embeddings for entities that have none.

    PATH is the project root (default: current directory).
    """
    config, db = open_project(path)
    try:
        status(f"Loading {config.embedding.model_name}...")
        results = asyncio.run(_backfill(db, config, selected_entity_types(entity)))
    except EmbeddingError as e:
        status(str(e), style="error")
        raise click.exceptions.Exit(1) from e
    finally:
        db.dispose()

    for entity_type, result in results.items():
        if result.total == 0:
            status(f"{entity_type}: up to date", style="success")
        elif result.processed == result.total:
            status(f"{entity_type}: {pluralize(result.processed, 'embedding')} created", style="success")
        else:
            status(
                f"{entity_type}: {result.processed}/{result.total} embedded, "
                f"{pluralize(result.total - result.processed, 'failure')}",
                style="warning",
            )
