"""memplane status command - embedding coverage per entity type."""

import json
from pathlib import Path

import click

from memplane.cli.utils import ENTITY_TYPES, index_for, open_project
from memplane.semantic.ops import get_embeddings_status, reset_indexes


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status_command(path: Path, as_json: bool) -> None:
    """Show embedding status for a project.

    PATH is the project root (default: current directory).
    """
    config, db = open_project(path)
    try:
        coverage = {}
        for entity_type in ENTITY_TYPES:
            index = index_for(db, entity_type, config)
            coverage[entity_type] = {
                "embedded": index.count(),
                "missing": index.get_missing_count(),
            }
        vector_index = db.vector_extension_loaded
    finally:
        reset_indexes()
        db.dispose()

    service = get_embeddings_status().to_dict()

    if as_json:
        click.echo(
            json.dumps(
                {
                    "database": str(db.db_path),
                    "model": config.embedding.model_name,
                    "dimension": config.embedding.dimension,
                    "vector_index": vector_index,
                    "service": service,
                    "entities": coverage,
                }
            )
        )
        return

    click.echo(f"Database: {db.db_path}")
    click.echo(f"Model: {config.embedding.model_name} ({config.embedding.dimension}d)")
    click.echo(f"Vector index: {'sqlite-vec' if vector_index else 'exact scan'}")
    for entity_type, counts in coverage.items():
        line = f"{entity_type}: {counts['embedded']} embedded"
        if counts["missing"]:
            line += f", {counts['missing']} missing"
        click.echo(line)
