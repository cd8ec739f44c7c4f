"""CLI utilities."""

from pathlib import Path

import click

from memplane.config import MemplaneConfig, get_db_path, load_config
from memplane.core.errors import ConfigError
from memplane.semantic.ops import SemanticIndex, agent_index, doc_index, memory_index
from memplane.storage.database import Database

ENTITY_TYPES = ("memory", "doc", "agent")

_INDEX_FACTORIES = {
    "memory": memory_index,
    "doc": doc_index,
    "agent": agent_index,
}


def open_project(path: Path) -> tuple[MemplaneConfig, Database]:
    """Load configuration for ``path`` and open its database.

    Tables are created if the database is new.

    Raises:
        click.ClickException: If the configuration is invalid
    """
    repo_root = path.resolve()
    try:
        config = load_config(repo_root)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e

    db = Database.from_config(
        get_db_path(repo_root, config),
        config.database,
        load_vector_extension=config.storage.vector_index,
    )
    db.create_all()
    return config, db


def index_for(db: Database, entity_type: str, config: MemplaneConfig) -> SemanticIndex:
    return _INDEX_FACTORIES[entity_type](db, config=config)


def selected_entity_types(entity: str) -> tuple[str, ...]:
    return ENTITY_TYPES if entity == "all" else (entity,)
