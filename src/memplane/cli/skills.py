"""memplane skills command - find recurring memories worth promoting."""

import json
from pathlib import Path

import click
import numpy as np
from rich.table import Table
from sqlmodel import col, select

from memplane.cli.utils import index_for, open_project
from memplane.core.progress import get_console, pluralize
from memplane.semantic import cluster_memories, filter_skill_candidates, scope_to
from memplane.semantic._internal.clustering import (
    DEFAULT_CLUSTER_THRESHOLD,
    DEFAULT_MIN_CLUSTER_SIZE,
)
from memplane.semantic.models import SimilarityCluster
from memplane.semantic.ops import reset_indexes
from memplane.storage.database import Database
from memplane.storage.models import Memory


def _load_memories(db: Database, project: str | None) -> list[Memory]:
    with db.session() as session:
        stmt = select(Memory).order_by(col(Memory.created_at_epoch), col(Memory.id))
        if project is not None:
            stmt = stmt.where(Memory.project == project)
        memories = list(session.exec(stmt).all())
        for memory in memories:
            session.expunge(memory)
    return memories


def _cluster_to_dict(cluster: SimilarityCluster) -> dict[str, object]:
    return {
        "label": cluster.label,
        "size": cluster.size,
        "score": round(cluster.score, 4),
        "member_ids": cluster.member_ids,
    }


@click.command()
@click.argument("path", default=".", type=click.Path(exists=True, path_type=Path))
@click.option("--project", default=None, help="Only cluster memories of this project")
@click.option(
    "--threshold",
    type=click.FloatRange(0.0, 1.0),
    default=DEFAULT_CLUSTER_THRESHOLD,
    show_default=True,
    help="Minimum similarity to join a cluster",
)
@click.option(
    "--min-size",
    type=click.IntRange(min=1),
    default=DEFAULT_MIN_CLUSTER_SIZE,
    show_default=True,
    help="Minimum cluster size to report",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def skills_command(
    path: Path,
    project: str | None,
    threshold: float,
    min_size: int,
    as_json: bool,
) -> None:
    """Report clusters of similar memories that could become skills.

    Stored embeddings are blended into the score where present; no model
    is loaded.
    """
    config, db = open_project(path)
    try:
        memories = _load_memories(db, project)
        index = index_for(db, "memory", config)
        vectors: dict[int, np.ndarray] = {
            record.entity_id: record.vector
            for record in index.get_all(scope_to(Memory, "project", project) if project else None)
        }
    finally:
        reset_indexes()
        db.dispose()

    clusters = cluster_memories(
        memories,
        threshold=threshold,
        embedding_of=lambda m: vectors.get(m.entity_id),
    )
    candidates = filter_skill_candidates(clusters, min_size=min_size)

    if as_json:
        click.echo(json.dumps([_cluster_to_dict(c) for c in candidates]))
        return

    if not candidates:
        click.echo(f"No clusters of {min_size}+ among {pluralize(len(memories), 'memory', 'memories')}")
        return

    table = Table(title="Skill candidates")
    table.add_column("Label")
    table.add_column("Size", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Members")
    for cluster in candidates:
        table.add_row(
            cluster.label,
            str(cluster.size),
            f"{cluster.score:.2f}",
            ", ".join(str(i) for i in cluster.member_ids),
        )
    get_console().print(table)
