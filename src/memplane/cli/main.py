"""Main CLI entry point."""

import click

from memplane.cli.backfill import backfill_command
from memplane.cli.skills import skills_command
from memplane.cli.status import status_command
from memplane.core.logging import configure_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="memplane")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """memplane - embeddings and hybrid search for project memory."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    configure_logging(level="DEBUG" if verbose else "INFO")


cli.add_command(status_command, name="status")
cli.add_command(backfill_command, name="backfill")
cli.add_command(skills_command, name="skills")


if __name__ == "__main__":
    cli()
