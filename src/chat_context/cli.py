"""CLI entry point for chat-context."""

import logging

import click
import uvicorn

from .api import ChatContext
from .backends import SOURCE_NAMES
from .config import SORT_ORDERS, load_settings


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool):
    """Index and search Cursor and Claude Code chat sessions."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the HTTP API."""
    click.echo(f"Starting chat-context on http://{host}:{port}")
    uvicorn.run("chat_context.server:app", host=host, port=port, reload=False)


@main.command()
@click.option("--limit", type=int, default=None, help="Maximum sessions to read per source.")
@click.option(
    "--source",
    type=click.Choice(("all",) + SOURCE_NAMES),
    default="all",
    help="Which source to sync.",
)
def sync(limit: int | None, source: str):
    """Index sessions that are not in the metadata index yet."""
    with ChatContext.from_settings() as context:
        synced = context.sync_sessions(limit=limit, source=source)
    click.echo(f"Synced {synced} new session(s)")


@main.command("list")
@click.option("--project", default=None, help="Only sessions of this project path.")
@click.option("--tag", default=None, help="Only sessions carrying this tag.")
@click.option("--tagged-only", is_flag=True, help="Only sessions with a nickname or tag.")
@click.option("--sort", "sort_by", type=click.Choice(SORT_ORDERS), default=None)
@click.option("--limit", type=int, default=None)
def list_sessions(project: str | None, tag: str | None, tagged_only: bool, sort_by: str | None, limit: int | None):
    """List indexed sessions, newest first by default."""
    settings = load_settings()
    with ChatContext.from_settings(settings) as context:
        sessions = context.list_sessions(
            project_path=project,
            tag=tag,
            tagged_only=tagged_only,
            sort_by=sort_by or settings.default_sort,
            limit=limit or settings.default_limit,
        )
    for s in sessions:
        label = s.nickname or s.raw_id[:8]
        tags = f" [{', '.join(s.tags)}]" if s.tags else ""
        click.echo(f"{s.session_id}  {label}  {s.project_name or '-'}{tags}  {s.first_message_preview or ''}")
