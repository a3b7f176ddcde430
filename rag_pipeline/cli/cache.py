"""Cache CLI commands for inspecting and maintaining the document cache."""

from __future__ import annotations

import asyncio
import json as _json

import click
from rich.console import Console

from rag_pipeline.core.config import settings
from rag_pipeline.pipelines.cache import DocumentCache

SECONDS_PER_DAY = 24 * 3600


def get_document_cache() -> DocumentCache:
    """Get a DocumentCache for CLI operations."""
    return DocumentCache(config=settings)


@click.group()
def cache():
    """Inspect and maintain the document cache."""
    pass


@cache.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def cache_stats(as_json: bool):
    """Show cache statistics."""

    async def _stats():
        document_cache = get_document_cache()
        try:
            return await document_cache.stats()
        finally:
            await document_cache.close()

    console = Console()
    stats = asyncio.run(_stats())
    if as_json:
        click.echo(stats.model_dump_json(indent=2))
        return

    console.print("[bold]Document Cache Statistics[/bold]")
    console.print(f"  Cached documents: {stats.total_documents}")
    for doc_type, count in sorted(stats.by_type.items()):
        console.print(f"  • {doc_type}: {count}")
    if stats.last_updated:
        console.print(f"  Last updated: {stats.last_updated.isoformat()}")


@cache.command("remove")
@click.argument("document_id")
def cache_remove(document_id: str):
    """Remove the cache entry of one document."""

    async def _remove():
        document_cache = get_document_cache()
        try:
            return await document_cache.remove(document_id)
        finally:
            await document_cache.close()

    console = Console()
    if asyncio.run(_remove()):
        console.print(f"[green]✓ Removed cache entry for {document_id}[/green]")
    else:
        console.print(f"[yellow]No cache entry for {document_id}[/yellow]")
        raise SystemExit(1)


@cache.command("clear")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt")
def cache_clear(yes: bool):
    """Delete every cache entry. The next run reprocesses everything."""
    if not yes and not click.confirm("Delete every cached document?", default=False):
        click.echo("Aborted.")
        return

    async def _clear():
        document_cache = get_document_cache()
        try:
            return await document_cache.clear_all()
        finally:
            await document_cache.close()

    deleted = asyncio.run(_clear())
    Console().print(f"[green]✓ Cleared {deleted} cache entries[/green]")


@cache.command("prune")
@click.option(
    "--max-age-days",
    type=click.IntRange(min=1),
    default=30,
    show_default=True,
    help="Remove entries not updated for this many days",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def cache_prune(max_age_days: int, as_json: bool):
    """Remove cache entries that have not been updated recently."""

    async def _prune():
        document_cache = get_document_cache()
        try:
            return await document_cache.cleanup_expired(max_age_days * SECONDS_PER_DAY)
        finally:
            await document_cache.close()

    deleted = asyncio.run(_prune())
    if as_json:
        click.echo(_json.dumps({"deleted": deleted, "max_age_days": max_age_days}))
    else:
        Console().print(
            f"[green]✓ Removed {deleted} entries older than {max_age_days} days[/green]"
        )
