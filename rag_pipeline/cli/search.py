"""Query the knowledge base built by the upload stage."""

from __future__ import annotations

import asyncio
import json as _json
from typing import Dict, List, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rag_pipeline.cli.common import configure_logging
from rag_pipeline.core.config import settings
from rag_pipeline.pipelines.enrichment.ai_client import AIClient
from rag_pipeline.pipelines.index.search_index import DEFAULT_MIN_SCORE, SearchIndexClient
from rag_pipeline.pipelines.models import SearchHit

SEARCH_MODES = ("hybrid", "vector", "text")


def get_search_index() -> SearchIndexClient:
    return SearchIndexClient(config=settings)


def get_ai_client() -> AIClient:
    return AIClient(config=settings)


async def run_search(
    query: str, mode: str, limit: int, filters: Dict[str, str], min_score: float
) -> List[SearchHit]:
    search_index = get_search_index()
    ai_client = get_ai_client() if mode != "text" else None
    try:
        if ai_client is None:
            return await search_index.search_by_text(query, k=limit, filters=filters)
        vector = await ai_client.embed(query)
        if mode == "vector":
            return await search_index.search_by_vector(
                vector, k=limit, filters=filters, min_score=min_score
            )
        return await search_index.hybrid_search(query, vector, k=limit, filters=filters)
    finally:
        await search_index.close()
        if ai_client is not None:
            await ai_client.close()


@click.command()
@click.argument("query")
@click.option(
    "--mode",
    type=click.Choice(SEARCH_MODES),
    default="hybrid",
    show_default=True,
    help="Ranking: vector similarity, full text, or a weighted blend of both",
)
@click.option("-k", "--limit", type=click.IntRange(min=1), default=5, show_default=True)
@click.option("--category", help="Only return documents in this category")
@click.option("--doc-type", help="Only return documents of this source type (docx, sheet, ...)")
@click.option(
    "--min-score",
    type=float,
    default=DEFAULT_MIN_SCORE,
    show_default=True,
    help="Minimum cosine similarity in vector mode",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def search(
    query: str,
    mode: str,
    limit: int,
    category: Optional[str],
    doc_type: Optional[str],
    min_score: float,
    as_json: bool,
):
    """Search the knowledge base."""
    configure_logging()
    console = Console()
    filters = {"category": category, "doc_type": doc_type}
    try:
        hits = asyncio.run(run_search(query, mode, limit, filters, min_score))
    except Exception as e:
        console.print(f"[red]❌ Search failed: {escape(str(e))}[/red]")
        raise SystemExit(1)

    if as_json:
        click.echo(_json.dumps([hit.model_dump(exclude={"content"}) for hit in hits], indent=2))
        return

    if not hits:
        console.print("[yellow]No matching documents[/yellow]")
        return

    table = Table(title=f"Results for {escape(query)!r} ({mode})")
    table.add_column("Score", justify="right")
    table.add_column("Title")
    table.add_column("Category")
    table.add_column("ID")
    for hit in hits:
        table.add_row(
            f"{hit.score:.3f}",
            escape(hit.ai_title or hit.title),
            escape(hit.category),
            escape(hit.id),
        )
    console.print(table)
