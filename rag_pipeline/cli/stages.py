"""CLI commands running a single pipeline stage."""

import asyncio
import json
from typing import List, Optional

import click
from rich.console import Console
from rich.markup import escape

from rag_pipeline.cli.common import (
    configure_logging,
    load_documents,
    print_stage_result,
    result_summary,
    split_csv,
    write_documents,
)
from rag_pipeline.core.config import ensure_valid_settings, settings
from rag_pipeline.core.errors import ConfigurationError
from rag_pipeline.pipelines.models import Document, StageOptions, StageResult
from rag_pipeline.pipelines.orchestrator import build_orchestrator


def run_stage(name: str, options: StageOptions) -> StageResult:
    """Run one stage through a fresh orchestrator, always cleaning up."""
    logger = configure_logging()

    async def _run() -> StageResult:
        orchestrator = build_orchestrator(logger=logger)
        try:
            return await orchestrator.execute_stage(name, options)
        finally:
            await orchestrator.cleanup()

    return asyncio.run(_run())


def _execute(
    name: str,
    options: StageOptions,
    output: Optional[str],
    as_json: bool,
) -> None:
    console = Console()
    try:
        ensure_valid_settings(settings, [name])
    except ConfigurationError as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        raise SystemExit(1)

    if not as_json:
        console.print(f"🚀 Running stage {name}...")
    try:
        result = run_stage(name, options)
    except Exception as e:
        console.print(f"[red]❌ Stage {name} failed: {escape(str(e))}[/red]")
        raise SystemExit(1)

    if output:
        write_documents(output, result)

    if as_json:
        click.echo(json.dumps(result_summary(result), indent=2, ensure_ascii=False))
    else:
        print_stage_result(console, result)
        if output:
            console.print(f"📄 Wrote {len(result.documents or [])} documents to {output}")
        console.print(f"[green]✅ Stage {name} completed in {result.duration:.2f}s[/green]")


def _stage_options(
    documents: Optional[List[Document]],
    folder_tokens: List[str],
    force: bool,
    batch_size: Optional[int],
    max_concurrent: Optional[int],
) -> StageOptions:
    return StageOptions(
        documents=documents,
        folder_tokens=folder_tokens,
        force=force,
        batch_size=batch_size or settings.batch_size,
        max_concurrency=max_concurrent or settings.max_concurrent_ai_requests,
    )


def batch_options(func):
    func = click.option(
        "--max-concurrent",
        type=click.IntRange(min=1),
        help="Maximum concurrent requests per batch",
    )(func)
    func = click.option("--batch-size", type=click.IntRange(min=1), help="Documents per batch")(
        func
    )
    func = click.option("--force", is_flag=True, help="Ignore cached results for this stage")(func)
    return click.option("--json", "as_json", is_flag=True, help="Output the result as JSON")(func)


def document_input(func):
    func = click.option(
        "--documents-file",
        type=click.Path(exists=True, dir_okay=False),
        help="Path to a JSON file with the input documents",
    )(func)
    return click.option("--documents", "documents_json", help="Input documents as JSON")(func)


@click.command()
@click.option("--folders", "-f", help="Comma-separated drive folder tokens to collect from")
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write documents as JSON")
@batch_options
def clone(
    folders: Optional[str],
    output: Optional[str],
    force: bool,
    batch_size: Optional[int],
    max_concurrent: Optional[int],
    as_json: bool,
):
    """Collect documents from the drive folders."""
    folder_tokens = split_csv(folders) or list(settings.folder_tokens)
    if not folder_tokens:
        raise click.UsageError("No folder tokens given (--folders or FOLDER_TOKENS)")
    options = _stage_options(None, folder_tokens, force, batch_size, max_concurrent)
    _execute("clone", options, output, as_json)


@click.command()
@document_input
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write documents as JSON")
@batch_options
def clean(
    documents_json: Optional[str],
    documents_file: Optional[str],
    output: Optional[str],
    force: bool,
    batch_size: Optional[int],
    max_concurrent: Optional[int],
    as_json: bool,
):
    """Enrich, split and validate a document set."""
    documents = load_documents(documents_json, documents_file)
    options = _stage_options(documents, [], force, batch_size, max_concurrent)
    _execute("clean", options, output, as_json)


@click.command()
@document_input
@batch_options
def upload(
    documents_json: Optional[str],
    documents_file: Optional[str],
    force: bool,
    batch_size: Optional[int],
    max_concurrent: Optional[int],
    as_json: bool,
):
    """Embed a document set and write it to the search index."""
    documents = load_documents(documents_json, documents_file)
    options = _stage_options(documents, [], force, batch_size, max_concurrent)
    _execute("upload", options, None, as_json)
