"""CLI command running the full clone -> clean -> upload pipeline."""

import asyncio
import json
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from rag_pipeline.cli.common import configure_logging, result_summary, split_csv, stage_table
from rag_pipeline.core.config import STAGE_NAMES, ensure_valid_settings, settings
from rag_pipeline.core.errors import ConfigurationError
from rag_pipeline.pipelines.models import PipelineOptions, PipelineResult
from rag_pipeline.pipelines.orchestrator import build_orchestrator


@click.command()
@click.option("--folders", "-f", help="Comma-separated drive folder tokens to collect from")
@click.option("--force-full", is_flag=True, help="Ignore every cache and rebuild all stages")
@click.option("--force-reprocess", is_flag=True, help="Re-run AI enrichment for every document")
@click.option("--force-reindex", is_flag=True, help="Recompute every embedding before indexing")
@click.option("--batch-size", type=click.IntRange(min=1), help="Documents per batch")
@click.option(
    "--max-concurrent", type=click.IntRange(min=1), help="Maximum concurrent requests per batch"
)
@click.option("--skip-stages", help=f"Comma-separated stages to skip ({', '.join(STAGE_NAMES)})")
@click.option(
    "--continue-on-error", is_flag=True, help="Keep running the next stages when a stage fails"
)
@click.option("--json", "as_json", is_flag=True, help="Output the result as JSON")
def pipeline(
    folders: Optional[str],
    force_full: bool,
    force_reprocess: bool,
    force_reindex: bool,
    batch_size: Optional[int],
    max_concurrent: Optional[int],
    skip_stages: Optional[str],
    continue_on_error: bool,
    as_json: bool,
):
    """Run the complete pipeline: clone, clean and upload."""
    console = Console()
    logger = configure_logging()

    try:
        options = PipelineOptions(
            folder_tokens=split_csv(folders),
            force_full_update=force_full,
            force_reprocess=force_reprocess,
            force_reindex=force_reindex,
            skip_stages=split_csv(skip_stages),
            batch_size=batch_size,
            max_concurrent_ai_requests=max_concurrent,
            fail_fast=settings.fail_fast and not continue_on_error,
        )
        stages = [name for name in STAGE_NAMES if name not in options.skip_stages]
        ensure_valid_settings(settings, stages)
    except (ValidationError, ConfigurationError) as e:
        console.print(f"[red]❌ {escape(str(e))}[/red]")
        raise SystemExit(1)

    if not as_json:
        console.print(f"🚀 Starting pipeline ({' -> '.join(stages) or 'no stages'})...")

    async def _run() -> PipelineResult:
        orchestrator = build_orchestrator(logger=logger)
        try:
            return await orchestrator.execute_pipeline(options)
        finally:
            await orchestrator.cleanup()

    try:
        result = asyncio.run(_run())
    except Exception as e:
        console.print(f"[red]❌ Pipeline failed: {escape(str(e))}[/red]")
        raise SystemExit(1)

    if as_json:
        data = result.model_dump(mode="json", exclude={"stages"})
        data["stages"] = {name: result_summary(r) for name, r in result.stages.items()}
        click.echo(json.dumps(data, indent=2, ensure_ascii=False))
    else:
        console.print(stage_table(result.stages))
        overall = result.overall_stats
        console.print(f"   Documents: {overall.total_documents}")
        console.print(f"   Failed: {overall.failed_documents}")
        console.print(f"   Cache hit rate: {overall.cache_hit_rate:.1%}")
        console.print(f"   AI processing rate: {overall.ai_processing_rate:.1%}")
        console.print(f"   Indexing success rate: {overall.indexing_success_rate:.1%}")
        for name, stage_result in result.stages.items():
            if stage_result.error:
                console.print(f"   [red]❌ {name}: {escape(stage_result.error)}[/red]")
        if result.success:
            console.print(f"[green]✅ Pipeline completed in {result.duration:.2f}s[/green]")
        else:
            console.print("[yellow]⚠️  Pipeline finished with failed stages[/yellow]")

    if not result.success:
        raise SystemExit(1)
