"""Status and health commands."""

import asyncio
import json
from typing import Any, Dict

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rag_pipeline.cli.common import configure_logging
from rag_pipeline.core.config import settings, validate_settings
from rag_pipeline.core.redis import check_redis_connection
from rag_pipeline.pipelines.cache import DocumentCache
from rag_pipeline.pipelines.index.search_index import SearchIndexClient
from rag_pipeline.pipelines.orchestrator import build_orchestrator

STATUS_ICONS = {"healthy": "✅", "degraded": "⚠️ ", "unhealthy": "❌"}


async def collect_status() -> Dict[str, Any]:
    """Configuration, cache and index statistics; every section is best effort."""
    orchestrator = build_orchestrator(logger=configure_logging())
    report: Dict[str, Any] = {
        "configuration": orchestrator.get_configuration(),
        "problems": validate_settings(settings),
        "redis_connected": await check_redis_connection(),
    }

    cache = DocumentCache(config=settings)
    try:
        report["cache"] = (await cache.stats()).model_dump(mode="json")
    except Exception as e:
        report["cache"] = {"error": str(e)}
    finally:
        await cache.close()

    index = SearchIndexClient(settings)
    try:
        report["index"] = (await index.get_stats()).model_dump(mode="json")
    except Exception as e:
        report["index"] = {"error": str(e)}
    finally:
        await index.close()

    return report


def _section_table(title: str, values: Dict[str, Any]) -> Table:
    table = Table(title=title)
    table.add_column("Setting", no_wrap=True)
    table.add_column("Value")
    for key, value in values.items():
        if isinstance(value, dict):
            value = ", ".join(f"{k}={v}" for k, v in value.items()) or "-"
        table.add_row(key, escape(str(value)))
    return table


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(as_json: bool):
    """Show configuration, cache and index status."""
    console = Console()
    try:
        report = asyncio.run(collect_status())
    except Exception as e:
        console.print(f"[red]❌ Status check failed: {escape(str(e))}[/red]")
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
        return

    configuration = report["configuration"]
    icon = "✅" if report["redis_connected"] else "❌"
    console.print(f"{icon} Redis: {escape(configuration['services']['redis_url'])}")
    console.print(_section_table("Services", configuration["services"]))
    console.print(_section_table("Performance", configuration["performance"]))

    cache = report["cache"]
    if "error" in cache:
        console.print(f"[yellow]⚠️  Cache unavailable: {escape(cache['error'])}[/yellow]")
    else:
        console.print(f"📦 Cached documents: {cache['total_documents']}")
        for doc_type, count in cache["by_type"].items():
            console.print(f"   • {doc_type}: {count}")
        if cache.get("last_updated"):
            console.print(f"   Last updated: {cache['last_updated']}")

    index = report["index"]
    if "error" in index:
        console.print(f"[yellow]⚠️  Index unavailable: {escape(index['error'])}[/yellow]")
    else:
        console.print(f"🔎 Index {index['index_name']}: {index['document_count']} documents")

    for problem in report["problems"]:
        console.print(f"[yellow]⚠️  {escape(problem)}[/yellow]")


async def collect_health() -> Dict[str, Any]:
    orchestrator = build_orchestrator(logger=configure_logging())
    try:
        try:
            await orchestrator.initialize()
            initialization_error = None
        except Exception as e:
            initialization_error = str(e)
        report = await orchestrator.health_check()
        if initialization_error:
            report["initialization_error"] = initialization_error
        return report
    finally:
        await orchestrator.cleanup()


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def health(as_json: bool):
    """Initialize every stage and report collaborator health."""
    console = Console()
    try:
        report = asyncio.run(collect_health())
    except Exception as e:
        console.print(f"[red]❌ Health check failed: {escape(str(e))}[/red]")
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(report, indent=2, default=str))
    else:
        table = Table(title="Pipeline Health")
        table.add_column("Stage", no_wrap=True)
        table.add_column("Service", no_wrap=True)
        table.add_column("Status", no_wrap=True)
        table.add_column("Details")
        for stage_name, stage_report in report["stages"].items():
            services = stage_report.get("services") or {"-": stage_report}
            for service_name, service in services.items():
                service_status = service.get("status", "unknown")
                details = service.get("error") or ""
                table.add_row(
                    stage_name,
                    service_name,
                    f"{STATUS_ICONS.get(service_status, '?')} {service_status}",
                    escape(str(details)),
                )
        console.print(table)
        if report.get("initialization_error"):
            console.print(
                f"[yellow]⚠️  Initialization failed: "
                f"{escape(report['initialization_error'])}[/yellow]"
            )
        overall = report["status"]
        console.print(f"{STATUS_ICONS.get(overall, '?')} Overall: {overall}")

    if report["status"] == "unhealthy":
        raise SystemExit(1)
