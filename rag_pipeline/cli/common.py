"""Helpers shared by the CLI commands."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rag_pipeline.core.config import settings
from rag_pipeline.core.logging import setup_logging
from rag_pipeline.pipelines.models import Document, StageResult

_DOCUMENTS = TypeAdapter(List[Document])


def configure_logging() -> logging.Logger:
    return setup_logging(settings.log_level, settings.log_file)


def split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def load_documents(documents_json: Optional[str], documents_file: Optional[str]) -> List[Document]:
    """Read an input document set from a JSON string or file.

    Accepts either a list of documents or an object with a ``documents`` list,
    which is what ``--output`` writes.
    """
    if documents_json and documents_file:
        raise click.UsageError("Use either --documents or --documents-file, not both")
    if documents_file:
        raw = Path(documents_file).read_text(encoding="utf-8")
    elif documents_json:
        raw = documents_json
    else:
        raise click.UsageError(
            "An input document set is required (--documents or --documents-file)"
        )

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise click.UsageError(f"Invalid documents JSON: {e}") from e
    if isinstance(payload, dict):
        payload = payload.get("documents", [])

    try:
        return _DOCUMENTS.validate_python(payload)
    except ValidationError as e:
        raise click.UsageError(f"Invalid document set: {e.error_count()} validation errors") from e


def write_documents(path: str, result: StageResult) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "stage": result.stage,
        "documents": _DOCUMENTS.dump_python(result.documents or [], mode="json"),
    }
    target.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def result_summary(result: StageResult) -> Dict[str, Any]:
    """JSON-ready stage result without the document payloads."""
    data = result.model_dump(mode="json", exclude={"documents"})
    data["document_count"] = len(result.documents or [])
    return data


def stage_table(results: Dict[str, StageResult]) -> Table:
    table = Table(title="Pipeline Stages")
    table.add_column("Stage", no_wrap=True)
    table.add_column("Status", no_wrap=True)
    table.add_column("Total", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Cached", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Duration", justify="right")

    for name, result in results.items():
        stats = result.stats
        status = "[green]✅ ok[/green]" if result.success else "[red]❌ failed[/red]"
        table.add_row(
            name,
            status,
            str(stats.total_documents),
            str(stats.new_documents),
            str(stats.updated_documents),
            str(stats.cached_documents),
            str(stats.failed_documents),
            f"{result.stage_duration or result.duration:.2f}s",
        )
    return table


def print_stage_result(console: Console, result: StageResult, show_errors: int = 10) -> None:
    console.print(stage_table({result.stage: result}))
    if result.error:
        console.print(f"[red]❌ {result.stage}: {escape(result.error)}[/red]")
    if result.errors:
        console.print(f"[yellow]⚠️  {len(result.errors)} document errors[/yellow]")
        for record in result.errors[:show_errors]:
            console.print(f"   • {record.document_id}: {escape(record.error)}")
