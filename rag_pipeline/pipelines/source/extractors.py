"""Convert raw drive content into pipeline Documents.

There is one extractor per source document type. Anything without an extractor
is rejected for that document only.
"""

from typing import Any, Callable, Dict, List, Optional

from rag_pipeline.core.errors import UnsupportedDocumentTypeError
from rag_pipeline.pipelines.models import Document, DocumentMetadata, DocumentRef

Extractor = Callable[[DocumentRef, Dict[str, Any]], Document]


def render_blocks(blocks: List[Dict[str, Any]]) -> str:
    """Render doc blocks as markdown-flavoured text."""
    lines = []
    for block in blocks:
        block_type = block.get("type")
        text = block.get("text") or ""
        if block_type == "heading":
            level = block.get("level") or 1
            lines.append(f"{'#' * level} {text}")
        elif block_type == "list":
            lines.append(f"- {text}")
        elif block_type == "code":
            lines.append(f"```\n{block.get('code') or text}\n```")
        elif block_type == "quote":
            lines.append(f"> {text}")
        else:
            lines.append(text)
    return "\n".join(lines)


def _base_metadata(ref: DocumentRef, doc_type: str) -> Dict[str, Any]:
    return {
        "doc_type": doc_type,
        "source": "feishu",
        "url": ref.url,
        "author": ref.owner_id,
        "owner_id": ref.owner_id,
        "parent_token": ref.parent_token,
        "created_time": ref.created_time,
        "modified_time": ref.modified_time,
    }


def extract_doc(ref: DocumentRef, raw: Dict[str, Any]) -> Document:
    body = raw.get("body") or {}
    content = render_blocks(body["blocks"]) if body.get("blocks") else ""
    if not content.strip():
        content = body.get("content") or ""
    content = content.strip()

    info = raw.get("document") or {}
    metadata = _base_metadata(ref, "doc")
    metadata["word_count"] = len(content)
    metadata["page_count"] = 1
    if isinstance(info.get("tags"), list):
        metadata["tags"] = [str(tag) for tag in info["tags"]]

    return Document(
        id=ref.token,
        title=ref.name or info.get("title") or "Untitled Document",
        content=content,
        doc_type="doc",
        metadata=DocumentMetadata(**metadata),
    )


def extract_docx(ref: DocumentRef, raw: Dict[str, Any]) -> Document:
    content = (raw.get("content") or "").strip()
    metadata = _base_metadata(ref, "docx")
    metadata["word_count"] = len(content)
    return Document(
        id=ref.token,
        title=ref.name or "Untitled Document",
        content=content,
        doc_type="docx",
        metadata=DocumentMetadata(**metadata),
    )


def extract_sheet(ref: DocumentRef, raw: Dict[str, Any]) -> Document:
    sheets = raw.get("sheets") or []
    sections = []
    row_count = 0
    column_count = 0

    for sheet in sheets:
        title = sheet.get("title") or "Sheet"
        section = f"## {title}"
        grid = sheet.get("grid_properties") or sheet.get("gridProperties")
        if grid:
            section += f"\n\n[Sheet data: {title}]"
            row_count += grid.get("row_count") or grid.get("rowCount") or 0
            columns = grid.get("column_count") or grid.get("columnCount") or 0
            column_count = max(column_count, columns)
        sections.append(section)

    content = "\n\n".join(sections).strip()
    metadata = _base_metadata(ref, "sheet")
    metadata.update(
        word_count=len(content),
        sheet_count=len(sheets),
        row_count=row_count,
        column_count=column_count,
    )
    properties = raw.get("properties") or {}
    return Document(
        id=ref.token,
        title=ref.name or properties.get("title") or "Untitled Sheet",
        content=content,
        doc_type="sheet",
        metadata=DocumentMetadata(**metadata),
    )


EXTRACTORS: Dict[str, Extractor] = {
    "doc": extract_doc,
    "docx": extract_docx,
    "sheet": extract_sheet,
}


def get_extractor(doc_type: str) -> Optional[Extractor]:
    return EXTRACTORS.get(doc_type)


def extract_document(ref: DocumentRef, raw: Dict[str, Any]) -> Document:
    """Convert one raw payload using the extractor for its type."""
    extractor = get_extractor(ref.type)
    if extractor is None:
        raise UnsupportedDocumentTypeError(ref.type)
    return extractor(ref, raw or {})
