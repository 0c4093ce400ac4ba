"""Conversion of engine result rows into documents.

Conversion is lenient: a row without a usable id is skipped, and
metadata that cannot be decoded is dropped while the document is still
produced. Each row yields an explicit outcome (`ConvertedRow` or `SkippedRow`)
so callers can see what was degraded without exceptions being swallowed.

Field precedence within a row:
    1. "id" and "content" populate the document itself
    2. entries of the JSON "metadata" column and any other (dynamic) column are
       merged into metadata in column order, later columns winning
    3. the engine score is written last, as both `Document.score` and
       metadata["score"]
"""

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from loguru import logger

from milvus_backend.models import Document, ResultSet
from milvus_backend.types import CONTENT_FIELD, ID_FIELD, METADATA_FIELD, SCORE_KEY

DocumentConverter = Callable[[ResultSet], list[Document]]


@dataclass(frozen=True)
class ConvertedRow:
    document: Document


@dataclass(frozen=True)
class SkippedRow:
    reason: str


RowOutcome = ConvertedRow | SkippedRow


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes | bytearray):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return None
    return value if isinstance(value, str) else str(value)


def decode_metadata(value: Any) -> dict[str, Any] | None:
    """Decode a metadata column value into a string-keyed map.

    Accepts an already decoded mapping, JSON bytes or JSON text. Returns None
    when the value is not a JSON object.
    """
    if isinstance(value, Mapping):
        return {str(k): v for k, v in value.items()}
    if isinstance(value, bytes | bytearray | str):
        try:
            decoded = json.loads(value)
        except ValueError:
            return None
        return decoded if isinstance(decoded, dict) else None
    return None


def convert_row(row: Mapping[str, Any], score: float | None = None) -> RowOutcome:
    """Convert one result row into a document, or explain why it was skipped."""
    doc_id = _as_text(row.get(ID_FIELD))
    if not doc_id:
        return SkippedRow(f"missing or unreadable {ID_FIELD!r} field")

    content = _as_text(row.get(CONTENT_FIELD)) or ""

    metadata: dict[str, Any] = {}
    for name, value in row.items():
        if name in (ID_FIELD, CONTENT_FIELD):
            continue
        if name == METADATA_FIELD:
            decoded = decode_metadata(value)
            if decoded is None:
                if value is not None:
                    logger.warning(f"Ignoring undecodable metadata for document {doc_id}")
                continue
            metadata.update(decoded)
        else:
            metadata[name] = value

    if score is not None:
        metadata[SCORE_KEY] = score

    return ConvertedRow(Document(id=doc_id, content=content, metadata=metadata, score=score))


def default_document_converter(result_set: ResultSet) -> list[Document]:
    """Convert every row of a result set, dropping rows that cannot be used."""
    docs: list[Document] = []
    for idx, row in enumerate(result_set.rows):
        outcome = convert_row(row, result_set.score_at(idx))
        if isinstance(outcome, SkippedRow):
            logger.warning(f"Skipping result row {idx}: {outcome.reason}")
            continue
        docs.append(outcome.document)
    return docs
