"""
Document endpoints.

POST ""          - parse an uploaded file into text, metadata and sections.
POST /generate   - build a docx / pptx / xlsx file from structured data.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from fastapi import APIRouter, Depends, Request, Response
from starlette.datastructures import UploadFile

from app.config import settings
from app.dependencies.request_body import read_json_body, read_upload
from app.dependencies.services import get_document_parser
from app.models.schemas import DocumentAction, DocumentFormat
from app.services.document_generator import (
    DOCX_CONTENT_TYPE,
    PPTX_CONTENT_TYPE,
    XLSX_CONTENT_TYPE,
    DocumentGenerationError,
    generate_docx,
    generate_pptx,
    generate_xlsx,
)
from app.services.document_parser import DocumentParser
from app.utils.errors import (
    ApiError,
    InvalidInputError,
    MissingInputError,
    ProcessingFailureError,
    UnknownActionError,
    error_details,
)
from app.utils.helpers import run_with_timeout, safe_filename

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------

@dataclass
class DocumentUploadRequest:
    """The multipart form of POST /api/documents after boundary validation."""

    file: UploadFile
    action: DocumentAction

    @property
    def filename(self) -> str:
        return self.file.filename or "upload"


def _upload_request(form) -> DocumentUploadRequest:
    file = form.get("file")
    if not isinstance(file, UploadFile):
        raise MissingInputError("No file provided")

    raw_action = form.get("action") or DocumentAction.PARSE.value
    if not isinstance(raw_action, str):
        raise UnknownActionError("Unknown action")
    try:
        action = DocumentAction(raw_action)
    except ValueError:
        raise UnknownActionError("Unknown action")
    return DocumentUploadRequest(file=file, action=action)


@router.post("")
async def process_document(
    request: Request,
    parser: DocumentParser = Depends(get_document_parser),
):
    """
    Parse an uploaded document.

    Multipart fields: ``file`` (required) and ``action`` (``parse``, the
    default).  Responds with the filename plus the parser's content,
    metadata, sections and OCR text.
    """
    async with request.form() as form:
        upload = _upload_request(form)
        try:
            content = await read_upload(upload.file)
            parsed = await run_with_timeout(
                parser.parse_document(content, upload.filename),
                settings.PARSE_TIMEOUT_SECONDS,
                "Document parsing",
            )
        except ApiError:
            raise
        except Exception as exc:
            logger.exception(f"Failed to process {upload.filename!r}")
            raise ProcessingFailureError("Failed to process document", error_details(exc))

    logger.info(
        f"Parsed {upload.filename!r}: {parsed.metadata.get('wordCount', 0)} words, "
        f"{len(parsed.sections)} sections"
    )
    return {"success": True, "filename": upload.filename, **parsed.to_dict()}


# ---------------------------------------------------------------------------
# Generate
# ---------------------------------------------------------------------------

_GENERATORS = {
    DocumentFormat.DOCX: (DOCX_CONTENT_TYPE, "Document", "document"),
    DocumentFormat.PPTX: (PPTX_CONTENT_TYPE, "Presentation", "presentation"),
    DocumentFormat.XLSX: (XLSX_CONTENT_TYPE, None, "spreadsheet"),
}


def _render(fmt: DocumentFormat, data, title):
    if fmt == DocumentFormat.DOCX:
        return generate_docx(data, title)
    if fmt == DocumentFormat.PPTX:
        return generate_pptx(data, title)
    return generate_xlsx(data)


@router.post("/generate")
async def generate_document(request: Request) -> Response:
    """
    Build an office document from ``{type, title?, data}`` and return it
    as an attachment.
    """
    body = await read_json_body(request)
    if not isinstance(body, dict) or not body.get("type") or not body.get("data"):
        raise MissingInputError("Missing required fields: type and data")

    try:
        fmt = DocumentFormat(body["type"])
    except (ValueError, TypeError):
        raise UnknownActionError("Unsupported document type")

    title = body.get("title") if isinstance(body.get("title"), str) else None
    content_type, default_title, default_name = _GENERATORS[fmt]

    try:
        content = await asyncio.to_thread(_render, fmt, body["data"], title or default_title)
    except DocumentGenerationError as exc:
        raise InvalidInputError("Invalid document data", error_details(exc))
    except Exception as exc:
        logger.exception(f"Failed to generate {fmt.value}")
        raise ProcessingFailureError("Failed to generate document", error_details(exc))

    filename = f"{safe_filename(title or '', default_name)}.{fmt.value}"
    logger.info(f"Generated {filename} ({len(content):,} bytes)")
    return Response(
        content=content,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
