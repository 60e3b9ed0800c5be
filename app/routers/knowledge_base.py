"""
Knowledge-base endpoints.

POST   /query      - ranked hybrid retrieval over one knowledge base.
GET    ""          - list knowledge-base ids.
POST   ""          - JSON: create a knowledge base; multipart: ingest a file.
DELETE ""          - delete a knowledge base (``?id=``).
DELETE /documents  - remove one ingested document's chunks.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError
from starlette.datastructures import UploadFile

from app.config import settings
from app.dependencies.request_body import form_text, is_multipart, read_json_body, read_upload
from app.dependencies.services import get_knowledge_base_service
from app.models.schemas import KnowledgeBaseCreate, RAGQueryOptions
from app.services.knowledge_base import KnowledgeBaseNotFoundError, KnowledgeBaseService
from app.utils.errors import (
    ApiError,
    InvalidInputError,
    MissingInputError,
    NotFoundError,
    ProcessingFailureError,
    error_details,
    validation_details,
)
from app.utils.helpers import run_with_timeout

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------

def _query_options(raw: Any) -> RAGQueryOptions:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise InvalidInputError("Invalid query options", "options must be a JSON object")
    try:
        return RAGQueryOptions.model_validate(raw)
    except ValidationError as exc:
        raise InvalidInputError("Invalid query options", validation_details(exc))


@router.post("/query")
async def query_knowledge_base(
    request: Request,
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    """
    Body: ``{knowledgeBaseId, query, options?}``.  ``options.topK`` defaults
    to 5 and is clamped into range; ``includeMetadata`` defaults to true.
    """
    body = await read_json_body(request)
    body = body if isinstance(body, dict) else {}
    kb_id = body.get("knowledgeBaseId")
    query = body.get("query")
    if not (isinstance(kb_id, str) and kb_id) or not (isinstance(query, str) and query):
        raise MissingInputError("Missing knowledgeBaseId or query")

    options = _query_options(body.get("options"))

    try:
        result = await run_with_timeout(
            service.query(kb_id, query, options),
            settings.KB_QUERY_TIMEOUT_SECONDS,
            "Knowledge base query",
        )
    except Exception as exc:
        logger.exception(f"Query against {kb_id!r} failed")
        raise ProcessingFailureError("Failed to query knowledge base", error_details(exc))

    logger.info(f"Query against {kb_id!r} returned {len(result.contexts)} contexts")
    return {"success": True, **result.to_wire()}


# ---------------------------------------------------------------------------
# Management
# ---------------------------------------------------------------------------

@router.get("")
async def list_knowledge_bases(
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    return {"success": True, "knowledgeBases": service.list_ids()}


def _int_field(value: Any, default: int, minimum: int = 1) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= minimum else default


@router.post("")
async def create_or_ingest(
    request: Request,
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    """Multipart bodies ingest a file; JSON bodies create a knowledge base."""
    if is_multipart(request):
        return await _ingest(request, service)

    body = await read_json_body(request)
    raw_id = body.get("id") if isinstance(body, dict) else None
    if not raw_id or not isinstance(raw_id, str):
        raise MissingInputError("Missing knowledge base ID")
    try:
        payload = KnowledgeBaseCreate.model_validate(body)
    except ValidationError as exc:
        raise InvalidInputError("Invalid knowledge base", validation_details(exc))

    kb = service.create(payload.id, payload.name, payload.description)
    return {
        "success": True,
        "knowledgeBase": {"id": kb.id, "name": kb.name, "description": kb.description},
    }


async def _ingest(request: Request, service: KnowledgeBaseService):
    async with request.form() as form:
        file = form.get("file")
        kb_id = form_text(form.get("knowledgeBaseId"))
        if not isinstance(file, UploadFile) or not kb_id:
            raise MissingInputError("Missing file or knowledgeBaseId")

        chunk_size = _int_field(form.get("chunkSize"), settings.CHUNK_SIZE)
        chunk_overlap = _int_field(form.get("chunkOverlap"), settings.CHUNK_OVERLAP, minimum=0)
        strategy: Optional[str] = form_text(form.get("strategy")) or None
        filename = file.filename or "upload"

        try:
            content = await read_upload(file)
            result = await service.ingest_document(
                content, filename, kb_id,
                chunk_size=chunk_size, chunk_overlap=chunk_overlap, strategy=strategy,
            )
        except ApiError:
            raise
        except Exception as exc:
            logger.exception(f"Ingest of {filename!r} failed")
            raise ProcessingFailureError("Failed to process request", error_details(exc))

    return result.model_dump(by_alias=True, exclude_none=True)


@router.delete("")
async def delete_knowledge_base(
    kb_id: Optional[str] = Query(None, alias="id"),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    if not kb_id:
        raise MissingInputError("Missing knowledge base ID")
    try:
        service.delete(kb_id)
    except KnowledgeBaseNotFoundError:
        raise NotFoundError("Knowledge base not found")
    return {"success": True, "message": f"Knowledge base {kb_id} deleted"}


@router.delete("/documents")
async def delete_document(
    kb_id: Optional[str] = Query(None, alias="knowledgeBaseId"),
    document_id: Optional[str] = Query(None, alias="documentId"),
    service: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    if not kb_id or not document_id:
        raise MissingInputError("Missing knowledgeBaseId or documentId")
    try:
        removed = service.delete_document(kb_id, document_id)
    except KnowledgeBaseNotFoundError:
        raise NotFoundError("Knowledge base not found")
    return {"success": True, "removedChunks": removed}
