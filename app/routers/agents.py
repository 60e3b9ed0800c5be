"""
Super-agent endpoint.

POST /super - run one agent task.  JSON ``{type, input, options}`` or a
multipart form with the same fields (``options`` as JSON text) plus an
optional ``file`` to parse into the task input.
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator, Dict, Optional

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.datastructures import UploadFile

from app.dependencies.request_body import form_text, is_multipart, read_json_body, read_upload
from app.dependencies.services import get_super_agent
from app.models.schemas import AgentTaskType
from app.services.document_generator import (
    DOCX_CONTENT_TYPE,
    PPTX_CONTENT_TYPE,
    XLSX_CONTENT_TYPE,
)
from app.services.super_agent import AgentPipelineError, AgentTask, SuperAgent, UploadedDocument
from app.utils.errors import InvalidInputError, MissingInputError, UnknownActionError

logger = logging.getLogger(__name__)

router = APIRouter()

_CONTENT_TYPES = {
    "docx": DOCX_CONTENT_TYPE,
    "pptx": PPTX_CONTENT_TYPE,
    "xlsx": XLSX_CONTENT_TYPE,
}


def _build_task(
    raw_type: Any,
    raw_input: Any,
    raw_options: Any,
    document: Optional[UploadedDocument] = None,
) -> AgentTask:
    text = raw_input if isinstance(raw_input, str) else ""
    if not raw_type or not (text or document is not None):
        raise MissingInputError("Missing required fields: type and input")
    try:
        task_type = AgentTaskType(raw_type)
    except (ValueError, TypeError):
        raise UnknownActionError("Unknown task type")

    if raw_options is None:
        options: Dict[str, Any] = {}
    elif isinstance(raw_options, dict):
        options = raw_options
    else:
        raise InvalidInputError("Invalid task options", "options must be a JSON object")
    return AgentTask(type=task_type, input=text, options=options, document=document)


async def _read_task(request: Request) -> AgentTask:
    if not is_multipart(request):
        body = await read_json_body(request)
        body = body if isinstance(body, dict) else {}
        return _build_task(body.get("type"), body.get("input"), body.get("options"))

    async with request.form() as form:
        raw_options: Any = form_text(form.get("options")) or None
        if raw_options is not None:
            try:
                raw_options = json.loads(raw_options)
            except ValueError:
                raise InvalidInputError("Invalid task options", "options must be valid JSON")

        document = None
        file = form.get("file")
        if isinstance(file, UploadFile):
            document = UploadedDocument(
                content=await read_upload(file), filename=file.filename or "upload"
            )
        return _build_task(
            form_text(form.get("type")), form_text(form.get("input")), raw_options, document
        )


async def _guarded(chunks: AsyncGenerator[str, None], task: AgentTask) -> AsyncGenerator[str, None]:
    # Headers are already sent, so a failure can only end the stream
    try:
        async for chunk in chunks:
            yield chunk
    except Exception as exc:
        logger.error("Stream for %s ended early: %s", task.type.value, exc)
    finally:
        await chunks.aclose()


def _failure(message: str, details: Optional[str], metadata: Optional[dict]) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": message, "details": details}
    if metadata is not None:
        content["metadata"] = metadata
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=content)


@router.post("/super")
async def run_super_agent(
    request: Request,
    agent: SuperAgent = Depends(get_super_agent),
):
    """
    Execute a super-agent task.

    Text results come back as JSON ``{success, output, metadata}``; office
    artifacts as a file attachment; ``options.stream = true`` on a text
    task streams ``text/plain``.
    """
    task = await _read_task(request)
    logger.info("Agent task %s received", task.type.value)

    if task.options.get("stream") is True and agent.is_streamable(task):
        try:
            chunks = await agent.open_stream(task)
        except AgentPipelineError as exc:
            return _failure(
                "Agent task failed", str(exc),
                exc.metadata.model_dump(by_alias=True, exclude_none=True),
            )
        return StreamingResponse(_guarded(chunks, task), media_type="text/plain; charset=utf-8")

    result = await agent.execute_task(task)
    if not result.success:
        return _failure("Agent task failed", result.error, result.to_dict()["metadata"])

    if result.is_binary:
        ext = result.metadata.format or "bin"
        return Response(
            content=result.output,
            media_type=_CONTENT_TYPES.get(ext, "application/octet-stream"),
            headers={"Content-Disposition": f'attachment; filename="generated.{ext}"'},
        )
    return result.to_dict()
