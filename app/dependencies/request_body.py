"""
Request-body readers shared by the routers.

Bodies are read explicitly (rather than through FastAPI body parameters)
so each route can map a malformed or missing field onto its own error
envelope.
"""
from typing import Any, Optional

from fastapi import Request
from starlette.datastructures import UploadFile

from app.config import settings
from app.utils.errors import InvalidInputError, PayloadTooLargeError

READ_SLICE = 1024 * 1024  # 1 MB


async def read_json_body(request: Request) -> Any:
    """Decoded JSON body; 400 ``Invalid JSON body`` when it does not parse."""
    try:
        return await request.json()
    except ValueError as exc:
        raise InvalidInputError("Invalid JSON body") from exc


def is_multipart(request: Request) -> bool:
    return request.headers.get("content-type", "").lower().startswith("multipart/form-data")


async def read_upload(file: UploadFile, limit: Optional[int] = None) -> bytes:
    """Read an uploaded file in 1 MB slices, enforcing the size limit."""
    limit = limit or settings.MAX_FILE_SIZE
    parts = []
    size = 0
    while True:
        chunk = await file.read(READ_SLICE)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            raise PayloadTooLargeError(
                "File too large",
                details=f"File exceeds the {limit // (1024 * 1024)} MB size limit.",
            )
        parts.append(chunk)
    return b"".join(parts)


def form_text(value: Any) -> str:
    """A text form field, or '' when absent or not text."""
    return value if isinstance(value, str) else ""
