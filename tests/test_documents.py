"""Tests for POST /api/documents and POST /api/documents/generate."""
import io
import json

import pytest
from httpx import AsyncClient
from starlette.datastructures import UploadFile

from app.config import settings
from app.dependencies.request_body import read_upload
from app.services.document_generator import DOCX_CONTENT_TYPE, XLSX_CONTENT_TYPE
from app.utils.errors import PayloadTooLargeError

CSV_BYTES = b"name,score\nAda,9\nGrace,10\n"


# ---------------------------------------------------------------------------
# Parse
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_missing_file_returns_400(client: AsyncClient):
    resp = await client.post("/api/documents", data={"action": "parse"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "No file provided"}


@pytest.mark.asyncio
async def test_empty_body_returns_400(client: AsyncClient):
    resp = await client.post("/api/documents")
    assert resp.status_code == 400
    assert resp.json() == {"error": "No file provided"}


@pytest.mark.asyncio
async def test_text_field_named_file_is_not_a_file(client: AsyncClient):
    resp = await client.post(
        "/api/documents",
        data={"file": "just text"},
        files={"other": ("x.txt", b"x", "text/plain")},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "No file provided"}


@pytest.mark.asyncio
async def test_unknown_action_returns_400(client: AsyncClient):
    resp = await client.post(
        "/api/documents",
        data={"action": "summarize"},
        files={"file": ("scores.csv", CSV_BYTES, "text/csv")},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Unknown action"}


@pytest.mark.asyncio
async def test_parse_csv(client: AsyncClient):
    resp = await client.post(
        "/api/documents",
        files={"file": ("scores.csv", CSV_BYTES, "text/csv")},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["filename"] == "scores.csv"
    assert "| name | score |" in data["content"]
    assert "| Grace | 10 |" in data["content"]
    assert data["metadata"]["type"] == "csv"
    assert data["sections"] == []
    assert data["imagesText"] == []


@pytest.mark.asyncio
async def test_parse_with_explicit_action(client: AsyncClient):
    resp = await client.post(
        "/api/documents",
        data={"action": "parse"},
        files={"file": ("notes.md", b"# Notes\n\nSome text here.", "text/markdown")},
    )
    assert resp.status_code == 200
    assert resp.json()["content"].startswith("# Notes")


@pytest.mark.asyncio
async def test_unsupported_type_is_processing_failure(client: AsyncClient):
    resp = await client.post(
        "/api/documents",
        files={"file": ("tool.exe", b"MZ\x90\x00", "application/octet-stream")},
    )
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Failed to process document"
    assert "Unsupported file type" in body["details"]


@pytest.mark.asyncio
async def test_corrupt_docx_is_processing_failure(client: AsyncClient):
    resp = await client.post(
        "/api/documents",
        files={"file": ("broken.docx", b"not a zip archive", DOCX_CONTENT_TYPE)},
    )
    assert resp.status_code == 500
    assert resp.json()["error"] == "Failed to process document"
    assert resp.json()["details"].startswith("Cannot open DOCX file")


@pytest.mark.asyncio
async def test_multipart_over_limit_is_rejected(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "MAX_FILE_SIZE", 100)
    resp = await client.post(
        "/api/documents",
        files={"file": ("big.txt", b"x" * 1000, "text/plain")},
    )
    assert resp.status_code == 413
    assert resp.json()["error"] == "Request body too large"


@pytest.mark.asyncio
async def test_read_upload_enforces_limit():
    upload = UploadFile(file=io.BytesIO(b"x" * 10), filename="a.txt")
    with pytest.raises(PayloadTooLargeError) as excinfo:
        await read_upload(upload, limit=5)
    assert excinfo.value.message == "File too large"


# ---------------------------------------------------------------------------
# Generate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_generate_docx(client: AsyncClient):
    resp = await client.post(
        "/api/documents/generate",
        json={
            "type": "docx",
            "title": "Report",
            "data": [
                {"type": "heading", "level": 1, "content": "Overview"},
                {"type": "paragraph", "content": "All good."},
            ],
        },
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"] == DOCX_CONTENT_TYPE
    assert resp.headers["content-disposition"] == 'attachment; filename="Report.docx"'
    assert resp.content[:2] == b"PK"


@pytest.mark.asyncio
async def test_generate_xlsx_default_filename(client: AsyncClient):
    resp = await client.post(
        "/api/documents/generate",
        json={"type": "xlsx", "data": [{"name": "Data", "headers": ["a"], "rows": [[1]]}]},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"] == XLSX_CONTENT_TYPE
    assert resp.headers["content-disposition"] == 'attachment; filename="spreadsheet.xlsx"'


@pytest.mark.asyncio
async def test_generate_missing_fields(client: AsyncClient):
    resp = await client.post("/api/documents/generate", json={"type": "docx"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing required fields: type and data"}


@pytest.mark.asyncio
async def test_generate_unsupported_type(client: AsyncClient):
    resp = await client.post(
        "/api/documents/generate", json={"type": "pdf", "data": [{"type": "paragraph"}]}
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Unsupported document type"}


@pytest.mark.asyncio
async def test_generate_ragged_sheet_is_invalid(client: AsyncClient):
    resp = await client.post(
        "/api/documents/generate",
        json={
            "type": "xlsx",
            "data": [{"name": "Bad", "headers": ["a", "b"], "rows": [[1, 2], [3]]}],
        },
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid document data"
    assert "inconsistent" in body["details"]


@pytest.mark.asyncio
async def test_generate_invalid_json(client: AsyncClient):
    resp = await client.post(
        "/api/documents/generate",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON body"}


@pytest.mark.asyncio
async def test_json_body_over_limit_is_rejected(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "MAX_REQUEST_BODY_SIZE", 50)
    resp = await client.post(
        "/api/documents/generate",
        json={"type": "docx", "data": [{"type": "paragraph", "content": "x" * 200}]},
    )
    assert resp.status_code == 413


def _chunked(payload: bytes, size: int = 40):
    async def body():
        for start in range(0, len(payload), size):
            yield payload[start:start + size]
    return body()


@pytest.mark.asyncio
async def test_chunked_json_body_over_limit_is_rejected(client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "MAX_REQUEST_BODY_SIZE", 50)
    payload = json.dumps(
        {"type": "docx", "data": [{"type": "paragraph", "content": "x" * 200}]}
    ).encode()
    resp = await client.post(
        "/api/documents/generate",
        content=_chunked(payload),
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 413
    assert resp.json()["error"] == "Request body too large"


@pytest.mark.asyncio
async def test_chunked_json_body_under_limit_is_accepted(client: AsyncClient):
    payload = json.dumps(
        {"type": "docx", "data": [{"type": "paragraph", "content": "short"}]}
    ).encode()
    resp = await client.post(
        "/api/documents/generate",
        content=_chunked(payload),
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 200
    assert resp.content[:2] == b"PK"


@pytest.mark.asyncio
async def test_generate_control_characters_are_invalid(client: AsyncClient):
    resp = await client.post(
        "/api/documents/generate",
        json={"type": "docx", "data": [{"type": "paragraph", "content": "bad\u0001char"}]},
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid document data"
    assert "control characters" in body["details"]
