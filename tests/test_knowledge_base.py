"""Tests for KnowledgeBaseService and the /api/knowledge-base endpoints."""
import pytest
from httpx import AsyncClient

from app.dependencies.services import get_knowledge_base_service
from app.main import app
from app.models.schemas import RAGContext, RAGQueryOptions, RAGQueryResult
from app.services.embedding import EmbeddingError
from app.services.knowledge_base import (
    KnowledgeBaseNotFoundError,
    KnowledgeBaseService,
    format_contexts,
)

NOTES = (
    b"Photosynthesis converts sunlight into chemical energy in plants.\n\n"
    b"The French Revolution began in 1789 and reshaped Europe."
)


async def _ingest_notes(kb_service: KnowledgeBaseService, kb_id: str = "science"):
    return await kb_service.ingest_document(NOTES, "notes.txt", kb_id, chunk_size=80)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ingest_then_query(kb_service: KnowledgeBaseService):
    ingest = await _ingest_notes(kb_service)
    assert ingest.success is True
    assert ingest.chunk_count == 2

    result = await kb_service.query("science", "sunlight energy plants")
    top = result.contexts[0]
    assert "Photosynthesis" in top.content
    assert top.source == "notes.txt"
    assert top.metadata["documentId"] == ingest.document_id
    assert top.metadata["chunkIndex"] == 0
    assert result.formatted_context.startswith("[Source 1: notes.txt]\nPhotosynthesis")


@pytest.mark.asyncio
async def test_query_without_metadata(kb_service: KnowledgeBaseService):
    await _ingest_notes(kb_service)
    options = RAGQueryOptions.model_validate({"includeMetadata": False, "topK": 1})
    result = await kb_service.query("science", "French Revolution", options)

    assert len(result.contexts) == 1
    assert result.contexts[0].metadata is None
    assert "metadata" not in result.to_wire()["contexts"][0]


@pytest.mark.asyncio
async def test_query_unknown_knowledge_base(kb_service: KnowledgeBaseService):
    with pytest.raises(KnowledgeBaseNotFoundError, match="Knowledge base not found: nope"):
        await kb_service.query("nope", "anything")


@pytest.mark.asyncio
async def test_query_falls_back_to_keywords_when_embedding_fails(kb_service, embedder):
    await _ingest_notes(kb_service)

    async def broken(text):
        raise EmbeddingError("Ollama down")

    embedder.embed_text = broken
    result = await kb_service.query("science", "Revolution")
    assert [c.source for c in result.contexts] == ["notes.txt"]
    assert "1789" in result.contexts[0].content


@pytest.mark.asyncio
async def test_ingest_failures_are_reported(kb_service: KnowledgeBaseService):
    empty = await kb_service.ingest_document(b"   ", "blank.txt", "science")
    assert empty.success is False
    assert empty.error == "No content to index"

    unsupported = await kb_service.ingest_document(b"MZ", "tool.exe", "science")
    assert unsupported.success is False
    assert "Unsupported file type" in unsupported.error


@pytest.mark.asyncio
async def test_delete_document(kb_service: KnowledgeBaseService):
    ingest = await _ingest_notes(kb_service)
    assert kb_service.delete_document("science", ingest.document_id) == 2
    result = await kb_service.query("science", "sunlight")
    assert result.contexts == []
    assert result.formatted_context == ""


def test_delete_unknown_knowledge_base(kb_service: KnowledgeBaseService):
    with pytest.raises(KnowledgeBaseNotFoundError):
        kb_service.delete("missing")


def test_format_contexts():
    contexts = [
        RAGContext(content="alpha", score=0.9, source="a.txt"),
        RAGContext(content="beta", score=0.5, source="b.txt"),
    ]
    assert format_contexts(contexts) == "[Source 1: a.txt]\nalpha\n\n---\n\n[Source 2: b.txt]\nbeta"


def test_query_options_defaults_and_clamping():
    assert RAGQueryOptions().top_k == 5
    assert RAGQueryOptions().include_metadata is True
    assert RAGQueryOptions.model_validate({"topK": 0}).top_k == 5
    assert RAGQueryOptions.model_validate({"topK": 1000}).top_k == 50
    assert RAGQueryOptions.model_validate({"topK": -3}).top_k == 1


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

class RecordingService:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def query(self, kb_id, query, options):
        self.calls.append((kb_id, query, options))
        if self.error is not None:
            raise self.error
        return RAGQueryResult()


@pytest.mark.asyncio
async def test_query_route_missing_fields(client: AsyncClient):
    resp = await client.post("/api/knowledge-base/query", json={"query": "x"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing knowledgeBaseId or query"}

    resp = await client.post(
        "/api/knowledge-base/query", json={"knowledgeBaseId": "kb", "query": ""}
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_query_route_invalid_json(client: AsyncClient):
    resp = await client.post(
        "/api/knowledge-base/query",
        content=b"{",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON body"}


@pytest.mark.asyncio
async def test_query_route_applies_option_defaults(client: AsyncClient):
    service = RecordingService()
    app.dependency_overrides[get_knowledge_base_service] = lambda: service

    resp = await client.post(
        "/api/knowledge-base/query", json={"knowledgeBaseId": "kb", "query": "hello"}
    )
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "contexts": [], "formattedContext": ""}

    kb_id, query, options = service.calls[0]
    assert (kb_id, query) == ("kb", "hello")
    assert options.top_k == 5
    assert options.include_metadata is True


@pytest.mark.asyncio
@pytest.mark.parametrize("top_k, expected", [(1000, 50), (-3, 1), (7, 7)])
async def test_query_route_clamps_top_k(client: AsyncClient, top_k, expected):
    service = RecordingService()
    app.dependency_overrides[get_knowledge_base_service] = lambda: service

    resp = await client.post(
        "/api/knowledge-base/query",
        json={"knowledgeBaseId": "kb", "query": "hello", "options": {"topK": top_k}},
    )
    assert resp.status_code == 200
    assert service.calls[0][2].top_k == expected


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "options",
    [{"topK": "5"}, {"vectorWeight": -0.1}, {"keywordWeight": "high"}, {"includeMetadata": "no"}, []],
)
async def test_query_route_rejects_bad_options(client: AsyncClient, options):
    resp = await client.post(
        "/api/knowledge-base/query",
        json={"knowledgeBaseId": "kb", "query": "hello", "options": options},
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid query options"
    assert body["details"]


@pytest.mark.asyncio
async def test_query_route_reports_service_failure(client: AsyncClient):
    service = RecordingService(error=RuntimeError("index not found"))
    app.dependency_overrides[get_knowledge_base_service] = lambda: service

    resp = await client.post(
        "/api/knowledge-base/query", json={"knowledgeBaseId": "kb", "query": "hello"}
    )
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to query knowledge base", "details": "index not found"}


@pytest.mark.asyncio
async def test_query_route_unknown_knowledge_base(client: AsyncClient):
    resp = await client.post(
        "/api/knowledge-base/query", json={"knowledgeBaseId": "nope", "query": "hello"}
    )
    assert resp.status_code == 500
    assert resp.json()["details"] == "Knowledge base not found: nope"


@pytest.mark.asyncio
async def test_create_ingest_query_roundtrip(client: AsyncClient):
    resp = await client.post(
        "/api/knowledge-base", json={"id": "science", "name": "Science notes"}
    )
    assert resp.status_code == 200
    assert resp.json()["knowledgeBase"] == {
        "id": "science", "name": "Science notes", "description": "",
    }

    resp = await client.post(
        "/api/knowledge-base",
        data={"knowledgeBaseId": "science", "chunkSize": "80", "chunkOverlap": "0"},
        files={"file": ("notes.txt", NOTES, "text/plain")},
    )
    assert resp.status_code == 200
    ingest = resp.json()
    assert ingest["success"] is True
    assert ingest["filename"] == "notes.txt"
    assert ingest["chunkCount"] == 2

    resp = await client.post(
        "/api/knowledge-base/query",
        json={"knowledgeBaseId": "science", "query": "photosynthesis sunlight", "options": {"topK": 1}},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert len(data["contexts"]) == 1
    assert data["contexts"][0]["source"] == "notes.txt"
    assert data["contexts"][0]["metadata"]["documentId"] == ingest["documentId"]
    assert data["formattedContext"].startswith("[Source 1: notes.txt]")

    resp = await client.delete(
        "/api/knowledge-base/documents",
        params={"knowledgeBaseId": "science", "documentId": ingest["documentId"]},
    )
    assert resp.json() == {"success": True, "removedChunks": 2}


@pytest.mark.asyncio
async def test_create_requires_id(client: AsyncClient):
    resp = await client.post("/api/knowledge-base", json={"name": "No id"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing knowledge base ID"}


@pytest.mark.asyncio
async def test_ingest_requires_file_and_knowledge_base(client: AsyncClient):
    resp = await client.post(
        "/api/knowledge-base", files={"file": ("notes.txt", NOTES, "text/plain")}
    )
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing file or knowledgeBaseId"}


@pytest.mark.asyncio
async def test_list_and_delete(client: AsyncClient, kb_service: KnowledgeBaseService):
    kb_service.create("one")
    kb_service.create("two")

    resp = await client.get("/api/knowledge-base")
    assert resp.json() == {"success": True, "knowledgeBases": ["one", "two"]}

    resp = await client.delete("/api/knowledge-base", params={"id": "one"})
    assert resp.status_code == 200
    assert kb_service.list_ids() == ["two"]

    resp = await client.delete("/api/knowledge-base", params={"id": "one"})
    assert resp.status_code == 404
    assert resp.json() == {"error": "Knowledge base not found"}

    resp = await client.delete("/api/knowledge-base")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing knowledge base ID"}


@pytest.mark.asyncio
async def test_delete_document_requires_both_ids(client: AsyncClient):
    resp = await client.delete("/api/knowledge-base/documents", params={"knowledgeBaseId": "kb"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing knowledgeBaseId or documentId"}
