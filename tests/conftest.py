"""
Shared fixtures for the Agent Platform backend tests.

No Ollama server is needed: the embedder and the language model are
replaced with in-process fakes through ``app.dependency_overrides``.
"""
from __future__ import annotations

import asyncio
import hashlib
from typing import AsyncGenerator, List, Optional

import numpy as np
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.dependencies.services import (
    get_document_parser,
    get_embedding_service,
    get_knowledge_base_service,
    get_llm_service,
)
from app.main import app
from app.services.document_parser import DocumentParser
from app.services.knowledge_base import KnowledgeBaseService
from app.services.llm import GenerationResult, LLMServiceError, ModelConfig
from app.utils.helpers import tokenize

FAKE_DIM = 64


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeEmbedder:
    """Hashed bag-of-words vectors: texts sharing words point the same way."""

    dimension = FAKE_DIM

    def __init__(self) -> None:
        self.healthy = True
        self.calls = 0

    def vector(self, text: str) -> np.ndarray:
        vec = np.zeros(FAKE_DIM, dtype=np.float32)
        for token in tokenize(text):
            vec[int(hashlib.md5(token.encode()).hexdigest(), 16) % FAKE_DIM] += 1.0
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm else vec

    async def embed_text(self, text: str) -> np.ndarray:
        self.calls += 1
        return self.vector(text)

    async def embed_batch(self, texts: List[str]) -> List[Optional[np.ndarray]]:
        return [await self.embed_text(t) for t in texts]

    async def check_ollama_health(self) -> bool:
        return self.healthy


class FakeLLM:
    """Records every call and answers with a canned response."""

    def __init__(self, response: str = "fake answer") -> None:
        self.config = ModelConfig(model="fake-model")
        self.response = response
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self.calls: List[dict] = []
        self.stream_open = False

    async def generate(self, prompt, system=None, config=None) -> GenerationResult:
        cfg = config or self.config
        self.calls.append({"prompt": prompt, "system": system, "model": cfg.model})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return GenerationResult(text=self.response, model=cfg.model, tokens_used=42)

    async def stream(self, prompt, system=None, config=None):
        cfg = config or self.config
        self.calls.append({"prompt": prompt, "system": system, "model": cfg.model})
        if self.error is not None:
            raise LLMServiceError(str(self.error))
        self.stream_open = True
        try:
            for word in self.response.split(" "):
                yield word + " "
        finally:
            self.stream_open = False


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def parser() -> DocumentParser:
    return DocumentParser()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def kb_service(embedder: FakeEmbedder, parser: DocumentParser) -> KnowledgeBaseService:
    return KnowledgeBaseService(embedder, parser)


@pytest_asyncio.fixture
async def client(
    embedder: FakeEmbedder,
    llm: FakeLLM,
    kb_service: KnowledgeBaseService,
    parser: DocumentParser,
) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient wired to the FastAPI app with every external
    collaborator replaced by a per-test fake.
    """
    app.dependency_overrides[get_embedding_service] = lambda: embedder
    app.dependency_overrides[get_knowledge_base_service] = lambda: kb_service
    app.dependency_overrides[get_llm_service] = lambda: llm
    app.dependency_overrides[get_document_parser] = lambda: parser

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
