"""
Knowledge-base service: ingestion and ranked retrieval.

Ingestion runs parse → chunk → embed → index.  Queries embed the query
text, run the hybrid search of the target knowledge base and render the
matches into a prompt-ready context block.
"""
from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from app.models.schemas import IngestResponse, RAGContext, RAGQueryOptions, RAGQueryResult
from app.services.chunking import ChunkingService
from app.services.document_parser import DocumentParser
from app.services.embedding import EmbeddingError, OllamaEmbeddingService
from app.services.hybrid_search import HybridRAG, KnowledgeBaseRegistry

logger = logging.getLogger(__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"


class KnowledgeBaseError(RuntimeError):
    """Base class for knowledge-base failures."""


class KnowledgeBaseNotFoundError(KnowledgeBaseError):
    def __init__(self, kb_id: str) -> None:
        super().__init__(f"Knowledge base not found: {kb_id}")
        self.kb_id = kb_id


def format_contexts(contexts: List[RAGContext]) -> str:
    """``[Source i: name]`` header above each match, matches separated by ``---``."""
    return CONTEXT_SEPARATOR.join(
        f"[Source {i}: {ctx.source}]\n{ctx.content}" for i, ctx in enumerate(contexts, start=1)
    )


class KnowledgeBaseService:
    """Owns the registry and the embedder shared by ingestion and queries."""

    def __init__(
        self,
        embedder: OllamaEmbeddingService,
        parser: Optional[DocumentParser] = None,
        registry: Optional[KnowledgeBaseRegistry] = None,
    ) -> None:
        self.embedder = embedder
        self.parser = parser or DocumentParser()
        self.registry = registry or KnowledgeBaseRegistry(getattr(embedder, "dimension", None))

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def create(self, kb_id: str, name: Optional[str] = None,
               description: Optional[str] = None) -> HybridRAG:
        return self.registry.get_or_create(kb_id, name, description)

    def list_ids(self) -> List[str]:
        return self.registry.ids()

    def delete(self, kb_id: str) -> None:
        if not self.registry.delete(kb_id):
            raise KnowledgeBaseNotFoundError(kb_id)
        logger.info("Deleted knowledge base %r", kb_id)

    def get(self, kb_id: str) -> HybridRAG:
        kb = self.registry.get(kb_id)
        if kb is None:
            raise KnowledgeBaseNotFoundError(kb_id)
        return kb

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def ingest_document(
        self,
        content: bytes,
        filename: str,
        kb_id: str,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        strategy: Optional[str] = None,
    ) -> IngestResponse:
        """
        Parse, chunk, embed and index one file.  Failures are reported in
        the returned IngestResponse rather than raised.
        """
        document_id = uuid.uuid4().hex
        try:
            parsed = await self.parser.parse_document(content, filename)
            chunker = ChunkingService(chunk_size, chunk_overlap, strategy)
            chunks = chunker.chunk_document(
                parsed.content,
                {**parsed.metadata, "filename": filename, "documentId": document_id},
            )
            if not chunks:
                return IngestResponse(
                    document_id=document_id, filename=filename, chunk_count=0,
                    success=False, error="No content to index",
                )

            embeddings = await self.embedder.embed_batch([c.content for c in chunks])
            missing = sum(1 for e in embeddings if e is None)
            if missing:
                logger.warning(
                    "%d/%d chunks of %r have no embedding; keyword search only for those",
                    missing, len(chunks), filename,
                )
            self.create(kb_id).index_chunks(chunks, embeddings)
        except Exception as exc:
            logger.exception("Ingest of %r into %r failed", filename, kb_id)
            return IngestResponse(
                document_id=document_id, filename=filename, chunk_count=0,
                success=False, error=str(exc) or "Unknown error",
            )

        logger.info("Ingested %r into %r as %d chunks", filename, kb_id, len(chunks))
        return IngestResponse(
            document_id=document_id, filename=filename,
            chunk_count=len(chunks), success=True,
        )

    def delete_document(self, kb_id: str, document_id: str) -> int:
        removed = self.get(kb_id).delete_document(document_id)
        logger.info("Removed %d chunks of document %r from %r", removed, document_id, kb_id)
        return removed

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def query(
        self,
        kb_id: str,
        query: str,
        options: Optional[RAGQueryOptions] = None,
    ) -> RAGQueryResult:
        """
        Ranked hybrid retrieval over one knowledge base.

        Raises:
            KnowledgeBaseNotFoundError: *kb_id* is not registered.
        """
        options = options or RAGQueryOptions()
        kb = self.get(kb_id)

        query_vector = None
        if len(kb.vectors):
            try:
                query_vector = await self.embedder.embed_text(query)
            except EmbeddingError as exc:
                logger.warning("Query embedding failed, keyword ranking only: %s", exc)

        results = kb.search(
            query,
            query_vector,
            top_k=options.top_k,
            vector_weight=options.vector_weight,
            keyword_weight=options.keyword_weight,
        )
        contexts = [
            RAGContext(
                content=r.content,
                score=r.score,
                source=str(r.metadata.get("source") or "unknown"),
                metadata=dict(r.metadata) if options.include_metadata else None,
            )
            for r in results
        ]
        return RAGQueryResult(contexts=contexts, formatted_context=format_contexts(contexts))
