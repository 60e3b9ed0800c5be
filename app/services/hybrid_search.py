"""
Hybrid retrieval: BM25 keyword scoring fused with vector similarity.

Results from both indexes are combined with weighted Reciprocal Rank
Fusion:

    score(d) = Σ weight_i / (k + rank_i(d) + 1)

Also home of the process-local knowledge-base registry.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from rank_bm25 import BM25Plus

from app.config import settings
from app.services.chunking import Chunk
from app.services.vector_store import SearchResult, VectorStore
from app.utils.helpers import tokenize

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# BM25
# ---------------------------------------------------------------------------

class BM25Index:
    """
    Okapi-style BM25 over chunk text (k1 = 1.5, b = 0.75).

    Scoring is delegated to ``rank_bm25.BM25Plus``, whose idf stays positive
    in small corpora.  The model is rebuilt after every ``add``/``remove``;
    only chunks containing at least one query term are ranked.
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75) -> None:
        self.k1 = k1
        self.b = b
        self._chunks: Dict[str, Chunk] = {}
        self._ids: List[str] = []
        self._model: Optional[BM25Plus] = None

    def __len__(self) -> int:
        return len(self._chunks)

    def add(self, chunks: List[Chunk]) -> None:
        for chunk in chunks:
            self._chunks[chunk.id] = chunk
        self._rebuild()

    def remove(self, ids: List[str]) -> None:
        for chunk_id in ids:
            self._chunks.pop(chunk_id, None)
        self._rebuild()

    def search(self, query: str, top_k: int) -> List[SearchResult]:
        terms = tokenize(query)
        if not terms or self._model is None:
            return []

        matching = [
            idx for idx, freqs in enumerate(self._model.doc_freqs)
            if any(term in freqs for term in terms)
        ]
        if not matching:
            return []

        scores = self._model.get_scores(terms)
        ranked = sorted(matching, key=lambda idx: scores[idx], reverse=True)[:top_k]
        return [
            SearchResult(
                id=self._ids[idx],
                content=self._chunks[self._ids[idx]].content,
                score=float(scores[idx]),
                metadata=self._chunks[self._ids[idx]].metadata,
            )
            for idx in ranked
        ]

    def _rebuild(self) -> None:
        self._ids = list(self._chunks)
        corpus = [tokenize(self._chunks[chunk_id].content) for chunk_id in self._ids]
        # BM25 needs at least one token overall to compute the average length
        if not any(corpus):
            self._model = None
            return
        self._model = BM25Plus(corpus, k1=self.k1, b=self.b)


# ---------------------------------------------------------------------------
# Hybrid index
# ---------------------------------------------------------------------------

@dataclass
class HybridRAG:
    """One knowledge base: a vector index and a keyword index over the same chunks."""

    id: str
    name: str = ""
    description: str = ""
    vectors: VectorStore = field(default_factory=VectorStore)
    keywords: BM25Index = field(default_factory=BM25Index)
    chunks: Dict[str, Chunk] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.name = self.name or self.id

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    def index_chunks(self, chunks: List[Chunk], embeddings: List[Optional[np.ndarray]]) -> None:
        """
        Add chunks to both indexes.  A chunk whose embedding is ``None`` is
        still keyword-searchable.  Runs without awaiting, so concurrent
        requests never see a half-indexed document.
        """
        with_vectors = [(c, e) for c, e in zip(chunks, embeddings) if e is not None]
        if with_vectors:
            self.vectors.upsert(
                ids=[c.id for c, _ in with_vectors],
                contents=[c.content for c, _ in with_vectors],
                vectors=[e for _, e in with_vectors],
                metadata=[c.metadata for c, _ in with_vectors],
            )
        self.keywords.add(chunks)
        for chunk in chunks:
            self.chunks[chunk.id] = chunk

    def search(
        self,
        query: str,
        query_vector: Optional[np.ndarray],
        top_k: int,
        vector_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
    ) -> List[SearchResult]:
        """
        Fuse the vector and keyword rankings.  Each side fetches
        ``top_k * 2`` candidates; with no query vector only the keyword
        side contributes.
        """
        v_weight = settings.RAG_VECTOR_WEIGHT if vector_weight is None else vector_weight
        k_weight = settings.RAG_KEYWORD_WEIGHT if keyword_weight is None else keyword_weight
        rrf_k = settings.RAG_RRF_K
        fetch = top_k * 2

        vector_hits = (
            self.vectors.search(query_vector, fetch) if query_vector is not None else []
        )
        keyword_hits = self.keywords.search(query, fetch)

        fused: Dict[str, float] = {}
        hits: Dict[str, SearchResult] = {}
        for weight, ranking in ((v_weight, vector_hits), (k_weight, keyword_hits)):
            for rank, hit in enumerate(ranking):
                fused[hit.id] = fused.get(hit.id, 0.0) + weight / (rrf_k + rank + 1)
                hits.setdefault(hit.id, hit)

        ranked = sorted(fused.items(), key=lambda item: item[1], reverse=True)[:top_k]
        return [
            SearchResult(
                id=chunk_id,
                content=hits[chunk_id].content,
                score=score,
                metadata=hits[chunk_id].metadata,
            )
            for chunk_id, score in ranked
        ]

    def delete_document(self, document_id: str) -> int:
        """Drop every chunk of *document_id*; returns the number removed."""
        ids = [
            chunk_id for chunk_id, chunk in self.chunks.items()
            if chunk.metadata.get("documentId") == document_id
        ]
        self.vectors.delete(ids)
        self.keywords.remove(ids)
        for chunk_id in ids:
            del self.chunks[chunk_id]
        return len(ids)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class KnowledgeBaseRegistry:
    """Process-local mapping of knowledge-base id to HybridRAG."""

    def __init__(self, dimension: Optional[int] = None) -> None:
        self._dimension = dimension
        self._bases: Dict[str, HybridRAG] = {}

    def __len__(self) -> int:
        return len(self._bases)

    def __contains__(self, kb_id: str) -> bool:
        return kb_id in self._bases

    def get(self, kb_id: str) -> Optional[HybridRAG]:
        return self._bases.get(kb_id)

    def get_or_create(self, kb_id: str, name: Optional[str] = None,
                      description: Optional[str] = None) -> HybridRAG:
        kb = self._bases.get(kb_id)
        if kb is None:
            kb = HybridRAG(
                id=kb_id,
                name=name or kb_id,
                description=description or "",
                vectors=VectorStore(self._dimension),
            )
            self._bases[kb_id] = kb
            logger.info("Created knowledge base %r", kb_id)
        return kb

    def delete(self, kb_id: str) -> bool:
        return self._bases.pop(kb_id, None) is not None

    def ids(self) -> List[str]:
        return list(self._bases)
