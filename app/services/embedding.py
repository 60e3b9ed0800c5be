"""
Embedding generation via the Ollama ``/api/embeddings`` endpoint.

OllamaEmbeddingService caps concurrent requests, retries transient
failures with exponential backoff, caches vectors by content hash and
returns unit-length numpy vectors ready for cosine scoring.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import Dict, List, Optional

import httpx
import numpy as np

from app.config import settings

logger = logging.getLogger(__name__)


def _hash_text(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def normalize_vector(vector) -> np.ndarray:
    """Unit-length float32 copy of *vector*; zero vectors are returned unchanged."""
    arr = np.asarray(vector, dtype=np.float32)
    norm = float(np.linalg.norm(arr))
    return arr if norm == 0.0 else arr / norm


class EmbeddingError(RuntimeError):
    """Raised when a text cannot be embedded after all retries."""


class OllamaEmbeddingService:
    """
    Embedder backed by a local Ollama server.

    * Semaphore caps concurrent Ollama calls (MAX_CONCURRENT = 3)
    * Exponential-backoff retries on connection / HTTP errors (MAX_RETRIES = 3)
    * Content-hash cache, so identical text is embedded once per process
    * A wrong vector dimension is a hard failure and is not retried
    """

    MAX_CONCURRENT: int = 3
    MAX_RETRIES: int = 3

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        dimension: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        backoff_base: float = 1.0,
    ) -> None:
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_EMBED_MODEL
        self.expected_dim = dimension or settings.VECTOR_DIMENSION
        self.timeout = httpx.Timeout(60.0, connect=10.0)
        self._transport = transport
        self._backoff_base = backoff_base
        self._semaphore = asyncio.Semaphore(self.MAX_CONCURRENT)
        self._cache: Dict[str, np.ndarray] = {}

    @property
    def dimension(self) -> int:
        return self.expected_dim

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def embed_text(self, text: str) -> np.ndarray:
        """
        Embed a single text string.

        Raises:
            EmbeddingError: blank input, wrong dimension, or every attempt failed.
        """
        if not text or not text.strip():
            raise EmbeddingError("Cannot embed empty text")

        text = text.strip()
        key = _hash_text(text)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        vector = await self._call_ollama_with_retry(text)
        self._cache[key] = vector
        return vector

    async def embed_batch(self, texts: List[str]) -> List[Optional[np.ndarray]]:
        """
        Embed *texts* concurrently (bounded by the semaphore).

        Returns a list aligned with *texts*; items that failed are ``None``.
        """
        gathered = await asyncio.gather(
            *[self.embed_text(t) for t in texts], return_exceptions=True
        )
        results: List[Optional[np.ndarray]] = []
        for idx, res in enumerate(gathered):
            if isinstance(res, BaseException):
                logger.warning("embed_batch: item %d failed: %s", idx, res)
                results.append(None)
            else:
                results.append(res)

        ok = sum(1 for r in results if r is not None)
        logger.info("embed_batch: %d/%d embeddings generated", ok, len(texts))
        return results

    async def check_ollama_health(self) -> bool:
        """Return ``True`` if Ollama is reachable and returns HTTP 200."""
        try:
            async with self._client(timeout=5.0) as client:
                resp = await client.get(f"{self.base_url}/api/tags")
                return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.error("Ollama health check failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _client(self, timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _backoff(self, attempt: int) -> None:
        if attempt < self.MAX_RETRIES:
            await asyncio.sleep(self._backoff_base * 2 ** (attempt - 1))

    async def _call_ollama_with_retry(self, text: str) -> np.ndarray:
        last_error = "no attempts made"
        async with self._semaphore:
            for attempt in range(1, self.MAX_RETRIES + 1):
                try:
                    t0 = time.perf_counter()
                    async with self._client(self.timeout) as client:
                        resp = await client.post(
                            f"{self.base_url}/api/embeddings",
                            json={"model": self.model, "prompt": text},
                        )
                    elapsed_ms = (time.perf_counter() - t0) * 1000
                except (httpx.ConnectError, httpx.TimeoutException) as exc:
                    last_error = f"{type(exc).__name__}: {exc}"
                    logger.warning(
                        "Ollama embeddings unreachable (attempt %d/%d): %s",
                        attempt, self.MAX_RETRIES, exc,
                    )
                    await self._backoff(attempt)
                    continue

                if resp.status_code != 200:
                    last_error = f"HTTP {resp.status_code}"
                    logger.error(
                        "Ollama /api/embeddings returned %d (attempt %d/%d): %s",
                        resp.status_code, attempt, self.MAX_RETRIES, resp.text[:300],
                    )
                    await self._backoff(attempt)
                    continue

                raw = resp.json().get("embedding")
                if not raw:
                    last_error = "response missing 'embedding'"
                    logger.error(
                        "Ollama response missing 'embedding' field (attempt %d/%d)",
                        attempt, self.MAX_RETRIES,
                    )
                    await self._backoff(attempt)
                    continue

                if len(raw) != self.expected_dim:
                    raise EmbeddingError(
                        f"Dimension mismatch: expected {self.expected_dim}, got {len(raw)}"
                    )

                logger.debug(
                    "Embedded %d chars -> %d-dim in %.1f ms",
                    len(text), self.expected_dim, elapsed_ms,
                )
                return normalize_vector(raw)

        raise EmbeddingError(
            f"All {self.MAX_RETRIES} embedding attempts failed ({last_error})"
        )
