"""
Text chunking for knowledge-base ingestion.

Three character-based strategies:
  - paragraph (default) - pack blank-line separated paragraphs up to
    chunk_size; an oversized paragraph is split on sentences
  - sentence            - pack sentences up to chunk_size, carrying the
    last sentences of the previous chunk forward as overlap
  - fixed               - fixed windows of chunk_size characters stepping
    by chunk_size - chunk_overlap

Every chunk records its source, position and character offsets into the
original text.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from app.config import settings
from app.utils.helpers import word_count

logger = logging.getLogger(__name__)

STRATEGIES = ("paragraph", "sentence", "fixed")

# Paragraph boundary: one or more blank lines
_PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")

# Sentence: run of text up to and including terminal punctuation
_SENTENCE_RE = re.compile(r"[^.!?]+(?:[.!?]+|$)")


@dataclass
class Chunk:
    """One indexed piece of a document."""

    id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return self.metadata.get("source", "unknown")


# ---------------------------------------------------------------------------
# Span helpers: (start, end) offsets into the original text
# ---------------------------------------------------------------------------

def _paragraph_spans(text: str) -> List[Tuple[int, int]]:
    spans: List[Tuple[int, int]] = []
    pos = 0
    for match in _PARAGRAPH_BREAK_RE.finditer(text):
        spans.append((pos, match.start()))
        pos = match.end()
    spans.append((pos, len(text)))
    return [_strip_span(text, s, e) for s, e in spans if text[s:e].strip()]


def _sentence_spans(text: str, start: int = 0, end: Optional[int] = None) -> List[Tuple[int, int]]:
    end = len(text) if end is None else end
    spans = [
        _strip_span(text, start + m.start(), start + m.end())
        for m in _SENTENCE_RE.finditer(text[start:end])
        if m.group().strip()
    ]
    return spans or [(start, end)]


def _strip_span(text: str, start: int, end: int) -> Tuple[int, int]:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


# ---------------------------------------------------------------------------
# ChunkingService
# ---------------------------------------------------------------------------

class ChunkingService:
    """Splits document text into overlapping, source-tagged chunks."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        strategy: Optional[str] = None,
    ) -> None:
        self.chunk_size = chunk_size or settings.CHUNK_SIZE
        overlap = settings.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        # Overlap must leave the fixed window room to advance
        self.chunk_overlap = max(0, min(overlap, self.chunk_size - 1))
        self.strategy = strategy or settings.CHUNK_STRATEGY
        if self.strategy not in STRATEGIES:
            raise ValueError(f"Unknown chunking strategy: {self.strategy!r}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def chunk_document(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> List[Chunk]:
        """
        Chunk *text* and attach *metadata* (document-level fields such as
        ``filename`` and ``documentId``) to every chunk.

        ``source`` is taken from ``metadata["filename"]`` when present.
        """
        doc_meta = dict(metadata or {})
        source = doc_meta.get("filename") or "unknown"
        chunks = self.chunk_text(text, source)
        # Chunk-level fields (wordCount, offsets) win over document-level ones
        for chunk in chunks:
            chunk.metadata = {**doc_meta, **chunk.metadata}
        return chunks

    def chunk_text(self, text: str, source: str = "unknown") -> List[Chunk]:
        if not text.strip():
            return []

        if self.strategy == "fixed":
            spans = self._fixed_spans(text)
        elif self.strategy == "sentence":
            spans = self._sentence_chunk_spans(text)
        else:
            spans = self._paragraph_chunk_spans(text)

        chunks = [
            Chunk(
                id=uuid.uuid4().hex,
                content=text[start:end].strip(),
                metadata={
                    "source": source,
                    "chunkIndex": idx,
                    "totalChunks": len(spans),
                    "startChar": start,
                    "endChar": end,
                    "wordCount": word_count(text[start:end]),
                },
            )
            for idx, (start, end) in enumerate(spans)
        ]
        logger.debug(f"Created {len(chunks)} {self.strategy} chunks from {source}")
        return chunks

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _fixed_spans(self, text: str) -> List[Tuple[int, int]]:
        step = self.chunk_size - self.chunk_overlap
        spans: List[Tuple[int, int]] = []
        start = 0
        while start < len(text):
            end = min(start + self.chunk_size, len(text))
            if text[start:end].strip():
                spans.append((start, end))
            if end == len(text):
                break
            start += step
        return spans

    def _paragraph_chunk_spans(self, text: str) -> List[Tuple[int, int]]:
        spans: List[Tuple[int, int]] = []
        current: Optional[Tuple[int, int]] = None

        for p_start, p_end in _paragraph_spans(text):
            if p_end - p_start > self.chunk_size:
                if current:
                    spans.append(current)
                    current = None
                spans.extend(self._pack(_sentence_spans(text, p_start, p_end), overlap=False))
                continue
            if current and p_end - current[0] > self.chunk_size:
                spans.append(current)
                current = None
            current = (current[0], p_end) if current else (p_start, p_end)

        if current:
            spans.append(current)
        return spans

    def _sentence_chunk_spans(self, text: str) -> List[Tuple[int, int]]:
        return self._pack(_sentence_spans(text), overlap=True)

    def _pack(self, units: List[Tuple[int, int]], overlap: bool) -> List[Tuple[int, int]]:
        """
        Greedily merge consecutive unit spans into chunks of at most
        chunk_size characters.  A single unit longer than chunk_size is
        cut into fixed windows.  With *overlap*, each new chunk starts
        with the trailing units of the previous one that fit within
        chunk_overlap characters.
        """
        spans: List[Tuple[int, int]] = []
        window: List[Tuple[int, int]] = []

        for unit in units:
            u_start, u_end = unit
            if u_end - u_start > self.chunk_size:
                if window:
                    spans.append((window[0][0], window[-1][1]))
                    window = []
                for s in range(u_start, u_end, self.chunk_size):
                    spans.append((s, min(s + self.chunk_size, u_end)))
                continue

            if window and u_end - window[0][0] > self.chunk_size:
                spans.append((window[0][0], window[-1][1]))
                carried: List[Tuple[int, int]] = []
                if overlap:
                    for prev in reversed(window):
                        if window[-1][1] - prev[0] > self.chunk_overlap:
                            break
                        if u_end - prev[0] > self.chunk_size:
                            break
                        carried.insert(0, prev)
                window = carried
            window.append(unit)

        if window:
            spans.append((window[0][0], window[-1][1]))
        return spans
