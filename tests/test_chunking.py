"""Tests for ChunkingService strategies."""
import pytest

from app.services.chunking import ChunkingService

PARAGRAPHS = [
    "Photosynthesis converts sunlight into chemical energy.",
    "Mitochondria release that energy during respiration.",
    "Ribosomes assemble proteins from amino acids.",
    "The nucleus stores the genetic material of the cell.",
]


def _assert_offsets(chunks, text):
    for chunk in chunks:
        start, end = chunk.metadata["startChar"], chunk.metadata["endChar"]
        assert chunk.content == text[start:end].strip()


def test_paragraph_strategy_packs_paragraphs():
    text = "\n\n".join(PARAGRAPHS)
    chunks = ChunkingService(chunk_size=120, chunk_overlap=0, strategy="paragraph").chunk_text(
        text, source="biology.txt"
    )

    assert len(chunks) == 2
    assert all(len(c.content) <= 120 for c in chunks)
    assert PARAGRAPHS[0] in chunks[0].content and PARAGRAPHS[1] in chunks[0].content
    assert PARAGRAPHS[3] in chunks[1].content
    _assert_offsets(chunks, text)

    meta = chunks[1].metadata
    assert meta["source"] == "biology.txt"
    assert meta["chunkIndex"] == 1
    assert meta["totalChunks"] == 2
    assert meta["wordCount"] == len(chunks[1].content.split())


def test_oversized_paragraph_is_split_on_sentences():
    paragraph = " ".join(f"Sentence number {i} is right here." for i in range(8))
    chunks = ChunkingService(chunk_size=80, chunk_overlap=0, strategy="paragraph").chunk_text(
        paragraph
    )

    assert len(chunks) > 1
    assert all(len(c.content) <= 80 for c in chunks)
    assert all(c.content.endswith(".") for c in chunks)
    _assert_offsets(chunks, paragraph)


def test_sentence_strategy_carries_overlap():
    text = " ".join(f"Sentence {i} says hello." for i in range(10))
    chunks = ChunkingService(chunk_size=80, chunk_overlap=30, strategy="sentence").chunk_text(text)

    assert len(chunks) > 1
    for prev, nxt in zip(chunks, chunks[1:]):
        assert nxt.metadata["startChar"] < prev.metadata["endChar"]
    assert chunks[-1].metadata["endChar"] == len(text)
    _assert_offsets(chunks, text)


def test_fixed_strategy_windows():
    text = "abcdefghij" * 25
    chunks = ChunkingService(chunk_size=100, chunk_overlap=20, strategy="fixed").chunk_text(text)

    assert [c.metadata["startChar"] for c in chunks] == [0, 80, 160]
    assert [c.metadata["endChar"] for c in chunks] == [100, 180, 250]
    _assert_offsets(chunks, text)


def test_overlap_is_clamped_below_chunk_size():
    service = ChunkingService(chunk_size=10, chunk_overlap=50, strategy="fixed")
    assert service.chunk_overlap == 9
    assert len(service.chunk_text("x" * 30)) == 21


def test_unknown_strategy_rejected():
    with pytest.raises(ValueError, match="Unknown chunking strategy"):
        ChunkingService(strategy="semantic")


def test_blank_text_yields_no_chunks():
    assert ChunkingService().chunk_text("  \n\n  ") == []


def test_chunk_document_attaches_document_metadata():
    chunks = ChunkingService(chunk_size=200).chunk_document(
        "One paragraph.\n\nAnother one.",
        {"filename": "notes.md", "documentId": "doc-1", "wordCount": 999},
    )

    assert len(chunks) == 1
    assert chunks[0].source == "notes.md"
    assert chunks[0].metadata["documentId"] == "doc-1"
    assert chunks[0].metadata["wordCount"] == 4
    assert len({c.id for c in chunks}) == len(chunks)
