"""Tests for DocumentParser across the supported formats."""
import fitz
import pytest

from app.services.document_generator import generate_docx, generate_pptx, generate_xlsx
from app.services.document_parser import (
    CorruptDocumentError,
    DocumentParser,
    ParsedSection,
    UnsupportedFileTypeError,
    file_extension,
    is_supported_file_type,
)


def _sample_pdf() -> bytes:
    doc = fitz.open()
    page = doc.new_page()
    # Stay clear of the top 8 % header band
    page.insert_text((72, 150), "Quarterly Results", fontsize=20)
    page.insert_text((72, 200), "Revenue grew in every region this quarter.", fontsize=11)
    page.insert_text((72, 220), "Costs stayed flat year over year.", fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.mark.asyncio
async def test_parse_pdf_sections(parser: DocumentParser):
    parsed = await parser.parse_document(_sample_pdf(), "report.pdf")

    assert parsed.metadata["type"] == "pdf"
    assert parsed.metadata["pageCount"] == 1
    assert parsed.metadata["title"] == "report"
    assert "Revenue grew" in parsed.content

    assert len(parsed.sections) == 1
    section = parsed.sections[0]
    assert section.title == "Quarterly Results"
    assert section.level == 1
    assert section.page_num == 1
    assert "Costs stayed flat" in section.content


@pytest.mark.asyncio
async def test_parse_docx_headings_and_tables(parser: DocumentParser):
    data = generate_docx(
        [
            {"type": "heading", "level": 1, "content": "Goals"},
            {"type": "paragraph", "content": "Ship the first release."},
            {"type": "list", "items": ["Write docs", "Fix bugs"]},
            {"type": "table", "rows": [["Owner", "Task"], ["Ada", "Parser"]]},
        ],
        title="Plan",
    )
    parsed = await parser.parse_document(data, "plan.docx")

    assert parsed.metadata["type"] == "docx"
    assert parsed.metadata["title"] == "Plan"
    assert [s.title for s in parsed.sections] == ["Plan", "Goals"]
    goals = parsed.sections[1]
    assert "Ship the first release." in goals.content
    assert "Write docs" in goals.content
    assert "Ada | Parser" in parsed.content
    assert parsed.content.startswith("# Plan")


@pytest.mark.asyncio
async def test_parse_pptx_one_section_per_slide(parser: DocumentParser):
    data = generate_pptx(
        [
            {"type": "title", "title": "Deck", "subtitle": "Kick-off"},
            {"type": "bullets", "title": "Points", "bullets": ["One", "Two"]},
        ]
    )
    parsed = await parser.parse_document(data, "deck.pptx")

    assert parsed.metadata["slideCount"] == 2
    assert [s.title for s in parsed.sections] == ["Deck", "Points"]
    assert parsed.sections[1].content == "One\nTwo"
    assert parsed.sections[1].page_num == 2
    assert "# Points" in parsed.content


@pytest.mark.asyncio
async def test_parse_xlsx_sheet_blocks(parser: DocumentParser):
    data = generate_xlsx(
        [{"name": "Sales", "headers": ["Region", "Total"], "rows": [["North", 10], ["South", 20]]}]
    )
    parsed = await parser.parse_document(data, "sales.xlsx")

    assert parsed.metadata["sheets"] == ["Sales"]
    assert parsed.content.startswith("## Sheet: Sales")
    assert "North\t10" in parsed.content
    assert parsed.sections[0].title == "Sales"


@pytest.mark.asyncio
async def test_parse_plain_text(parser: DocumentParser):
    parsed = await parser.parse_document(b"hello there world", "notes.txt")
    assert parsed.content == "hello there world"
    assert parsed.metadata["wordCount"] == 3
    assert parsed.metadata["detectedLanguage"] == "unknown"
    assert parsed.to_dict()["imagesText"] == []


@pytest.mark.asyncio
async def test_parse_csv_as_markdown_table(parser: DocumentParser):
    parsed = await parser.parse_document(b"a,b\n1,2\n\n3,4\n", "data.csv")
    assert parsed.content.splitlines() == ["| a | b |", "| --- | --- |", "| 1 | 2 |", "| 3 | 4 |"]
    assert parsed.metadata["rowCount"] == 3


@pytest.mark.asyncio
async def test_unsupported_extension(parser: DocumentParser):
    with pytest.raises(UnsupportedFileTypeError, match="Unsupported file type: exe"):
        await parser.parse_document(b"MZ", "setup.exe")


@pytest.mark.asyncio
@pytest.mark.parametrize("filename", ["broken.docx", "broken.xlsx", "broken.pptx"])
async def test_corrupt_office_files(parser: DocumentParser, filename):
    with pytest.raises(CorruptDocumentError):
        await parser.parse_document(b"definitely not a real document", filename)


def test_extension_helpers():
    assert file_extension("Report.PDF") == "pdf"
    assert file_extension("noext") == ""
    assert is_supported_file_type("a.md")
    assert not is_supported_file_type("a.doc")


def test_section_to_dict_uses_camel_case():
    section = ParsedSection(title="T", content=" body ", level=2, page_num=3)
    assert section.to_dict() == {"title": "T", "content": "body", "level": 2, "pageNumber": 3}
