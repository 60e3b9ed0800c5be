"""
Office document generators.

Builds .docx (python-docx), .pptx (python-pptx) and .xlsx (openpyxl) files
from structured section / slide / sheet definitions and returns the file
bytes.  Inputs are validated up front; a structurally invalid definition
raises DocumentGenerationError instead of producing a broken file.

Also converts markdown (as produced by the language model) into those
definitions.
"""
import io
import logging
import re
from typing import Any, Iterable, List, Optional, Sequence, Type, TypeVar, Union

from docx import Document
from docx.enum.text import WD_ALIGN_PARAGRAPH
from docx.shared import Pt
from openpyxl import Workbook
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from pptx import Presentation
from pptx.util import Inches, Pt as PptPt
from pydantic import BaseModel, ValidationError

from app.config import settings
from app.models.schemas import Cell, DocxSection, PptxSlide, XlsxSheet

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
PPTX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Default slide layouts of the built-in template
_LAYOUT_TITLE = 0
_LAYOUT_TITLE_AND_CONTENT = 1
_LAYOUT_TWO_CONTENT = 3
_LAYOUT_TITLE_ONLY = 5

_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")
_MAX_SHEET_NAME = 31


class DocumentGenerationError(ValueError):
    """Raised when section / slide / sheet definitions cannot be rendered."""


# ---------------------------------------------------------------------------
# Input coercion
# ---------------------------------------------------------------------------

def _coerce(items: Iterable[Union[M, dict]], model: Type[M], what: str) -> List[M]:
    if isinstance(items, (str, bytes, dict)) or not isinstance(items, Iterable):
        raise DocumentGenerationError(f"{what} definitions must be a list")
    out: List[M] = []
    for idx, item in enumerate(items):
        if not isinstance(item, model):
            try:
                item = model.model_validate(item)
            except ValidationError as exc:
                first = exc.errors()[0]
                loc = ".".join(str(p) for p in first.get("loc", ()))
                raise DocumentGenerationError(
                    f"{what} {idx}: {loc + ': ' if loc else ''}{first.get('msg', 'invalid')}"
                ) from exc
        _check_xml_text(item.model_dump(), f"{what} {idx}")
        out.append(item)
    return out


def _check_xml_text(value: Any, what: str) -> None:
    """Reject control characters that the XML inside office files cannot hold."""
    if isinstance(value, str):
        if ILLEGAL_CHARACTERS_RE.search(value):
            raise DocumentGenerationError(f"{what} contains control characters")
    elif isinstance(value, dict):
        for item in value.values():
            _check_xml_text(item, what)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _check_xml_text(item, what)


def strip_control_chars(text: str) -> str:
    """Drop the control characters ``_check_xml_text`` would reject."""
    return ILLEGAL_CHARACTERS_RE.sub("", text)


def _cell_text(value: Cell) -> str:
    return "" if value is None else str(value)


def _check_rectangular(rows: Sequence[Sequence[Cell]], what: str) -> int:
    """Return the column count; raise when rows have differing widths."""
    widths = {len(row) for row in rows}
    if len(widths) > 1:
        raise DocumentGenerationError(f"{what} rows have inconsistent cell counts")
    width = widths.pop() if widths else 0
    if rows and width == 0:
        raise DocumentGenerationError(f"{what} rows must not be empty")
    return width


# ---------------------------------------------------------------------------
# DOCX
# ---------------------------------------------------------------------------

def generate_docx(
    sections: Sequence[Union[DocxSection, dict]], title: Optional[str] = "Document"
) -> bytes:
    """
    Render a word-processor document.

    The title (when given) is a centred Title paragraph; headings use the
    built-in Heading 1-3 styles, lists use "List Bullet", and the first row
    of a table is bold.
    """
    blocks = _coerce(sections, DocxSection, "Section")
    _check_xml_text(title, "Title")
    for idx, block in enumerate(blocks):
        if block.type == "table" and block.rows:
            _check_rectangular(block.rows, f"Section {idx} table")

    doc = Document()
    normal = doc.styles["Normal"]
    normal.font.name = "Calibri"
    normal.font.size = Pt(11)
    doc.core_properties.author = settings.DOCUMENT_AUTHOR
    if title:
        doc.core_properties.title = title
        heading = doc.add_heading(title, level=0)
        heading.alignment = WD_ALIGN_PARAGRAPH.CENTER

    for block in blocks:
        if block.type == "heading":
            doc.add_heading(block.content, level=block.level or 3)
        elif block.type == "paragraph":
            doc.add_paragraph(block.content)
        elif block.type == "list":
            for item in block.items or []:
                doc.add_paragraph(item, style="List Bullet")
        elif block.type == "table" and block.rows:
            width = len(block.rows[0])
            table = doc.add_table(rows=len(block.rows), cols=width)
            table.style = "Table Grid"
            for r, row in enumerate(block.rows):
                for c, value in enumerate(row):
                    para = table.cell(r, c).paragraphs[0]
                    run = para.add_run(_cell_text(value))
                    run.bold = r == 0

    buf = io.BytesIO()
    doc.save(buf)
    logger.debug("Generated docx with %d blocks", len(blocks))
    return buf.getvalue()


# ---------------------------------------------------------------------------
# PPTX
# ---------------------------------------------------------------------------

def generate_pptx(
    slides: Sequence[Union[PptxSlide, dict]], title: Optional[str] = "Presentation"
) -> bytes:
    """Render a slide deck, one slide per definition, using the default layouts."""
    defs = _coerce(slides, PptxSlide, "Slide")
    _check_xml_text(title, "Title")
    for idx, slide_def in enumerate(defs):
        if slide_def.type == "table" and slide_def.table_data:
            _check_rectangular(slide_def.table_data, f"Slide {idx} table")

    prs = Presentation()
    prs.core_properties.author = settings.DOCUMENT_AUTHOR
    if title:
        prs.core_properties.title = title

    for slide_def in defs:
        if slide_def.type == "title":
            slide = prs.slides.add_slide(prs.slide_layouts[_LAYOUT_TITLE])
            slide.shapes.title.text = slide_def.title or ""
            subtitle = slide.placeholders[1]
            if slide_def.subtitle:
                subtitle.text = slide_def.subtitle
            else:
                subtitle._element.getparent().remove(subtitle._element)

        elif slide_def.type in ("content", "bullets"):
            slide = prs.slides.add_slide(prs.slide_layouts[_LAYOUT_TITLE_AND_CONTENT])
            slide.shapes.title.text = slide_def.title or ""
            lines = (
                slide_def.bullets or []
                if slide_def.type == "bullets"
                else [slide_def.content or ""]
            )
            _fill_text_frame(slide.placeholders[1].text_frame, lines)

        elif slide_def.type == "twoColumn":
            slide = prs.slides.add_slide(prs.slide_layouts[_LAYOUT_TWO_CONTENT])
            slide.shapes.title.text = slide_def.title or ""
            _fill_text_frame(slide.placeholders[1].text_frame, slide_def.left_content or [])
            _fill_text_frame(slide.placeholders[2].text_frame, slide_def.right_content or [])

        elif slide_def.type == "table":
            slide = prs.slides.add_slide(prs.slide_layouts[_LAYOUT_TITLE_ONLY])
            slide.shapes.title.text = slide_def.title or ""
            rows = slide_def.table_data or []
            if rows:
                shape = slide.shapes.add_table(
                    len(rows), len(rows[0]),
                    Inches(0.5), Inches(1.5), Inches(9), Inches(0.4) * len(rows),
                )
                for r, row in enumerate(rows):
                    for c, value in enumerate(row):
                        cell = shape.table.cell(r, c)
                        cell.text = _cell_text(value)
                        for para in cell.text_frame.paragraphs:
                            for run in para.runs:
                                run.font.size = PptPt(14)

        elif slide_def.type == "image":
            # Images are referenced, not fetched
            slide = prs.slides.add_slide(prs.slide_layouts[_LAYOUT_TITLE_ONLY])
            slide.shapes.title.text = slide_def.title or ""
            if slide_def.image_url:
                box = slide.shapes.add_textbox(Inches(0.5), Inches(1.5), Inches(9), Inches(1))
                box.text_frame.text = f"Image: {slide_def.image_url}"

    buf = io.BytesIO()
    prs.save(buf)
    logger.debug("Generated pptx with %d slides", len(defs))
    return buf.getvalue()


def _fill_text_frame(frame, lines: List[str]) -> None:
    frame.clear()
    for idx, line in enumerate(lines):
        para = frame.paragraphs[0] if idx == 0 else frame.add_paragraph()
        para.text = line


# ---------------------------------------------------------------------------
# XLSX
# ---------------------------------------------------------------------------

def generate_xlsx(sheets: Sequence[Union[XlsxSheet, dict]]) -> bytes:
    """
    Render a workbook: one worksheet per sheet definition, bold shaded
    header row, data rows below.
    """
    defs = _coerce(sheets, XlsxSheet, "Sheet")
    if not defs:
        raise DocumentGenerationError("At least one sheet is required")

    seen = set()
    for sheet in defs:
        if len(sheet.name) > _MAX_SHEET_NAME or _INVALID_SHEET_CHARS.search(sheet.name):
            raise DocumentGenerationError(f"Invalid sheet name: {sheet.name!r}")
        key = sheet.name.lower()
        if key in seen:
            raise DocumentGenerationError(f"Duplicate sheet name: {sheet.name!r}")
        seen.add(key)
        width = _check_rectangular(sheet.rows, f"Sheet {sheet.name!r}")
        if sheet.headers and width > len(sheet.headers):
            raise DocumentGenerationError(
                f"Sheet {sheet.name!r} rows are wider than its headers"
            )

    workbook = Workbook()
    workbook.remove(workbook.active)
    header_font = Font(bold=True)
    header_fill = PatternFill(fill_type="solid", fgColor="FFE0E0E0")

    for sheet in defs:
        ws = workbook.create_sheet(title=sheet.name)
        if sheet.headers:
            _append_literal(ws, sheet.headers)
            for cell in ws[1]:
                cell.font = header_font
                cell.fill = header_fill
        for row in sheet.rows:
            _append_literal(ws, row)
        columns = max(len(sheet.headers), len(sheet.rows[0]) if sheet.rows else 0)
        for col in range(1, columns + 1):
            ws.column_dimensions[get_column_letter(col)].width = 15

    buf = io.BytesIO()
    workbook.save(buf)
    logger.debug("Generated xlsx with %d sheets", len(defs))
    return buf.getvalue()


def _append_literal(ws, values: Sequence[Cell]) -> None:
    ws.append(list(values))
    # Cell text is stored as text; a leading "=" never becomes a formula
    for cell in ws[ws.max_row]:
        if cell.data_type == "f":
            cell.data_type = "s"


# ---------------------------------------------------------------------------
# Markdown converters
# ---------------------------------------------------------------------------

_HEADING_RE = re.compile(r"^(#{1,3})\s+(.*)$")
_BULLET_RE = re.compile(r"^[-*]\s+(.*)$")
_TABLE_SEPARATOR_RE = re.compile(r"^\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)*\|?$")


def markdown_to_docx_sections(markdown: str) -> List[DocxSection]:
    """Headings (#, ##, ###), bullet lists and paragraphs; blank lines are dropped."""
    sections: List[DocxSection] = []
    pending: List[str] = []

    def flush_list() -> None:
        if pending:
            sections.append(DocxSection(type="list", content="", items=list(pending)))
            pending.clear()

    for raw in markdown.splitlines():
        line = raw.strip()
        if not line:
            continue
        heading = _HEADING_RE.match(line)
        bullet = _BULLET_RE.match(line)
        if heading:
            flush_list()
            sections.append(
                DocxSection(type="heading", level=len(heading.group(1)), content=heading.group(2))
            )
        elif bullet:
            pending.append(bullet.group(1))
        else:
            flush_list()
            sections.append(DocxSection(type="paragraph", content=line))

    flush_list()
    return sections


def markdown_to_pptx_slides(markdown: str, title: Optional[str] = None) -> List[PptxSlide]:
    """
    One slide per ``#``/``##`` heading.  Bullets become a bullets slide,
    prose a content slide.  A leading title slide is added when *title*
    is given.
    """
    slides: List[PptxSlide] = []
    if title:
        slides.append(PptxSlide(type="title", title=title))

    heading: Optional[str] = None
    bullets: List[str] = []
    prose: List[str] = []

    def flush() -> None:
        if heading is None and not bullets and not prose:
            return
        if bullets:
            slides.append(PptxSlide(type="bullets", title=heading, bullets=bullets + prose))
        else:
            slides.append(PptxSlide(type="content", title=heading, content=" ".join(prose)))

    for raw in markdown.splitlines():
        line = raw.strip()
        if not line:
            continue
        match = _HEADING_RE.match(line)
        if match and len(match.group(1)) <= 2:
            flush()
            heading, bullets, prose = match.group(2), [], []
            continue
        bullet = _BULLET_RE.match(line)
        if bullet:
            bullets.append(bullet.group(1))
        elif match:
            bullets.append(match.group(2))
        else:
            prose.append(line)

    flush()
    return slides


def markdown_to_xlsx_sheets(markdown: str, name: str = "Sheet1") -> List[XlsxSheet]:
    """
    Convert markdown pipe tables into sheets, one per table.  Rows are
    padded or trimmed to the header width so the result always renders.
    """
    tables: List[List[List[str]]] = []
    current: List[List[str]] = []

    for raw in markdown.splitlines():
        line = raw.strip()
        if line.startswith("|"):
            if _TABLE_SEPARATOR_RE.match(line):
                continue
            current.append([cell.strip() for cell in line.strip("|").split("|")])
        elif current:
            tables.append(current)
            current = []
    if current:
        tables.append(current)

    sheets: List[XlsxSheet] = []
    for idx, table in enumerate(tables, start=1):
        headers, body = table[0], table[1:]
        width = len(headers)
        rows: List[List[Any]] = [
            (row + [""] * width)[:width] for row in body
        ]
        sheet_name = name if idx == 1 else f"{name[:_MAX_SHEET_NAME - 4]} ({idx})"
        sheets.append(XlsxSheet(name=sheet_name, headers=headers, rows=rows))
    return sheets
