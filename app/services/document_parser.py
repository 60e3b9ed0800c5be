"""
Document parsing service for uploaded files.

Converts raw bytes plus a filename into a ParsedDocument.  The extension
picks the format: PDF (PyMuPDF with OCR fallback), DOCX (python-docx),
PPTX (python-pptx), XLSX (openpyxl), plain text / markdown, and CSV.

Parsing is CPU-bound, so ``parse_document`` hands the work to a thread
and the event loop stays free while large files are decoded.
"""
from __future__ import annotations

import asyncio
import csv
import io
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Callable, Dict, List, Optional, Tuple

import fitz  # PyMuPDF
import pytesseract
from docx import Document as DocxDocument
from docx.oxml.ns import qn
from langdetect import DetectorFactory, LangDetectException
from langdetect import detect as _langdetect_fn
from openpyxl import load_workbook
from PIL import Image
from pptx import Presentation

from app.config import settings
from app.utils.helpers import word_count

logger = logging.getLogger(__name__)

# Deterministic language detection across calls
DetectorFactory.seed = 0

SUPPORTED_EXTENSIONS = tuple(ext.lstrip(".") for ext in settings.SUPPORTED_FILE_TYPES)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class DocumentParseError(RuntimeError):
    """Base class for parse failures the routes translate into envelopes."""


class UnsupportedFileTypeError(DocumentParseError):
    """The filename extension maps to no known parser."""


class CorruptDocumentError(DocumentParseError):
    """The bytes could not be decoded as the declared format."""


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class ParsedSection:
    """A logical section of text extracted from a document."""

    title: str          # Heading text; empty string for body-only sections
    content: str        # Body text belonging to this section
    level: int          # Heading depth: 0 = no heading, 1 = H1, 2 = H2, 3 = H3+
    page_num: int = 0   # Starting page / slide number (1-based; 0 = unknown)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "content": self.content.strip(),
            "level": self.level,
            "pageNumber": self.page_num or None,
        }


@dataclass
class ParsedDocument:
    """
    Output of the DocumentParser.

    Attributes:
        content:      Complete text of the document.
        sections:     Ordered list of ParsedSection objects.
        images_text:  OCR text extracted from embedded images.
        metadata:     type, wordCount and whatever the format can report
                      (title, author, pageCount, sheets, slideCount, ...).
    """

    content: str
    sections: List[ParsedSection] = field(default_factory=list)
    images_text: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """camelCase JSON shape spread into the API response."""
        return {
            "content": self.content,
            "metadata": self.metadata,
            "sections": [s.to_dict() for s in self.sections],
            "imagesText": self.images_text,
        }


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class DocumentParser:
    """Parses uploaded documents into structured ParsedDocument objects."""

    def __init__(self) -> None:
        if settings.TESSERACT_CMD:
            pytesseract.pytesseract.tesseract_cmd = settings.TESSERACT_CMD
        self._parsers: Dict[str, Callable[[bytes], ParsedDocument]] = {
            "pdf": self._parse_pdf,
            "docx": self._parse_docx,
            "pptx": self._parse_pptx,
            "xlsx": self._parse_xlsx,
            "txt": self._parse_text,
            "md": self._parse_text,
            "csv": self._parse_csv,
        }

    async def parse_document(self, content: bytes, filename: str) -> ParsedDocument:
        """
        Parse an uploaded file and return a structured ParsedDocument.

        Args:
            content:  Raw file bytes.
            filename: Original filename; its extension selects the parser.

        Raises:
            UnsupportedFileTypeError: Unknown extension.
            CorruptDocumentError:     Unreadable or password-protected file.
        """
        ext = file_extension(filename)
        parser = self._parsers.get(ext)
        if parser is None:
            raise UnsupportedFileTypeError(f"Unsupported file type: {ext or filename}")

        logger.debug("Parsing %r as %s (%d bytes)", filename, ext, len(content))
        parsed = await asyncio.to_thread(parser, content)
        parsed.metadata.setdefault("title", PurePath(filename).stem)
        return parsed

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------

    def _parse_pdf(self, content: bytes) -> ParsedDocument:
        """Parse a PDF using PyMuPDF with OCR fallback for image-only pages."""
        try:
            doc = fitz.open(stream=content, filetype="pdf")
        except Exception as exc:
            raise CorruptDocumentError(f"Cannot open PDF file: {exc}") from exc

        try:
            if doc.needs_pass:
                raise CorruptDocumentError(
                    "PDF is password-protected. Please provide an unlocked copy."
                )
            return self._extract_pdf(doc)
        finally:
            doc.close()

    def _extract_pdf(self, doc: "fitz.Document") -> ParsedDocument:
        raw_meta = doc.metadata or {}

        # ---- Pass 1: find the body font size ----
        font_sizes: List[float] = []
        for page in doc:
            for block in page.get_text("dict")["blocks"]:
                if block.get("type") != 0:
                    continue
                for line in block.get("lines", []):
                    for span in line.get("spans", []):
                        if span.get("size", 0.0) > 0 and span.get("text", "").strip():
                            font_sizes.append(span["size"])

        body_font_size = _modal_font_size(font_sizes) if font_sizes else 11.0
        # A line is a heading candidate if its font is ≥ 15 % larger than body
        heading_size_threshold = body_font_size * 1.15

        # ---- Pass 2: text, sections and images ----
        sections: List[ParsedSection] = []
        images_text: List[str] = []
        has_images = False
        page_texts: List[str] = []

        current = ParsedSection(title="", content="", level=0, page_num=1)

        for page_num, page in enumerate(doc, start=1):
            page_height = page.rect.height
            # Running header / footer bands: top and bottom 8 %
            header_cutoff = page_height * 0.08
            footer_cutoff = page_height * 0.92

            lines: List[Tuple[float, float, str, bool, float]] = []
            for block in page.get_text("dict")["blocks"]:
                btype = block.get("type", -1)
                bbox = block.get("bbox", [0, 0, 0, 0])
                y0, x0 = bbox[1], bbox[0]

                if btype == 1:
                    has_images = True
                    ocr = self._ocr_block(page, block)
                    if ocr:
                        images_text.append(ocr)
                    continue
                if btype != 0 or y0 < header_cutoff or y0 > footer_cutoff:
                    continue

                for line in block.get("lines", []):
                    line_item = _pdf_line(line, body_font_size, heading_size_threshold)
                    if line_item is not None:
                        text, is_heading, size = line_item
                        lines.append((y0, x0, text, is_heading, size))

            if not lines:
                ocr = self._ocr_page(page)
                if ocr:
                    current.content += "\n" + ocr
                    page_texts.append(ocr)
                continue

            # Top-to-bottom, then left-to-right for multi-column layouts
            lines.sort(key=lambda item: (item[0], item[1]))

            page_lines: List[str] = []
            for _, _, text, is_heading, size in lines:
                if is_heading:
                    if current.title or current.content.strip():
                        sections.append(current)
                    current = ParsedSection(
                        title=text,
                        content="",
                        level=_estimate_heading_level(size, body_font_size),
                        page_num=page_num,
                    )
                else:
                    current.content += " " + text
                page_lines.append(text)
            page_texts.append("\n".join(page_lines))

        if current.title or current.content.strip():
            sections.append(current)

        full_text = "\n\n".join(page_texts)
        words = word_count(full_text)
        metadata: Dict[str, Any] = {
            "type": "pdf",
            "pageCount": doc.page_count,
            "wordCount": words,
            "readingTimeMinutes": round(words / 200, 1),
            "detectedLanguage": _detect_language(full_text[:3000]),
            "hasImages": has_images,
        }
        if raw_meta.get("title"):
            metadata["title"] = raw_meta["title"]
        if raw_meta.get("author"):
            metadata["author"] = raw_meta["author"]

        return ParsedDocument(
            content=full_text,
            sections=sections,
            images_text=images_text,
            metadata=metadata,
        )

    def _ocr_page(self, page: "fitz.Page") -> str:
        """Render an entire page at 2× scale and run Tesseract OCR."""
        try:
            pix = page.get_pixmap(matrix=fitz.Matrix(2, 2))
            img = Image.open(io.BytesIO(pix.tobytes("png")))
            return pytesseract.image_to_string(img).strip()
        except Exception as exc:
            logger.warning(f"Full-page OCR failed on page {page.number + 1}: {exc}")
            return ""

    def _ocr_block(self, page: "fitz.Page", block: dict) -> str:
        """Render a single image block and run Tesseract OCR."""
        try:
            clip = fitz.Rect(block["bbox"]) + fitz.Rect(-4, -4, 4, 4)
            pix = page.get_pixmap(matrix=fitz.Matrix(2, 2), clip=clip)
            img = Image.open(io.BytesIO(pix.tobytes("png")))
            return pytesseract.image_to_string(img).strip()
        except Exception as exc:
            logger.warning(f"Image block OCR failed: {exc}")
            return ""

    # ------------------------------------------------------------------
    # DOCX
    # ------------------------------------------------------------------

    def _parse_docx(self, content: bytes) -> ParsedDocument:
        """Parse a DOCX file preserving heading hierarchy and tables."""
        try:
            doc = DocxDocument(io.BytesIO(content))
        except Exception as exc:
            raise CorruptDocumentError(f"Cannot open DOCX file: {exc}") from exc

        heading_styles: Dict[str, int] = {
            "title": 1,
            "subtitle": 2,
            "heading 1": 1,
            "heading 2": 2,
            "heading 3": 3,
            "heading 4": 3,
            "heading 5": 3,
        }
        blip_tag = qn("a:blip")
        embed_key = qn("r:embed")

        sections: List[ParsedSection] = []
        images_text: List[str] = []
        has_images = False
        text_parts: List[str] = []

        current = ParsedSection(title="", content="", level=0)

        for para in doc.paragraphs:
            for blip in para._element.iter(blip_tag):
                rid = blip.get(embed_key)
                if not rid:
                    continue
                has_images = True
                ocr = _ocr_image_bytes(doc.part.related_parts[rid].blob)
                if ocr:
                    images_text.append(ocr)

            text = para.text.strip()
            if not text:
                continue

            style_name = para.style.name.lower() if para.style and para.style.name else ""
            level = heading_styles.get(style_name, 0)
            if level == 0 and _is_implicit_heading(para):
                level = 3

            if level > 0:
                if current.title or current.content.strip():
                    sections.append(current)
                current = ParsedSection(title=text, content="", level=level)
                text_parts.append(f"{'#' * level} {text}")
            else:
                current.content += " " + text
                text_parts.append(text)

        for table in doc.tables:
            rows: List[str] = []
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells]
                if any(cells):
                    rows.append(" | ".join(cells))
            if rows:
                table_text = "\n".join(rows)
                current.content += "\n" + table_text
                text_parts.append(table_text)

        if current.title or current.content.strip():
            sections.append(current)

        core = doc.core_properties
        full_text = "\n\n".join(text_parts)
        words = word_count(full_text)
        metadata: Dict[str, Any] = {
            "type": "docx",
            "wordCount": words,
            "readingTimeMinutes": round(words / 200, 1),
            "detectedLanguage": _detect_language(full_text[:3000]),
            "hasImages": has_images,
        }
        if core.title:
            metadata["title"] = core.title
        if core.author:
            metadata["author"] = core.author

        return ParsedDocument(
            content=full_text,
            sections=sections,
            images_text=images_text,
            metadata=metadata,
        )

    # ------------------------------------------------------------------
    # PPTX
    # ------------------------------------------------------------------

    def _parse_pptx(self, content: bytes) -> ParsedDocument:
        """One section per slide; title placeholder becomes the section title."""
        try:
            prs = Presentation(io.BytesIO(content))
        except Exception as exc:
            raise CorruptDocumentError(f"Cannot open PPTX file: {exc}") from exc

        sections: List[ParsedSection] = []
        text_parts: List[str] = []

        for slide_num, slide in enumerate(prs.slides, start=1):
            title_shape = slide.shapes.title
            title = title_shape.text_frame.text.strip() if title_shape is not None else ""
            body: List[str] = []

            for shape in slide.shapes:
                if title_shape is not None and shape.shape_id == title_shape.shape_id:
                    continue
                if shape.has_text_frame:
                    for paragraph in shape.text_frame.paragraphs:
                        text = "".join(run.text for run in paragraph.runs).strip()
                        if text:
                            body.append(text)
                elif getattr(shape, "has_table", False) and shape.has_table:
                    for row in shape.table.rows:
                        cells = [cell.text.strip() for cell in row.cells]
                        if any(cells):
                            body.append(" | ".join(cells))

            if not title and body and not sections:
                # Title slides built from text boxes: first line is the title
                title, body = body[0], body[1:]

            sections.append(
                ParsedSection(title=title, content="\n".join(body), level=1, page_num=slide_num)
            )
            slide_text = "\n".join(([f"# {title}"] if title else []) + body)
            if slide_text:
                text_parts.append(slide_text)

        full_text = "\n\n".join(text_parts)
        words = word_count(full_text)
        metadata: Dict[str, Any] = {
            "type": "pptx",
            "slideCount": len(prs.slides),
            "wordCount": words,
            "detectedLanguage": _detect_language(full_text[:3000]),
        }
        core = prs.core_properties
        if core.title:
            metadata["title"] = core.title
        if core.author:
            metadata["author"] = core.author

        return ParsedDocument(content=full_text, sections=sections, metadata=metadata)

    # ------------------------------------------------------------------
    # XLSX
    # ------------------------------------------------------------------

    def _parse_xlsx(self, content: bytes) -> ParsedDocument:
        """Each sheet becomes a ``## Sheet: name`` block of tab-separated rows."""
        try:
            workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        except Exception as exc:
            raise CorruptDocumentError(f"Cannot open XLSX file: {exc}") from exc

        sheets: List[str] = []
        sections: List[ParsedSection] = []
        blocks: List[str] = []
        try:
            for worksheet in workbook.worksheets:
                sheets.append(worksheet.title)
                rows: List[str] = []
                for values in worksheet.iter_rows(values_only=True):
                    cells = ["" if v is None else str(v) for v in values]
                    if any(cells):
                        rows.append("\t".join(cells).rstrip("\t"))
                body = "\n".join(rows)
                sections.append(ParsedSection(title=worksheet.title, content=body, level=2))
                blocks.append(f"## Sheet: {worksheet.title}\n\n{body}".rstrip())
        finally:
            workbook.close()

        full_text = "\n\n".join(blocks)
        return ParsedDocument(
            content=full_text,
            sections=sections,
            metadata={
                "type": "xlsx",
                "sheets": sheets,
                "wordCount": word_count(full_text),
            },
        )

    # ------------------------------------------------------------------
    # Plain text / CSV
    # ------------------------------------------------------------------

    def _parse_text(self, content: bytes) -> ParsedDocument:
        text = _decode_text(content)
        return ParsedDocument(
            content=text,
            metadata={
                "type": "txt",
                "wordCount": word_count(text),
                "detectedLanguage": _detect_language(text[:3000]),
            },
        )

    def _parse_csv(self, content: bytes) -> ParsedDocument:
        """Render a CSV file as a markdown table (first row is the header)."""
        text = _decode_text(content)
        try:
            rows = [row for row in csv.reader(io.StringIO(text)) if any(c.strip() for c in row)]
        except csv.Error as exc:
            raise CorruptDocumentError(f"Cannot read CSV file: {exc}") from exc

        lines: List[str] = []
        if rows:
            header = rows[0]
            lines.append("| " + " | ".join(header) + " |")
            lines.append("| " + " | ".join("---" for _ in header) + " |")
            for row in rows[1:]:
                lines.append("| " + " | ".join(row) + " |")

        return ParsedDocument(
            content="\n".join(lines),
            metadata={"type": "csv", "wordCount": word_count(text), "rowCount": len(rows)},
        )


# ---------------------------------------------------------------------------
# Module-level helpers
# ---------------------------------------------------------------------------

def file_extension(filename: str) -> str:
    """Lower-case extension without the dot ('' when there is none)."""
    return PurePath(filename or "").suffix.lower().lstrip(".")


def is_supported_file_type(filename: str) -> bool:
    return file_extension(filename) in SUPPORTED_EXTENSIONS


def _pdf_line(
    line: dict, body_size: float, heading_threshold: float
) -> Optional[Tuple[str, bool, float]]:
    """Join a PDF line's spans; returns (text, is_heading, max_font_size) or None."""
    max_sz = 0.0
    is_bold = False
    parts: List[str] = []
    for span in line.get("spans", []):
        raw = span.get("text", "")
        if not raw.strip():
            continue
        max_sz = max(max_sz, span.get("size", 0.0))
        if span.get("flags", 0) & 16:  # bit 4 = bold
            is_bold = True
        parts.append(raw)

    text = " ".join(parts).strip()
    # Isolated page numbers
    if not text or re.match(r"^\d{1,4}$", text):
        return None

    words = len(text.split())
    is_heading = max_sz >= heading_threshold or (
        is_bold and max_sz >= body_size and words <= 15
    )
    return text, is_heading, max_sz


def _modal_font_size(sizes: List[float]) -> float:
    """Return the most frequently occurring font size (proxy for body text)."""
    freq: Dict[float, int] = {}
    for s in sizes:
        key = round(s, 1)
        freq[key] = freq.get(key, 0) + 1
    return max(freq, key=lambda k: freq[k])


def _estimate_heading_level(span_size: float, body_size: float) -> int:
    """Map a span's font-size ratio to an H1/H2/H3 level."""
    ratio = span_size / body_size if body_size > 0 else 1.0
    if ratio >= 1.5:
        return 1
    if ratio >= 1.25:
        return 2
    return 3


def _is_implicit_heading(para) -> bool:
    """Return True if a DOCX paragraph looks like an unlabelled heading.

    Criteria: short text (≤ 15 words) where every non-whitespace run is bold.
    """
    text = para.text.strip()
    if not text or len(text.split()) > 15:
        return False
    runs_with_text = [r for r in para.runs if r.text.strip()]
    return bool(runs_with_text) and all(r.bold for r in runs_with_text)


def _ocr_image_bytes(blob: bytes) -> str:
    try:
        return pytesseract.image_to_string(Image.open(io.BytesIO(blob))).strip()
    except Exception as exc:
        logger.warning(f"Embedded image OCR failed: {exc}")
        return ""


def _decode_text(content: bytes) -> str:
    return content.decode("utf-8-sig", errors="replace")


def _detect_language(sample: str) -> str:
    """Detect the language of a text sample; returns an ISO 639-1 code or 'unknown'."""
    if len(sample.split()) < 20:
        return "unknown"
    try:
        return _langdetect_fn(sample)
    except LangDetectException:
        return "unknown"
