"""
Super-agent orchestrator.

Public API
----------
SuperAgent.execute_task(task)  -> AgentResult
    Runs the stages parse → retrieve → generate → render in order.

SuperAgent.open_stream(task)   -> AsyncGenerator[str, None]
    Runs parse and retrieve eagerly, then streams the model's text.

Each stage runs under a time limit and is recorded as a StageRecord.
A failure in parse, generate or render aborts the pipeline with a single
``"<stage> failed: <message>"`` error.  A retrieve failure aborts
``answer_with_rag`` and is recorded as ``degraded`` for every other task
type, which then continues without context.  Nothing is retried.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional, Union

from app.config import settings
from app.models.schemas import (
    AgentResultMetadata,
    AgentTaskType,
    PptxSlide,
    RAGQueryOptions,
    RAGQueryResult,
    StageRecord,
    XlsxSheet,
)
from app.services.document_generator import (
    DocumentGenerationError,
    generate_docx,
    generate_pptx,
    generate_xlsx,
    markdown_to_docx_sections,
    markdown_to_pptx_slides,
    markdown_to_xlsx_sheets,
    strip_control_chars,
)
from app.services.document_parser import DocumentParser
from app.services.knowledge_base import KnowledgeBaseService
from app.services.llm import GenerationResult, ModelConfig, OllamaLLMService, parse_json_response
from app.utils.helpers import run_with_timeout

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Task / result types
# ---------------------------------------------------------------------------

@dataclass
class UploadedDocument:
    content: bytes
    filename: str


@dataclass
class AgentTask:
    type: AgentTaskType
    input: str
    options: Dict[str, Any] = field(default_factory=dict)
    document: Optional[UploadedDocument] = None


@dataclass
class AgentResult:
    success: bool
    output: Union[str, bytes, None]
    metadata: AgentResultMetadata
    error: Optional[str] = None

    @property
    def is_binary(self) -> bool:
        return isinstance(self.output, bytes)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": self.success,
            "output": None if self.is_binary else self.output,
            "metadata": self.metadata.model_dump(by_alias=True, exclude_none=True),
        }
        if self.error is not None:
            body["error"] = self.error
        return body


class AgentPipelineError(RuntimeError):
    """A stage failed; carries the stage records collected so far."""

    def __init__(self, stage: str, message: str, metadata: AgentResultMetadata) -> None:
        super().__init__(f"{stage} failed: {message}")
        self.stage = stage
        self.metadata = metadata


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

_RESEARCH_SYSTEM = """\
You are an expert research assistant. Conduct thorough research on the given topic.

Research Depth: {depth}
{depth_guide}

Structure your response with:
1. Executive Summary
2. Key Findings
3. Detailed Analysis
4. Conclusions
5. Recommended Actions (if applicable)

Be factual, cite sources where possible, and maintain objectivity."""

_RESEARCH_DEPTH = {
    "quick": ("Provide a brief overview with key points.", 2000),
    "standard": ("Provide comprehensive analysis with multiple perspectives.", 4000),
    "deep": ("Provide exhaustive analysis with detailed sources, statistics, and expert opinions.", 8000),
}

_SUMMARY_LENGTH = {
    "short": "2-3 sentences",
    "medium": "1-2 paragraphs",
    "long": "detailed summary with key points",
}

_SUMMARIZE_SYSTEM = """\
You are a summarization expert. Create a {length} summary of the provided content.
Focus on:
- Main ideas and key points
- Important facts and figures
- Conclusions and implications
Maintain the original meaning while being concise."""

_TRANSLATE_SYSTEM = """\
You are a professional translator. Translate the following content to {language}.
Maintain:
- Original meaning and context
- Appropriate tone and style
- Cultural nuances where applicable
Only output the translation, no explanations."""

_ANALYSIS_SYSTEM = {
    "general": """\
Analyze the following document and provide:
1. Document type and purpose
2. Key themes and topics
3. Main arguments or points
4. Notable data or statistics
5. Overall assessment""",
    "sentiment": """\
Perform sentiment analysis on the following content:
1. Overall sentiment (positive/negative/neutral)
2. Sentiment breakdown by section/topic
3. Key emotional triggers
4. Tone analysis""",
    "entities": """\
Extract and categorize all entities from the following content:
1. People/Names
2. Organizations
3. Locations
4. Dates/Times
5. Products/Services
6. Key concepts""",
    "financial": """\
Analyze the following financial document:
1. Key financial metrics
2. Revenue and expense analysis
3. Trends and patterns
4. Risk factors
5. Recommendations""",
}

_DOCUMENT_SYSTEM = """\
You are a professional document writer. Create a well-structured document based on the user's request.
Use markdown formatting:
- # for main title
- ## for sections
- ### for subsections
- Lists with - or *
- **bold** for emphasis
- Tables as markdown pipe tables

Create comprehensive, professional content."""

_SLIDES_SYSTEM = """\
You are a presentation expert. Create a JSON structure for a {count}-slide presentation.

Output format (JSON array):
[
  {{"type": "title", "title": "Main Title", "subtitle": "Subtitle"}},
  {{"type": "bullets", "title": "Section Title", "bullets": ["Point 1", "Point 2", "Point 3"]}},
  {{"type": "content", "title": "Topic", "content": "Detailed content here"}},
  {{"type": "twoColumn", "title": "Comparison", "leftContent": ["Left 1"], "rightContent": ["Right 1"]}},
  {{"type": "table", "title": "Data", "tableData": [["Header1", "Header2"], ["Row1Col1", "Row1Col2"]]}}
]

Create engaging, well-organized slides. Only output valid JSON."""

_SPREADSHEET_SYSTEM = """\
You are a data analyst. Create a JSON structure for an Excel spreadsheet.

Output format (JSON array of sheets):
[
  {
    "name": "Sheet Name",
    "headers": ["Column1", "Column2", "Column3"],
    "rows": [
      ["Value1", "Value2", "Value3"],
      ["Value4", "Value5", "Value6"]
    ]
  }
]

Create relevant, well-organized data. Only output valid JSON."""

_RAG_SYSTEM = """\
You are a helpful assistant with access to a knowledge base.
Answer the user's question based on the provided context.
If the context doesn't contain relevant information, say so.
Always cite your sources using [Source N] format.

## Context from Knowledge Base:
{context}"""

_BINARY_FORMATS = ("docx", "pptx", "xlsx")


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------

@dataclass
class _Run:
    task: AgentTask
    config: ModelConfig
    text: str
    started: float = field(default_factory=time.perf_counter)
    stages: List[StageRecord] = field(default_factory=list)
    retrieval: Optional[RAGQueryResult] = None
    generation: Optional[GenerationResult] = None
    output: Union[str, bytes, None] = None
    output_format: str = "text"

    def metadata(self) -> AgentResultMetadata:
        return AgentResultMetadata(
            model=self.generation.model if self.generation else self.config.model,
            tokens_used=self.generation.tokens_used if self.generation else None,
            duration=int((time.perf_counter() - self.started) * 1000),
            sources=[c.source for c in self.retrieval.contexts] if self.retrieval else None,
            format=self.output_format,
            stages=self.stages,
        )


class _Skip(Exception):
    """Raised inside a stage body that has nothing to do for this task."""


class _Degraded(Exception):
    """Raised inside a stage body that completed with a fallback."""


# ---------------------------------------------------------------------------
# SuperAgent
# ---------------------------------------------------------------------------

class SuperAgent:
    """Composes parsing, retrieval, model generation and document rendering."""

    def __init__(
        self,
        llm: OllamaLLMService,
        knowledge_base: KnowledgeBaseService,
        parser: Optional[DocumentParser] = None,
        model_config: Optional[ModelConfig] = None,
        stage_timeout: Optional[float] = None,
    ) -> None:
        self.llm = llm
        self.knowledge_base = knowledge_base
        self.parser = parser or DocumentParser()
        self.model_config = model_config or llm.config
        self.stage_timeout = stage_timeout or settings.AGENT_STAGE_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute_task(self, task: AgentTask) -> AgentResult:
        run = self._start(task)
        try:
            await self._prepare(run)
            await self._stage(run, "generate", self._generate_stage)
            await self._stage(run, "render", self._render_stage)
        except AgentPipelineError as exc:
            logger.warning("Agent task %s aborted: %s", task.type.value, exc)
            return AgentResult(success=False, output=None, metadata=exc.metadata, error=str(exc))

        logger.info(
            "Agent task %s finished in %d ms (%s)",
            task.type.value, run.metadata().duration, run.output_format,
        )
        return AgentResult(success=True, output=run.output, metadata=run.metadata())

    def is_streamable(self, task: AgentTask) -> bool:
        """Text-producing tasks only; artifacts are rendered in one piece."""
        if task.type in (AgentTaskType.GENERATE_SLIDES, AgentTaskType.GENERATE_SPREADSHEET):
            return False
        if task.type == AgentTaskType.GENERATE_DOCUMENT:
            return _document_format(task) not in _BINARY_FORMATS
        return True

    async def open_stream(self, task: AgentTask) -> AsyncGenerator[str, None]:
        """
        Run parse and retrieve, then return an iterator of model text chunks.

        Raises:
            AgentPipelineError: a pre-generation stage failed.
            ValueError:         the task produces a binary artifact.
        """
        if not self.is_streamable(task):
            raise ValueError(f"Task type {task.type.value} cannot be streamed")
        run = self._start(task)
        await self._prepare(run)
        try:
            system, prompt = self._build_prompt(run)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Stage generate failed: %s", message)
            run.stages.append(StageRecord(name="generate", status="failed", error=message))
            raise AgentPipelineError("generate", message, run.metadata()) from exc
        return self._stream_chunks(run, system, prompt)

    # ------------------------------------------------------------------
    # Stage runner
    # ------------------------------------------------------------------

    def _start(self, task: AgentTask) -> _Run:
        options = task.options or {}
        temperature = options.get("temperature")
        config = self.model_config.with_overrides(
            model=options.get("model") if isinstance(options.get("model"), str) else None,
            temperature=float(temperature) if isinstance(temperature, (int, float))
            and not isinstance(temperature, bool) else None,
        )
        return _Run(task=task, config=config, text=task.input or "")

    async def _prepare(self, run: _Run) -> None:
        await self._stage(run, "parse", self._parse_stage)
        await self._stage(run, "retrieve", self._retrieve_stage)

    async def _stage(self, run: _Run, name: str, body: Callable[[_Run], Awaitable[None]]) -> None:
        t0 = time.perf_counter()

        def record(status: str, error: Optional[str] = None) -> None:
            run.stages.append(StageRecord(
                name=name,
                status=status,
                duration_ms=round((time.perf_counter() - t0) * 1000, 2),
                error=error,
            ))

        try:
            await run_with_timeout(body(run), self.stage_timeout, name)
        except _Skip:
            record("skipped")
        except _Degraded as exc:
            record("degraded", str(exc) or None)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            if name == "retrieve" and run.task.type != AgentTaskType.ANSWER_WITH_RAG:
                logger.warning("Retrieval degraded for %s: %s", run.task.type.value, message)
                record("degraded", message)
                return
            logger.error("Stage %s failed: %s", name, message)
            record("failed", message)
            raise AgentPipelineError(name, message, run.metadata()) from exc
        else:
            record("ok")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _parse_stage(self, run: _Run) -> None:
        doc = run.task.document
        if doc is None:
            raise _Skip()
        parsed = await self.parser.parse_document(doc.content, doc.filename)
        if run.text.strip():
            run.text = f"{run.text}\n\n--- Document: {doc.filename} ---\n{parsed.content}"
        else:
            run.text = parsed.content

    async def _retrieve_stage(self, run: _Run) -> None:
        options = run.task.options or {}
        kb_id = _text_option(options, "knowledgeBaseId")
        if not kb_id:
            if run.task.type == AgentTaskType.ANSWER_WITH_RAG:
                raise ValueError("knowledgeBaseId is required for answer_with_rag")
            raise _Skip()
        query_options = RAGQueryOptions.model_validate(
            {k: options[k] for k in ("topK", "vectorWeight", "keywordWeight") if k in options}
        )
        run.retrieval = await self.knowledge_base.query(kb_id, run.text, query_options)

    async def _generate_stage(self, run: _Run) -> None:
        system, prompt = self._build_prompt(run)
        run.generation = await self.llm.generate(prompt, system=system, config=run.config)
        run.output = run.generation.text

    async def _render_stage(self, run: _Run) -> None:
        task = run.task
        options = task.options or {}
        text = strip_control_chars(run.generation.text) if run.generation else ""

        if task.type == AgentTaskType.GENERATE_SLIDES:
            title = _text_option(options, "title", "Presentation")
            run.output_format = "pptx"
            ok, slides = parse_json_response(text)
            try:
                if not ok or not isinstance(slides, list):
                    raise DocumentGenerationError("model output is not a JSON slide list")
                run.output = await asyncio.to_thread(generate_pptx, slides, title)
            except DocumentGenerationError as exc:
                run.output = await asyncio.to_thread(
                    generate_pptx, _default_slides(title, strip_control_chars(task.input)), title
                )
                raise _Degraded(f"fallback deck used: {exc}")
            return

        if task.type == AgentTaskType.GENERATE_SPREADSHEET:
            run.output_format = "xlsx"
            ok, sheets = parse_json_response(text)
            try:
                if not ok or not isinstance(sheets, list):
                    raise DocumentGenerationError("model output is not a JSON sheet list")
                run.output = await asyncio.to_thread(generate_xlsx, sheets)
            except DocumentGenerationError as exc:
                fallback = _default_sheets(strip_control_chars(task.input))
                run.output = await asyncio.to_thread(generate_xlsx, fallback)
                raise _Degraded(f"fallback sheet used: {exc}")
            return

        if task.type == AgentTaskType.GENERATE_DOCUMENT:
            fmt = _document_format(task)
            title = _text_option(options, "title", "Generated Document")
            run.output_format = fmt
            if fmt == "docx":
                run.output = await asyncio.to_thread(
                    generate_docx, markdown_to_docx_sections(text), title
                )
            elif fmt == "pptx":
                run.output = await asyncio.to_thread(
                    generate_pptx, markdown_to_pptx_slides(text, title), title
                )
            elif fmt == "xlsx":
                sheets = markdown_to_xlsx_sheets(text) or _lines_sheet(text)
                run.output = await asyncio.to_thread(generate_xlsx, sheets)
            else:
                raise _Skip()
            return

        raise _Skip()

    # ------------------------------------------------------------------
    # Prompt building
    # ------------------------------------------------------------------

    def _build_prompt(self, run: _Run):
        """Return ``(system_prompt, prompt)`` for the task type."""
        task = run.task
        options = task.options or {}
        text = run.text
        kind = task.type

        if kind == AgentTaskType.ANSWER_WITH_RAG:
            context = run.retrieval.formatted_context if run.retrieval else ""
            return _RAG_SYSTEM.format(context=context), text

        if kind == AgentTaskType.RESEARCH:
            depth = _text_option(options, "depth")
            if depth not in _RESEARCH_DEPTH:
                depth = "standard"
            guide, max_tokens = _RESEARCH_DEPTH[depth]
            if run.config.max_tokens is None:
                run.config = run.config.with_overrides(max_tokens=max_tokens)
            system = _RESEARCH_SYSTEM.format(depth=depth, depth_guide=guide)
            prompt = text
        elif kind == AgentTaskType.SUMMARIZE:
            length = _SUMMARY_LENGTH.get(_text_option(options, "length"), _SUMMARY_LENGTH["medium"])
            system, prompt = _SUMMARIZE_SYSTEM.format(length=length), text
        elif kind == AgentTaskType.TRANSLATE:
            language = _text_option(options, "targetLanguage", "English")
            system, prompt = _TRANSLATE_SYSTEM.format(language=language), text
        elif kind == AgentTaskType.ANALYZE:
            analysis = _text_option(options, "analysisType") or _text_option(options, "type", "general")
            system = _ANALYSIS_SYSTEM.get(analysis, _ANALYSIS_SYSTEM["general"])
            prompt = text
        elif kind == AgentTaskType.GENERATE_DOCUMENT:
            title = _text_option(options, "title", "Generated Document")
            system, prompt = _DOCUMENT_SYSTEM, f"Title: {title}\n\nRequest: {text}"
        elif kind == AgentTaskType.GENERATE_SLIDES:
            title = _text_option(options, "title", "Presentation")
            count = options.get("slideCount")
            if not isinstance(count, int) or isinstance(count, bool) or count < 1:
                count = 10
            system = _SLIDES_SYSTEM.format(count=count)
            prompt = f"Topic: {title}\n\nRequest: {text}"
        else:
            system, prompt = _SPREADSHEET_SYSTEM, text

        if run.retrieval and run.retrieval.contexts:
            prompt = f"{prompt}\n\n## Context from Knowledge Base:\n{run.retrieval.formatted_context}"
        return system, prompt

    async def _stream_chunks(self, run: _Run, system: str, prompt: str) -> AsyncGenerator[str, None]:
        iterator = self.llm.stream(prompt, system=system, config=run.config)
        total = 0
        try:
            while True:
                try:
                    chunk = await run_with_timeout(iterator.__anext__(), self.stage_timeout, "generate")
                except StopAsyncIteration:
                    break
                total += len(chunk)
                yield chunk
        finally:
            # Closes the model server stream on early exit
            await iterator.aclose()
        logger.info("Streamed %d chars for %s", total, run.task.type.value)


# ---------------------------------------------------------------------------
# Fallbacks and helpers
# ---------------------------------------------------------------------------

def _text_option(options: Dict[str, Any], key: str, default: Optional[str] = None) -> Optional[str]:
    """A non-empty string option, else *default*; other JSON types are ignored."""
    value = options.get(key)
    return value if isinstance(value, str) and value.strip() else default


def _document_format(task: AgentTask) -> str:
    fmt = _text_option(task.options or {}, "format", "markdown")
    return fmt if fmt in _BINARY_FORMATS else "markdown"


def _default_slides(title: str, request: str) -> List[PptxSlide]:
    return [
        PptxSlide(type="title", title=title, subtitle="Generated Presentation"),
        PptxSlide(
            type="bullets",
            title="Overview",
            bullets=["AI-generated content", f"Based on: {request}"],
        ),
    ]


def _default_sheets(request: str) -> List[XlsxSheet]:
    return [
        XlsxSheet(
            name="Data",
            headers=["Item", "Value", "Notes"],
            rows=[["Generated data", "N/A", f"Based on: {request}"]],
        )
    ]


def _lines_sheet(text: str) -> List[XlsxSheet]:
    rows = [[line.strip()] for line in text.splitlines() if line.strip()]
    return [XlsxSheet(name="Content", headers=["Content"], rows=rows)]
