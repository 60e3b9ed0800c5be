"""
Pydantic schemas for request/response validation.

Wire format uses camelCase field names; Python attributes are snake_case
with aliases, and ``populate_by_name`` lets services build models either way.
"""
from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, List, Dict, Any, Literal, Union
from datetime import datetime
from enum import Enum

from app.config import settings


Cell = Union[str, int, float, bool, None]


class DocumentAction(str, Enum):
    """Actions accepted by POST /api/documents."""

    PARSE = "parse"


class DocumentFormat(str, Enum):
    """Office formats the generators can produce."""

    DOCX = "docx"
    PPTX = "pptx"
    XLSX = "xlsx"


# ---------------------------------------------------------------------------
# Generator input schemas
# ---------------------------------------------------------------------------

class DocxSection(BaseModel):
    """One block of a word-processor document."""

    type: Literal["heading", "paragraph", "list", "table"]
    level: Optional[Literal[1, 2, 3]] = None
    content: str = ""
    items: Optional[List[str]] = None
    rows: Optional[List[List[Cell]]] = None


class PptxSlide(BaseModel):
    """One slide definition."""

    type: Literal["title", "content", "bullets", "image", "table", "twoColumn"]
    title: Optional[str] = None
    subtitle: Optional[str] = None
    content: Optional[str] = None
    bullets: Optional[List[str]] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")
    left_content: Optional[List[str]] = Field(None, alias="leftContent")
    right_content: Optional[List[str]] = Field(None, alias="rightContent")
    table_data: Optional[List[List[Cell]]] = Field(None, alias="tableData")

    model_config = ConfigDict(populate_by_name=True)


class XlsxSheet(BaseModel):
    """One worksheet: a header row followed by data rows."""

    name: str = Field(..., min_length=1)
    headers: List[str] = []
    rows: List[List[Cell]] = []


# ---------------------------------------------------------------------------
# Retrieval schemas
# ---------------------------------------------------------------------------

class RAGQueryOptions(BaseModel):
    """
    Options for a knowledge-base query.

    ``topK`` falls back to the default when absent or zero and is clamped
    into ``[1, RAG_MAX_TOP_K]``.  Weights must be non-negative.  Values of
    the wrong JSON type are rejected rather than coerced.
    """

    top_k: Optional[int] = Field(None, alias="topK", strict=True, validate_default=True)
    vector_weight: Optional[float] = Field(None, alias="vectorWeight", ge=0)
    keyword_weight: Optional[float] = Field(None, alias="keywordWeight", ge=0)
    include_metadata: Optional[bool] = Field(
        None, alias="includeMetadata", strict=True, validate_default=True
    )

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    @field_validator("vector_weight", "keyword_weight", mode="before")
    @classmethod
    def _reject_non_numeric_weight(cls, value: Any) -> Any:
        if value is not None and (isinstance(value, bool) or not isinstance(value, (int, float))):
            raise ValueError("weight must be a number")
        return value

    @field_validator("top_k", mode="after")
    @classmethod
    def _clamp_top_k(cls, value: Optional[int]) -> int:
        if not value:
            return settings.RAG_DEFAULT_TOP_K
        return max(1, min(value, settings.RAG_MAX_TOP_K))

    @field_validator("include_metadata", mode="after")
    @classmethod
    def _default_include_metadata(cls, value: Optional[bool]) -> bool:
        return True if value is None else value


class RAGContext(BaseModel):
    """One ranked match returned by a knowledge-base query."""

    content: str
    score: float
    source: str
    metadata: Optional[Dict[str, Any]] = None


class RAGQueryResult(BaseModel):
    """Ranked matches plus a prompt-ready rendering of them."""

    contexts: List[RAGContext] = []
    formatted_context: str = Field("", alias="formattedContext")

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "contexts": [ctx.model_dump(exclude_none=True) for ctx in self.contexts],
            "formattedContext": self.formatted_context,
        }


class KnowledgeBaseCreate(BaseModel):
    """Schema for creating a knowledge base."""

    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None


class IngestResponse(BaseModel):
    """Result of ingesting one uploaded document into a knowledge base."""

    document_id: str = Field(..., alias="documentId")
    filename: str
    chunk_count: int = Field(0, alias="chunkCount")
    success: bool
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Agent schemas
# ---------------------------------------------------------------------------

class AgentTaskType(str, Enum):
    """Task types understood by the super-agent."""

    RESEARCH = "research"
    SUMMARIZE = "summarize"
    TRANSLATE = "translate"
    ANALYZE = "analyze"
    GENERATE_DOCUMENT = "generate_document"
    GENERATE_SLIDES = "generate_slides"
    GENERATE_SPREADSHEET = "generate_spreadsheet"
    ANSWER_WITH_RAG = "answer_with_rag"


class StageRecord(BaseModel):
    """Outcome of one orchestrator stage."""

    name: str
    status: Literal["ok", "skipped", "degraded", "failed"]
    duration_ms: float = Field(0.0, alias="durationMs")
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class AgentResultMetadata(BaseModel):
    model: Optional[str] = None
    tokens_used: Optional[int] = Field(None, alias="tokensUsed")
    duration: Optional[int] = None  # milliseconds
    sources: Optional[List[str]] = None
    format: Optional[str] = None
    stages: List[StageRecord] = []

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class HealthCheckResponse(BaseModel):
    """Schema for health check response."""

    status: str
    ollama: str
    knowledge_bases: int = Field(0, alias="knowledgeBases")
    timestamp: datetime

    model_config = ConfigDict(populate_by_name=True)
