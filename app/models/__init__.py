"""Wire schemas for the Agent Platform API."""
from app.models.schemas import (
    AgentResultMetadata,
    AgentTaskType,
    DocumentAction,
    DocumentFormat,
    DocxSection,
    HealthCheckResponse,
    IngestResponse,
    KnowledgeBaseCreate,
    PptxSlide,
    RAGContext,
    RAGQueryOptions,
    RAGQueryResult,
    StageRecord,
    XlsxSheet,
)

__all__ = [
    "AgentResultMetadata",
    "AgentTaskType",
    "DocumentAction",
    "DocumentFormat",
    "DocxSection",
    "HealthCheckResponse",
    "IngestResponse",
    "KnowledgeBaseCreate",
    "PptxSlide",
    "RAGContext",
    "RAGQueryOptions",
    "RAGQueryResult",
    "StageRecord",
    "XlsxSheet",
]
