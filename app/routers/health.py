"""
Health check endpoint.
"""
from fastapi import APIRouter, Depends
from datetime import datetime, timezone
import logging

from app.dependencies.services import get_embedding_service, get_knowledge_base_service
from app.models.schemas import HealthCheckResponse
from app.services.embedding import OllamaEmbeddingService
from app.services.knowledge_base import KnowledgeBaseService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=HealthCheckResponse, response_model_by_alias=True)
async def health_check(
    embedder: OllamaEmbeddingService = Depends(get_embedding_service),
    knowledge_base: KnowledgeBaseService = Depends(get_knowledge_base_service),
):
    """
    Health check endpoint to verify system status.

    Returns:
        HealthCheckResponse with the Ollama status and knowledge-base count
    """
    ollama_status = "ok" if await embedder.check_ollama_health() else "error"
    if ollama_status != "ok":
        logger.warning("Health check: Ollama unreachable")

    return HealthCheckResponse(
        status="healthy" if ollama_status == "ok" else "degraded",
        ollama=ollama_status,
        knowledge_bases=len(knowledge_base.list_ids()),
        timestamp=datetime.now(timezone.utc),
    )
