"""
FastAPI dependencies that hand out the service objects.

Services are process-wide singletons so the knowledge-base registry and
the embedding cache survive across requests.  Tests replace them through
``app.dependency_overrides``.
"""
from functools import lru_cache

from fastapi import Depends

from app.services.document_parser import DocumentParser
from app.services.embedding import OllamaEmbeddingService
from app.services.knowledge_base import KnowledgeBaseService
from app.services.llm import ModelConfig, OllamaLLMService
from app.services.super_agent import SuperAgent


@lru_cache
def get_document_parser() -> DocumentParser:
    return DocumentParser()


@lru_cache
def get_embedding_service() -> OllamaEmbeddingService:
    return OllamaEmbeddingService()


@lru_cache
def get_knowledge_base_service() -> KnowledgeBaseService:
    return KnowledgeBaseService(get_embedding_service(), get_document_parser())


@lru_cache
def get_llm_service() -> OllamaLLMService:
    return OllamaLLMService(ModelConfig.from_settings())


def get_super_agent(
    llm: OllamaLLMService = Depends(get_llm_service),
    knowledge_base: KnowledgeBaseService = Depends(get_knowledge_base_service),
    parser: DocumentParser = Depends(get_document_parser),
) -> SuperAgent:
    return SuperAgent(llm, knowledge_base, parser, model_config=llm.config)
