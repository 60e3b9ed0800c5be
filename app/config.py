"""
Configuration settings for the Agent Platform backend.
Loads environment variables and provides application-wide settings.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ollama Configuration
    OLLAMA_BASE_URL: str = "http://localhost:11434"
    OLLAMA_EMBED_MODEL: str = "nomic-embed-text"
    OLLAMA_LLM_MODEL: str = "qwen2.5:3b"
    OLLAMA_TIMEOUT: int = 300  # 5 minutes for LLM requests
    LLM_TEMPERATURE: float = 0.7

    # Vector Configuration
    VECTOR_DIMENSION: int = 768  # nomic-embed-text outputs 768-dimensional vectors

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # OCR Configuration
    TESSERACT_CMD: str = "/usr/bin/tesseract"

    # Upload / request limits
    MAX_FILE_SIZE: int = 50 * 1024 * 1024  # 50 MB
    MAX_REQUEST_BODY_SIZE: int = 2 * 1024 * 1024  # 2 MB for JSON submissions
    SUPPORTED_FILE_TYPES: List[str] = [
        ".pdf", ".docx", ".pptx", ".xlsx", ".txt", ".md", ".csv",
    ]

    # Chunking defaults (characters)
    CHUNK_SIZE: int = 500
    CHUNK_OVERLAP: int = 50
    CHUNK_STRATEGY: str = "paragraph"

    # Retrieval Configuration
    RAG_DEFAULT_TOP_K: int = 5
    RAG_MAX_TOP_K: int = 50
    RAG_VECTOR_WEIGHT: float = 0.7
    RAG_KEYWORD_WEIGHT: float = 0.3
    # Reciprocal-rank-fusion constant
    RAG_RRF_K: int = 60

    # Timeouts for downstream calls (seconds)
    PARSE_TIMEOUT_SECONDS: float = 60.0
    KB_QUERY_TIMEOUT_SECONDS: float = 30.0
    AGENT_STAGE_TIMEOUT_SECONDS: float = 300.0

    # Document generation
    DOCUMENT_AUTHOR: str = "Agent Platform"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    def get_allowed_origins(self) -> List[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]


# Global settings instance
settings = Settings()
