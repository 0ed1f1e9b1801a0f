"""Application configuration via environment variables."""

from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Width of the hashing fallback embedding. Oracle vectors must match it.
FALLBACK_EMBEDDING_DIMENSIONS = 384


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env")

    debug: bool = False
    cors_origins: list[str] = ["http://localhost:5173"]

    # Text generation oracle (Claude Agent SDK)
    anthropic_api_key: str = ""
    ai_model: str = "claude-opus-4-6"
    oracle_enabled: bool = True
    oracle_timeout_seconds: float = 30.0
    oracle_interaction_check: bool = True

    # Google AI Embeddings
    # Set GOOGLE_API_KEY for API key auth, otherwise uses Vertex AI ADC.
    google_api_key: str = ""
    gcp_project_id: str = "medintel-dev"
    gcp_location: str = "us-central1"
    embedding_model: str = "text-embedding-005"
    embedding_dimensions: int = FALLBACK_EMBEDDING_DIMENSIONS

    # Retrieval / answering
    retrieval_top_k: int = 5
    confidence_per_document: float = 0.2
    max_confidence: float = 0.9

    @field_validator("embedding_dimensions")
    @classmethod
    def _match_fallback_width(cls, value: int) -> int:
        if value != FALLBACK_EMBEDDING_DIMENSIONS:
            raise ValueError(
                f"embedding_dimensions must be {FALLBACK_EMBEDDING_DIMENSIONS} "
                "so oracle and fallback vectors share one space"
            )
        return value


settings = Settings()
