"""Configuration management using pydantic-settings."""

import logging
from datetime import timedelta

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Postmortem Knowledge Graph"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./postmortem_kg.db"

    # LLM Provider Selection
    LLM_PROVIDER: str = ""  # 'claude', 'gemini', 'ollama', or empty for auto-select

    # Anthropic (Claude)
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_MODEL: str = "claude-sonnet-4-5"

    # Ollama (local LLM / embeddings). Empty URL means not configured.
    OLLAMA_BASE_URL: str = ""
    OLLAMA_LLM_MODEL: str = "llama3.1:8b"
    OLLAMA_EMBEDDING_MODEL: str = "mxbai-embed-large"

    # Vertex AI (Gemini completions, text embeddings)
    GCP_PROJECT_ID: str = ""
    VERTEX_AI_PROJECT: str = ""  # Falls back to GCP_PROJECT_ID if empty
    VERTEX_AI_LOCATION: str = "us-central1"
    VERTEX_AI_LLM_MODEL: str = "gemini-2.0-flash"
    VERTEX_AI_EMBEDDING_MODEL: str = "text-embedding-004"
    VERTEX_AI_EMBEDDING_DIMENSION: int = 768

    # Embeddings
    EMBEDDING_PROVIDER: str = ""  # 'ollama', 'vertex-ai', 'sentence-transformer'; empty = disabled
    EMBEDDING_MODEL: str = "all-MiniLM-L6-v2"  # sentence-transformer model

    # Timeouts (seconds)
    LLM_TIMEOUT: float = 120.0  # Single provider HTTP call
    GENERATION_STAGE_TIMEOUT: float = 300.0  # One orchestrator stage, retries included
    EMBEDDING_TIMEOUT: float = 60.0
    SYNTHESIS_TIMEOUT: float = 300.0  # Recommendation synthesis, retries included
    ASSISTANT_TIMEOUT: float = 300.0  # One writing-assistant call, retries included

    # Token budgets
    GENERATION_MAX_TOKENS: int = 8192
    SYNTHESIS_MAX_TOKENS: int = 4096
    ASSISTANT_MAX_TOKENS: int = 2048

    # Recommendation policy
    RECOMMENDATION_CACHE_TTL_MINUTES: int = 15
    RECOMMENDATION_TOP_N: int = 5

    @property
    def vertex_project(self) -> str:
        """Vertex AI project, falling back to the GCP project."""
        return self.VERTEX_AI_PROJECT or self.GCP_PROJECT_ID

    @property
    def recommendation_cache_ttl(self) -> timedelta:
        """Freshness window for cached recommendations."""
        return timedelta(minutes=self.RECOMMENDATION_CACHE_TTL_MINUTES)

    @model_validator(mode="after")
    def check_policy_settings(self) -> "Settings":
        """Validate recommendation policy settings."""
        if self.RECOMMENDATION_TOP_N < 1:
            logging.warning(
                f"RECOMMENDATION_TOP_N={self.RECOMMENDATION_TOP_N} is below 1, using 1"
            )
            self.RECOMMENDATION_TOP_N = 1
        if self.RECOMMENDATION_CACHE_TTL_MINUTES < 0:
            logging.warning("RECOMMENDATION_CACHE_TTL_MINUTES is negative, disabling cache reuse")
            self.RECOMMENDATION_CACHE_TTL_MINUTES = 0
        return self


settings = Settings()
