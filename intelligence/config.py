"""Centralised configuration loaded from environment variables / .env file."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # OpenAI (web agent synthesis, deep research agent, embeddings)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_deep_research_model: str = "o4-mini-deep-research"
    openai_embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536

    # Perplexity deep research agent
    perplexity_api_key: str = ""
    perplexity_model: str = "sonar-deep-research"

    # Anthropic (reconciliation)
    anthropic_api_key: str = ""
    reconciliation_model: str = "claude-sonnet-4-5-20250929"
    reconciliation_max_tokens: int = 16384

    # Search backends
    jina_api_key: str = ""
    serpapi_api_key: str = ""

    # Database
    database_url: str = "sqlite:///./intelligence.db"

    # Redis cache
    redis_url: str = "redis://localhost:6379"
    entity_status_ttl_seconds: int = 300
    report_ttl_seconds: int = 3600

    # HTTP surface
    intelligence_api_key: str = ""
    reports_base_url: str = "http://localhost:3000"
    run_worker_in_api: bool = False

    # Logging
    log_level: str = "INFO"

    # Dossier bounds
    dossier_batch_size: int = 2
    dossier_batch_delay_seconds: float = 1.0
    dossier_max_chars: int = 100_000
    dossier_source_max_chars: int = 5_000
    dossier_min_source_chars: int = 100

    # Agent timeouts (seconds)
    perplexity_timeout_seconds: float = 300.0
    openai_research_timeout_seconds: float = 600.0
    web_agent_timeout_seconds: float = 600.0

    # Reconciliation retry
    reconciliation_max_attempts: int = 3
    reconciliation_retry_delay_seconds: float = 10.0

    # Worker pool
    worker_concurrency: int = 2
    job_lock_seconds: int = 900
    stalled_interval_seconds: int = 180
    poll_interval_seconds: float = 2.0
    max_job_attempts: int = 3

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def effective_database_url(self) -> str:
        """Return a SQLAlchemy-compatible URL.

        Hosted Postgres providers inject ``postgres://`` but SQLAlchemy 2.0+
        requires ``postgresql://``.
        """
        url = self.database_url
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        return url


settings = Settings()


def validate_config() -> list[str]:
    """Log which research providers are unconfigured. Returns the missing keys."""
    missing = [
        name
        for name in (
            "openai_api_key",
            "perplexity_api_key",
            "anthropic_api_key",
            "jina_api_key",
            "serpapi_api_key",
        )
        if not getattr(settings, name)
    ]
    for name in missing:
        logger.warning("%s not configured", name.upper())
    if not settings.anthropic_api_key:
        logger.warning("Reconciliation disabled until ANTHROPIC_API_KEY is set")
    return missing
