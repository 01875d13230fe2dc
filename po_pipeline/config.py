"""Configuration management for purchase-order extraction."""
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.models import AISettings, ChunkingConfig


class Settings(BaseSettings):
    """Centralized configuration for the extraction pipeline."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # API Configuration
    gemini_api_key: str = Field(..., description="Gemini API key for document extraction")
    use_vertex_ai: bool = Field(default=False, description="Use Vertex AI instead of standard Gemini API")
    google_cloud_project: str = Field(default="not-set", description="Google Cloud project for Vertex AI")
    google_cloud_location: str = Field(default="not-set", description="Google Cloud location for Vertex AI")

    # Model Configuration
    extraction_model: str = Field(default="gemini-2.5-flash", description="Model for structured extraction")

    # Chunking Configuration
    max_chunk_chars: int = Field(default=3200, gt=0, description="Largest chunk sent in one extraction call")
    min_chunk_chars: int = Field(default=800, ge=0, description="Smallest non-final chunk")
    overlap_chars: int = Field(default=400, ge=0, description="Characters repeated from the previous chunk")
    max_chunks: int = Field(default=50, ge=1, description="Hard cap on chunks per document")
    chunk_concurrency: int = Field(default=4, ge=1, description="Chunks extracted at once per document")

    # Processing Configuration
    quota_limit: int = Field(default=10, ge=1, description="API concurrency limit")
    pdf_fd_semaphore_limit: int = Field(default=50, ge=1, description="Concurrent PDF file operations")
    max_document_size_mb: float = Field(default=100.0, gt=0, description="Largest accepted document")
    parse_timeout_seconds: float = Field(default=300.0, gt=0, description="Time budget for one parse call")
    use_anchor_extraction: bool = Field(default=False, description="Shorten prompts to anchor snippets")

    # Retry Configuration
    retry_max_attempts: int = Field(default=3, ge=1, description="Maximum retry attempts per API call")
    retry_base_delay: float = Field(default=2.0, ge=0, description="Base delay for exponential backoff")
    retry_max_delay: float = Field(default=10.0, ge=0, description="Maximum delay between retries")
    retry_jitter_range: float = Field(default=3.0, ge=0, description="Jitter range for retry delays")

    # Queue Configuration
    queue_max_attempts: int = Field(default=3, ge=1, description="Delivery attempts per job before dead-lettering")
    queue_base_delay: float = Field(default=2.0, ge=0, description="Base delay between job attempts")
    queue_max_delay: float = Field(default=60.0, ge=0, description="Maximum delay between job attempts")
    worker_concurrency: int = Field(default=2, ge=1, description="Jobs processed at once")

    # Review thresholds
    auto_approve_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    reject_threshold: float = Field(default=0.3, ge=0.0, le=1.0)

    # Storage
    state_db_path: Path = Field(default=Path("po_pipeline_state.db"), description="SQLite state store path")

    # Debug Configuration
    debug_responses: bool = Field(default=False, description="Log raw model responses")

    @field_validator("gemini_api_key")
    @classmethod
    def api_key_must_not_be_empty(cls, v):
        """Ensure API key is provided."""
        if not v or v.strip() == "":
            raise ValueError("GEMINI_API_KEY must be provided")
        return v

    @field_validator("use_vertex_ai", mode="before")
    @classmethod
    def parse_vertex_ai_flag(cls, v):
        """Parse vertex AI flag from string."""
        if isinstance(v, str):
            return v.lower() == "true"
        return v

    @field_validator("debug_responses", mode="before")
    @classmethod
    def parse_debug_flag(cls, v):
        """Parse debug flag from string."""
        if isinstance(v, str):
            return v == "1" or v.lower() == "true"
        return v

    @property
    def api_client_kwargs(self) -> dict:
        """Get API client configuration."""
        if self.use_vertex_ai:
            return {
                "vertexai": True,
                "project": self.google_cloud_project,
                "location": self.google_cloud_location,
            }
        return {"api_key": self.gemini_api_key}

    def chunking_config(self, ai_settings: AISettings | None = None) -> ChunkingConfig:
        """Chunking bounds with per-merchant overrides applied."""
        max_chars = self.max_chunk_chars
        if ai_settings and ai_settings.max_chunk_chars:
            max_chars = ai_settings.max_chunk_chars

        return ChunkingConfig(
            max_chunk_chars=max_chars,
            min_chunk_chars=min(self.min_chunk_chars, max_chars),
            overlap_chars=min(self.overlap_chars, max_chars // 4),
            max_chunks=self.max_chunks,
        )
