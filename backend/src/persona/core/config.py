"""Configuration management for the Persona backend.

Uses Pydantic Settings for type-safe, environment-based configuration.
"""

from pathlib import Path
from typing import Annotated

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Load environment variables from .env file
load_dotenv(override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # App configuration
    app_name: str = Field("Persona", alias="PERSONA_APP_NAME")
    debug: bool = Field(False, alias="PERSONA_DEBUG")
    version: str = Field("0.1.0-dev", alias="PERSONA_APP_VERSION")

    # API configuration
    api_v1_prefix: str = "/api/v1"
    api_host: str = Field("127.0.0.1", alias="PERSONA_API_HOST")
    api_port: int = Field(8000, alias="PERSONA_API_PORT")
    environment: str = Field("development", alias="PERSONA_ENVIRONMENT")
    reload: bool = Field(False, alias="PERSONA_RELOAD")
    allowed_origins: list[str] = ["*"]

    # Database configuration
    database_url: str = Field(alias="PERSONA_DATABASE_URL")
    database_pool_size: int = 20
    database_max_overflow: int = 30
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Blob storage configuration
    blob_storage_dir: str = Field("./data/blobs", alias="PERSONA_BLOB_STORAGE_DIR")
    max_upload_size: int = Field(50 * 1024 * 1024, alias="PERSONA_MAX_UPLOAD_SIZE")

    # Embedding provider (OpenAI-compatible /embeddings)
    embedding_api_base: str = Field(
        "https://dashscope.aliyuncs.com/compatible-mode/v1", alias="PERSONA_EMBEDDING_API_BASE"
    )
    embedding_api_key: str | None = Field(None, alias="PERSONA_EMBEDDING_API_KEY")
    embedding_model: str = Field("text-embedding-v4", alias="PERSONA_EMBEDDING_MODEL")
    embedding_dimension: int = Field(1024, alias="PERSONA_EMBEDDING_DIMENSION")
    embedding_batch_size: int = Field(10, alias="PERSONA_EMBEDDING_BATCH_SIZE")
    embedding_timeout: float = Field(30.0, alias="PERSONA_EMBEDDING_TIMEOUT")
    embedding_max_attempts: int = Field(3, alias="PERSONA_EMBEDDING_MAX_ATTEMPTS")

    # Text processing configuration
    default_chunk_size: int = Field(1000, alias="PERSONA_DEFAULT_CHUNK_SIZE")
    default_chunk_overlap: int = Field(200, alias="PERSONA_DEFAULT_CHUNK_OVERLAP")

    # Vector index configuration
    vector_index_type: str = Field("hnsw", alias="PERSONA_VECTOR_INDEX_TYPE")

    # Ingestion worker configuration
    worker_poll_interval: float = Field(10.0, alias="PERSONA_WORKER_POLL_INTERVAL")
    worker_shutdown_timeout: float = Field(30.0, alias="PERSONA_WORKER_SHUTDOWN_TIMEOUT")
    worker_concurrency: int = Field(1, alias="PERSONA_WORKER_CONCURRENCY")
    # Files left in "processing" longer than this are assumed orphaned by a crashed worker
    ingestion_stale_after_seconds: int = Field(900, alias="PERSONA_INGESTION_STALE_AFTER_SECONDS")

    # Retrieval configuration
    rag_search_threshold_default: float = Field(0.5, alias="PERSONA_RAG_SEARCH_THRESHOLD")
    rag_max_results_default: int = Field(5, alias="PERSONA_RAG_MAX_RESULTS")
    rag_tool_result_limit: int = Field(5, alias="PERSONA_RAG_TOOL_RESULT_LIMIT")
    rag_tool_threshold: float = Field(0.5, alias="PERSONA_RAG_TOOL_THRESHOLD")

    # Chat model provider (OpenAI-compatible /chat/completions)
    llm_api_base: str = Field("https://dashscope.aliyuncs.com/compatible-mode/v1", alias="PERSONA_LLM_API_BASE")
    llm_api_key: str | None = Field(None, alias="PERSONA_LLM_API_KEY")
    llm_model: str = Field("qwen-plus", alias="PERSONA_LLM_MODEL")
    llm_temperature: float = Field(0.7, alias="PERSONA_LLM_TEMPERATURE")
    llm_global_timeout: float = Field(30.0, alias="PERSONA_LLM_GLOBAL_TIMEOUT")
    llm_streaming_read_timeout: float = Field(120.0, alias="PERSONA_LLM_STREAMING_READ_TIMEOUT")
    llm_max_attempts: int = Field(3, alias="PERSONA_LLM_MAX_ATTEMPTS")

    # Conversation configuration
    chat_history_limit: int = Field(20, alias="PERSONA_CHAT_HISTORY_LIMIT")
    chat_max_tool_rounds: int = Field(5, alias="PERSONA_CHAT_MAX_TOOL_ROUNDS")
    chat_preview_length: int = Field(50, alias="PERSONA_CHAT_PREVIEW_LENGTH")

    # Plugin sandbox configuration
    plugin_timeout_ms: int = Field(5000, alias="PERSONA_PLUGIN_TIMEOUT_MS")
    plugin_memory_limit_mb: int = Field(512, alias="PERSONA_PLUGIN_MEMORY_LIMIT_MB")
    plugin_max_code_length: int = Field(50_000, alias="PERSONA_PLUGIN_MAX_CODE_LENGTH")
    plugin_max_output_bytes: int = Field(1024 * 1024, alias="PERSONA_PLUGIN_MAX_OUTPUT_BYTES")
    plugin_allowed_modules: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: [
            "base64",
            "collections",
            "datetime",
            "decimal",
            "fractions",
            "functools",
            "hashlib",
            "itertools",
            "json",
            "math",
            "random",
            "re",
            "statistics",
            "string",
            "textwrap",
            "unicodedata",
        ],
        alias="PERSONA_PLUGIN_ALLOWED_MODULES",
    )

    # Logging configuration
    log_level: str = Field("INFO", alias="PERSONA_LOG_LEVEL")
    log_format: str = Field("text", alias="PERSONA_LOG_FORMAT")  # text or json
    log_dir: str = Field("./data/logs", alias="PERSONA_LOG_DIR")
    log_retention_days: int = Field(14, alias="PERSONA_LOG_RETENTION_DAYS")

    @staticmethod
    def _repo_root_from_this_file() -> Path:
        """Resolve repository root for both local and container layouts.

        - Local dev: <repo>/backend/src/persona/core/config.py -> repo root = <repo>
        - Container: /app/src/persona/core/config.py -> repo root = /app
        """
        here = Path(__file__).resolve()
        src_dir = here.parents[2]
        candidate_parent = src_dir.parent
        return candidate_parent.parent if candidate_parent.name == "backend" else candidate_parent

    @field_validator("log_dir", "blob_storage_dir", mode="before")
    @classmethod
    def _resolve_data_dir(cls, v: str) -> str:
        p = Path(v)
        if p.is_absolute():
            return str(p)
        return str((cls._repo_root_from_this_file() / p).resolve())

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+psycopg2://", "postgresql+asyncpg://")):
            raise ValueError("Database URL must be PostgreSQL")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = ["text", "json"]
        if v.lower() not in valid_formats:
            raise ValueError(f"Log format must be one of: {valid_formats}")
        return v.lower()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment setting."""
        valid_environments = ["development", "staging", "production"]
        if v.lower() not in valid_environments:
            raise ValueError(f"Environment must be one of: {valid_environments}")
        return v.lower()

    @field_validator("vector_index_type")
    @classmethod
    def validate_vector_index_type(cls, v: str) -> str:
        """Validate vector index type."""
        valid_types = ["ivfflat", "hnsw"]
        if v.lower() not in valid_types:
            raise ValueError(f"Vector index type must be one of: {valid_types}")
        return v.lower()

    @field_validator("rag_search_threshold_default", "rag_tool_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("Similarity thresholds must be between 0 and 1")
        return v

    @field_validator("plugin_allowed_modules", mode="before")
    @classmethod
    def validate_allowed_modules(cls, v: str | list) -> list:
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [m.strip() for m in v.split(",") if m.strip()]
        return v

    @model_validator(mode="after")
    def validate_chunking(self) -> "Settings":
        if self.default_chunk_overlap >= self.default_chunk_size:
            raise ValueError("PERSONA_DEFAULT_CHUNK_OVERLAP must be smaller than PERSONA_DEFAULT_CHUNK_SIZE")
        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


def get_settings() -> Settings:
    """Build a fresh settings instance from the environment."""
    return Settings()  # type: ignore[call-arg]


# Global settings instance - created when first accessed
settings = None


def get_settings_instance() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global settings  # noqa: PLW0603
    if settings is None:
        settings = get_settings()
    return settings
