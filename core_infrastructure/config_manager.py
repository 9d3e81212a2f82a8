"""
Centralized configuration management using Pydantic Settings.
Every tunable of the ingestion pipeline lives here; values come from the
environment with a per-section prefix.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class PipelineConfig(BaseSettings):
    """Transform, merge and size-governance settings."""
    transform_batch_size: int = 1000
    preferred_category_columns: List[str] = ["Notes", "Description", "Comments"]
    default_chart_type: str = "Area"

    # Hard ceiling on the serialized category list of one dataset
    max_payload_bytes: int = 8 * 1024 * 1024

    # Caller-side bound on the load -> merge -> write sequence
    transaction_timeout_seconds: float = 60.0

    allowed_extensions: List[str] = [".csv", ".xlsx", ".xls"]
    allowed_content_types: List[str] = [
        "text/csv",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/octet-stream",
    ]

    class Config:
        env_prefix = "PIPELINE_"
        case_sensitive = False


class StorageConfig(BaseSettings):
    """Tiered store and blob backend configuration."""
    backend: str = "supabase"  # "supabase" or "memory"
    bucket: str = "dataset-payloads"
    datasets_table: str = "datasets"
    inline_threshold_bytes: int = 300 * 1024
    compress_external: bool = True
    write_retry_attempts: int = 3
    write_retry_base_seconds: float = 0.5
    write_retry_max_wait_seconds: float = 10.0

    class Config:
        env_prefix = "STORAGE_"
        case_sensitive = False


class CacheConfig(BaseSettings):
    """Dataset cache configuration."""
    backend: str = "redis"  # "redis" or "memory"
    redis_url: Optional[str] = None
    namespace: str = "dataset_pipeline"
    ttl_seconds: int = 3600
    max_entry_bytes: int = 5 * 1024 * 1024
    warn_entry_bytes: int = 4 * 1024 * 1024
    invalidate_retry_attempts: int = 3

    class Config:
        env_prefix = "CACHE_"
        case_sensitive = False


class ChunkConfig(BaseSettings):
    """Chunked upload limits."""
    max_chunk_bytes: int = 2 * 1024 * 1024
    max_file_bytes: int = 6 * 1024 * 1024
    buffer_ttl_seconds: int = 3600

    class Config:
        env_prefix = "CHUNK_"
        case_sensitive = False


class QueueConfig(BaseSettings):
    """ARQ queue configuration."""
    backend: str = "arq"  # "arq" or "inprocess"
    redis_url: Optional[str] = None

    # Job settings
    job_timeout_seconds: int = 300
    deletion_attempts: int = 3
    deletion_backoff_base_seconds: float = 1.0
    deletion_backoff_max_seconds: float = 10.0

    class Config:
        env_prefix = "QUEUE_"
        case_sensitive = False


class TextGenerationConfig(BaseSettings):
    """Text generation service used for document extraction."""
    api_key: str = ""
    model: str = "llama-3.3-70b-versatile"
    temperature: float = 0.0
    max_tokens: int = 8000
    timeout_seconds: float = 60.0

    class Config:
        env_prefix = "GROQ_"
        case_sensitive = False


class AppConfig(BaseSettings):
    """Application-wide configuration."""
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = True

    class Config:
        env_prefix = "APP_"
        case_sensitive = False


# Singleton instances
pipeline_config = PipelineConfig()
storage_config = StorageConfig()
cache_config = CacheConfig()
chunk_config = ChunkConfig()
queue_config = QueueConfig()
text_generation_config = TextGenerationConfig()
app_config = AppConfig()


def get_pipeline_config() -> PipelineConfig:
    """Get pipeline configuration."""
    return pipeline_config


def get_storage_config() -> StorageConfig:
    """Get storage configuration."""
    return storage_config


def get_cache_config() -> CacheConfig:
    """Get cache configuration."""
    return cache_config


def get_chunk_config() -> ChunkConfig:
    return chunk_config


def get_queue_config() -> QueueConfig:
    """Get queue configuration."""
    return queue_config


def get_text_generation_config() -> TextGenerationConfig:
    return text_generation_config


def get_app_config() -> AppConfig:
    """Get app configuration."""
    return app_config
