import os
from functools import lru_cache
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    openai_api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    openai_base_url: Optional[str] = Field(None, alias="OPENAI_BASE_URL")
    debug_endpoints: bool = Field(False, alias="LESSON_DEBUG_ENDPOINTS")

    database_url: Optional[str] = Field(None, alias="LESSON_DATABASE_URL")
    database_pool_size: int = Field(10, alias="LESSON_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="LESSON_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="LESSON_DATABASE_ECHO")

    generator_fast_model: str = Field("gpt-4o-mini", alias="LESSON_GENERATOR_FAST_MODEL")
    generator_slow_model: str = Field("gpt-4o", alias="LESSON_GENERATOR_SLOW_MODEL")
    generator_temperature: float = Field(0.4, ge=0.0, le=1.0, alias="LESSON_GENERATOR_TEMPERATURE")
    generator_max_tokens: int = Field(1500, ge=256, alias="LESSON_GENERATOR_MAX_TOKENS")
    embedding_model: str = Field("text-embedding-3-small", alias="LESSON_EMBEDDING_MODEL")
    generation_timeout_seconds: float = Field(45.0, gt=0, alias="LESSON_GENERATION_TIMEOUT_SECONDS")
    embedding_timeout_seconds: float = Field(10.0, gt=0, alias="LESSON_EMBEDDING_TIMEOUT_SECONDS")
    daily_generation_limit: int = Field(0, ge=0, alias="LESSON_DAILY_GENERATION_LIMIT")

    cache_capacity: int = Field(5, ge=1, alias="LESSON_CACHE_CAPACITY")
    cache_max_age_days: int = Field(7, ge=1, alias="LESSON_CACHE_MAX_AGE_DAYS")
    delivery_retention: int = Field(50, ge=1, alias="LESSON_DELIVERY_RETENTION")
    exclusion_window: int = Field(20, ge=1, alias="LESSON_EXCLUSION_WINDOW")
    similarity_threshold: float = Field(0.85, gt=0.0, le=1.0, alias="LESSON_SIMILARITY_THRESHOLD")
    dedup_window: int = Field(10, ge=1, alias="LESSON_DEDUP_WINDOW")

    pending_max_depth: int = Field(2, ge=1, alias="LESSON_PENDING_MAX_DEPTH")
    pending_stale_days: int = Field(7, ge=1, alias="LESSON_PENDING_STALE_DAYS")
    producer_enabled: bool = Field(True, alias="LESSON_PRODUCER_ENABLED")
    lock_ttl_seconds: int = Field(180, ge=1, alias="LESSON_LOCK_TTL_SECONDS")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    try:
        settings = Settings()  # type: ignore[arg-type]
        if settings.openai_api_key and not os.getenv("OPENAI_API_KEY"):
            os.environ["OPENAI_API_KEY"] = settings.openai_api_key
        return settings
    except ValidationError as exc:
        raise RuntimeError(f"Invalid backend configuration: {exc}") from exc
