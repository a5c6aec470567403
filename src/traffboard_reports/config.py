import logging
from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    database_url: str = Field("sqlite:///./traffboard_reports.db", alias="DATABASE_URL")

    # Pipeline cache TTLs (seconds)
    conversion_cache_ttl_seconds: int = Field(300, alias="CONVERSION_CACHE_TTL_SECONDS")
    cohort_cache_ttl_seconds: int = Field(1800, alias="COHORT_CACHE_TTL_SECONDS")

    # Pipeline retries
    pipeline_retry_base_delay_seconds: float = Field(1.0, alias="PIPELINE_RETRY_BASE_DELAY_SECONDS")
    pipeline_max_retries: int = Field(3, alias="PIPELINE_MAX_RETRIES")

    # Cohort processing
    cohort_pipeline_threshold_days: int = Field(90, alias="COHORT_PIPELINE_THRESHOLD_DAYS")
    cohort_batch_size: int = Field(50, alias="COHORT_BATCH_SIZE")  # days per batch window
    cohort_max_concurrency: int = Field(4, alias="COHORT_MAX_CONCURRENCY")
    cohort_max_cohorts: int = Field(100, alias="COHORT_MAX_COHORTS")
    query_hash_bucket_seconds: int = Field(300, alias="QUERY_HASH_BUCKET_SECONDS")

    # CSV ingestion
    ingest_batch_upsert_size: int = Field(500, alias="INGEST_BATCH_UPSERT_SIZE")
    csv_preview_rows: int = Field(5, alias="CSV_PREVIEW_ROWS")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "allow"
        populate_by_name = True


@lru_cache
def get_settings() -> Settings:
    return Settings()


def reset_settings():
    """Clear cached settings (useful in tests when env vars change)."""
    get_settings.cache_clear()


def configure_logging(level: str | None = None) -> None:
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
