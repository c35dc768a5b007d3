"""
Configuration management for the review engine.
"""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .cache import DEFAULT_MAX_ENTRIES, SWEEP_INTERVAL, TTL_LONG, TTL_SHORT

load_dotenv()


class Settings(BaseSettings):
    """Application settings."""

    # Application
    app_name: str = "ReviewEngine"
    debug: bool = False
    version: str = "1.0.0"
    log_level: str = "INFO"

    # Database
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "reviewengine"
    db_user: str = "postgres"
    db_password: str = ""
    database_url: Optional[str] = None

    # Redis mirror for computed statistics (disabled when unset)
    redis_url: Optional[str] = None
    redis_key_prefix: str = "reviewengine"

    # Cache TTLs (in seconds)
    stats_ttl: int = TTL_SHORT  # review-derived statistics
    membership_ttl: int = TTL_LONG  # course/instructor active in term, reference data
    cache_max_entries: int = DEFAULT_MAX_ENTRIES
    cache_sweep_interval: int = SWEEP_INTERVAL

    # Store reads are capped rather than cursored
    max_records: int = 5000

    # Review submission policy
    term_review_limit: int = 7  # a student cannot register more than 7 courses in one term
    course_review_limit: int = 2
    fail_grade: str = "F"

    # Overrides date-based term resolution when set
    current_term_code: Optional[str] = None

    # Top-N defaults
    default_top_n: int = 10
    default_min_sample_size: int = 5

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    @field_validator("database_url", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str], info: ValidationInfo) -> str:
        if isinstance(v, str) and v:
            return v
        values = info.data
        return f"postgresql://{values.get('db_user')}:{values.get('db_password')}@{values.get('db_host')}:{values.get('db_port')}/{values.get('db_name')}"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_default=True,
    )


@lru_cache
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
