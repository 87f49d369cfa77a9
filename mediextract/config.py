"""
Configuration settings for mediextract.

Reads credentials from the project .env file and provides typed settings.
"""

from pathlib import Path
from functools import lru_cache

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Resolve paths
PACKAGE_DIR = Path(__file__).parent
PROJECT_ROOT = PACKAGE_DIR.parent
ENV_FILE = PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Gemini API
    gemini_api_key: str = Field(
        default="",
        alias="GEMINI_API_KEY",
        description="Google Gemini API key"
    )
    gemini_model: str = Field(
        default="gemini-2.5-flash",
        alias="GEMINI_MODEL",
        description="Default Gemini model for every agent stage"
    )
    gemini_max_output_tokens: int = Field(default=65536, description="Max output tokens for Gemini")
    gemini_temperature: float = Field(default=0.1, description="Low temperature for consistent extraction")

    # Application settings
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # History database (SQLite file by default)
    database_url: str = Field(
        default="",
        alias="DATABASE_URL",
        description="SQLAlchemy URL for the extraction history store"
    )

    # API retry settings (for transient errors like 503, 429, quota exhaustion)
    api_retry_max_retries: int = Field(
        default=5,
        description="Max retries after the first attempt for transient API errors"
    )
    api_retry_initial_backoff: float = Field(
        default=2.0,
        description="Initial delay in seconds for exponential backoff"
    )
    api_retry_max_delay: float = Field(
        default=60.0,
        description="Maximum backoff in seconds before jitter"
    )
    api_retry_max_jitter: float = Field(
        default=1.0,
        description="Upper bound of the random jitter added to each backoff"
    )

    # Pipeline settings
    inter_stage_delay: float = Field(
        default=2.0,
        description="Pause in seconds between agent stages (to avoid bursting the rate limiter)"
    )
    block_chunk_size: int = Field(
        default=1,
        ge=1,
        description="Number of schema blocks sent per agent call"
    )
    max_recheck_rounds: int = Field(
        default=1,
        ge=0,
        description="Targeted re-runs of a stage for blocks that failed validation"
    )

    # Deterministic validator settings
    min_reasoning_length: int = Field(
        default=8,
        description="Reasoning must be longer than this many characters to count as evidence"
    )
    group_count_pattern: str = Field(
        default=r"number of compar\w*ve groups described",
        description="Regex locating the question that declares the comparative group count"
    )
    group_reference_pattern: str = Field(
        default=r"\bgroup\s*(\d+)\b",
        description="Regex extracting a referenced group number from a question label"
    )

    # Schema settings
    default_schema_file: str = Field(
        default="medical_schema.json",
        description="Question schema bundled in the schemas directory"
    )

    @computed_field
    @property
    def prompts_dir(self) -> Path:
        """Path to prompts directory."""
        return PACKAGE_DIR / "prompts"

    @computed_field
    @property
    def schemas_dir(self) -> Path:
        """Path to schemas directory."""
        return PACKAGE_DIR / "schemas"

    @computed_field
    @property
    def outputs_dir(self) -> Path:
        """Path to outputs directory."""
        return PROJECT_ROOT / "outputs"

    def get_database_url(self) -> str:
        """Return the history database URL, defaulting to a SQLite file in outputs."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.outputs_dir / 'history.db'}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience accessors
settings = get_settings()
