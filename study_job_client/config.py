"""
Client configuration.

Settings load from ``STUDY_JOBS_*`` environment variables (or a ``.env``
file). Nested polling policies use ``__``, e.g.
``STUDY_JOBS_GENERATION__INTERVAL_MS=3000``.
"""

import sys
from functools import lru_cache

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from study_job_client.models import JobKind, PollingPolicy


class GenerationPolicy(PollingPolicy):
    interval_ms: int = Field(default=5000, ge=0)


class TextExtractionPolicy(PollingPolicy):
    interval_ms: int = Field(default=1000, ge=0)


class TopicExtractionPolicy(PollingPolicy):
    interval_ms: int = Field(default=2000, ge=0)


class StudyJobSettings(BaseSettings):
    """Backend location, logging and per-kind polling policies."""

    model_config = SettingsConfigDict(
        env_prefix="STUDY_JOBS_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    api_base_url: str = Field(
        default="http://localhost:5001/student-budi/us-central1/api",
        description="Base URL of the study app REST API",
    )
    request_timeout: float = Field(default=60.0, description="Per-request timeout in seconds")
    log_level: str = Field(default="INFO", description="loguru level for the stderr sink")

    # Partial env overrides are validated against these classes, keeping per-kind defaults
    generation: GenerationPolicy = Field(default_factory=GenerationPolicy)
    text_extraction: TextExtractionPolicy = Field(default_factory=TextExtractionPolicy)
    topic_extraction: TopicExtractionPolicy = Field(default_factory=TopicExtractionPolicy)

    def policy_for(self, kind: JobKind) -> PollingPolicy:
        return getattr(self, kind.value)


@lru_cache
def get_settings() -> StudyJobSettings:
    return StudyJobSettings()


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's default sink with a stderr sink at ``level``."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper())
