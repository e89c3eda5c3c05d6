"""
Segmentation Centralized Configuration

Provides validated, type-safe access to all environment variables using Pydantic Settings.
All environment variables are validated at first access with helpful error messages.

Usage:
    from segmentation.core.config import get_settings

    settings = get_settings()
    if settings.batch_segment_profile_update:
        ...

Environment Variables:
    SEGMENTATION_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    SEGMENTATION_DEBUG: Legacy debug flag (enables DEBUG level if set)
    SEGMENTATION_LOG_JSON: Output logs as JSON
    SEGMENTATION_SEGMENT_UPDATE_BATCH_SIZE: Profiles per bulk update page
    SEGMENTATION_SEGMENT_REFRESH_INTERVAL: Definition cache refresh period (ms)
    SEGMENTATION_AGGREGATE_QUERY_BUCKET_SIZE: Partition size for past event backfill
    SEGMENTATION_MAXIMUM_IDS_QUERY_COUNT: Bucket count for unpartitioned backfill
    SEGMENTATION_PAST_EVENTS_DISABLE_PARTITIONS: Use a single terms aggregate
    SEGMENTATION_MAX_RETRIES_FOR_UPDATE_PROFILE_SEGMENT: Per-profile retries (0 = off)
    SEGMENTATION_SECONDS_DELAY_FOR_RETRY_UPDATE_PROFILE_SEGMENT: Delay between retries
    SEGMENTATION_BATCH_SEGMENT_PROFILE_UPDATE: Batched instead of one-by-one updates
    SEGMENTATION_SEND_PROFILE_UPDATE_EVENT_FOR_SEGMENT_UPDATE: Emit profileUpdated events
    SEGMENTATION_DAILY_DATE_EXPR_EVALUATION_HOUR_UTC: Hour of the date expression pass
    SEGMENTATION_TASK_EXECUTION_PERIOD: Days between past event recomputes
    SEGMENTATION_SCROLL_TIME_VALIDITY: Scroll cursor time-to-live
    SEGMENTATION_PREDEFINED_DEFINITIONS_DIR: Directory of predefined segments/scorings
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_project_env_file() -> Path | None:
    """
    Find .env file by searching for project root markers.

    Searches upward from this file's location for pyproject.toml,
    then checks for .env in that directory.

    Returns:
        Path to .env if found, None otherwise
    """
    current = Path(__file__).resolve().parent

    for _ in range(10):  # Limit search depth
        if (current / "pyproject.toml").exists():
            env_file = current / ".env"
            if env_file.exists():
                return env_file
            return None
        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


_ENV_FILE = _find_project_env_file()


class SegmentationSettings(BaseSettings):
    """
    Segmentation engine settings with validation.

    Environment variables are automatically loaded with the SEGMENTATION_ prefix.
    Defaults match the behaviour of a stock deployment.
    """

    model_config = SettingsConfigDict(
        env_prefix="SEGMENTATION_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # =========================================================================
    # Logging Configuration
    # =========================================================================

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Log level for segmentation components",
    )

    debug: bool = Field(
        default=False,
        description="Legacy debug flag (enables DEBUG level if set)",
    )

    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format for machine parsing",
    )

    # =========================================================================
    # Bulk Profile Updates
    # =========================================================================

    segment_update_batch_size: int = Field(
        default=1000,
        ge=1,
        description="Number of profiles fetched and updated per page",
    )

    batch_segment_profile_update: bool = Field(
        default=False,
        description="Submit each page as one multi-item update instead of one update per profile",
    )

    max_retries_for_update_profile_segment: int = Field(
        default=0,
        ge=0,
        description="Retries for a profile whose batched update failed (0 disables retry)",
    )

    seconds_delay_for_retry_update_profile_segment: float = Field(
        default=1.0,
        ge=0,
        description="Fixed delay between two retries of the same profile",
    )

    send_profile_update_event_for_segment_update: bool = Field(
        default=True,
        description="Send a non-persistent profileUpdated event per mutated profile",
    )

    scroll_time_validity: str = Field(
        default="10m",
        description="Time-to-live of the scroll cursor used to page through profiles",
    )

    # =========================================================================
    # Past Event Counting
    # =========================================================================

    aggregate_query_bucket_size: int = Field(
        default=5000,
        ge=1,
        description="Approximate number of profiles per terms partition",
    )

    maximum_ids_query_count: int = Field(
        default=5000,
        ge=1,
        description="Bucket count of the terms aggregate when partitions are disabled",
    )

    past_events_disable_partitions: bool = Field(
        default=False,
        description="Count past events with a single terms aggregate",
    )

    # =========================================================================
    # Scheduling
    # =========================================================================

    segment_refresh_interval: int = Field(
        default=1000,
        ge=1,
        description="Definition cache refresh period in milliseconds",
    )

    task_execution_period: int = Field(
        default=1,
        ge=1,
        description="Days between two recomputes of relative past event counts",
    )

    daily_date_expr_evaluation_hour_utc: int = Field(
        default=5,
        ge=0,
        le=23,
        description="UTC hour at which segments using date expressions are re-evaluated",
    )

    # =========================================================================
    # Data Paths
    # =========================================================================

    predefined_definitions_dir: Optional[Path] = Field(
        default=None,
        description="Directory holding segments/ and scoring/ definition files",
    )

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str) -> str:
        """Normalize log level to uppercase."""
        if isinstance(v, str):
            return v.upper()
        return v

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def effective_log_level(self) -> str:
        """
        Get effective log level, respecting legacy SEGMENTATION_DEBUG.

        Priority:
        1. Explicit SEGMENTATION_LOG_LEVEL
        2. SEGMENTATION_DEBUG=1 -> DEBUG
        3. Default: WARNING
        """
        if self.debug and self.log_level == "WARNING":
            return "DEBUG"
        return self.log_level

    @property
    def log_level_int(self) -> int:
        """Get effective log level as logging constant."""
        return getattr(logging, self.effective_log_level)

    @property
    def segment_refresh_interval_seconds(self) -> float:
        """Cache refresh period in seconds."""
        return self.segment_refresh_interval / 1000.0


# =============================================================================
# Singleton Accessor
# =============================================================================


@lru_cache(maxsize=1)
def get_settings() -> SegmentationSettings:
    """
    Get the singleton settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    The settings are validated at first access.

    Returns:
        SegmentationSettings instance with validated configuration
    """
    return SegmentationSettings()


def reset_settings() -> None:
    """
    Reset the settings cache (for testing).

    After calling this, the next get_settings() call will
    reload settings from environment variables.
    """
    get_settings.cache_clear()


# =============================================================================
# Convenience Functions
# =============================================================================


def is_debug_enabled() -> bool:
    """Check if debug logging is enabled."""
    return get_settings().effective_log_level == "DEBUG"


def is_json_logging() -> bool:
    """Check if JSON logging is enabled."""
    return get_settings().log_json
