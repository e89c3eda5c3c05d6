"""
Segmentation Core Module

Shared infrastructure for the segmentation package.
"""

from .config import SegmentationSettings, get_settings, reset_settings
from .errors import (
    BadConditionError,
    BadScoringConditionError,
    BadSegmentConditionError,
    MaintenanceError,
    ProfileNotFoundError,
    ProfileUpdateError,
    SegmentationError,
)
from .logging import get_logger, set_log_level, with_context
from .retry import is_retry_enabled, profile_update_retry

__all__ = [
    # Config
    "SegmentationSettings",
    "get_settings",
    "reset_settings",
    # Errors
    "BadConditionError",
    "BadScoringConditionError",
    "BadSegmentConditionError",
    "MaintenanceError",
    "ProfileNotFoundError",
    "ProfileUpdateError",
    "SegmentationError",
    # Logging
    "get_logger",
    "set_log_level",
    "with_context",
    # Retry
    "is_retry_enabled",
    "profile_update_retry",
]
