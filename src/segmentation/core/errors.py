"""
Segmentation Exceptions.

Error kinds raised by the segment and scoring services. Callers of the
public service API only need to handle the bad-condition errors; the others
are raised and handled inside the bulk update pipeline and the scheduler.
"""

from __future__ import annotations

from typing import Optional


class SegmentationError(Exception):
    """Base class for all segmentation errors."""


class BadConditionError(SegmentationError):
    """
    A definition's condition cannot be used.

    Raised before anything is persisted when a condition references an
    unknown condition type or is rejected by the store's validation.
    """

    kind = "definition"

    def __init__(self, item_id: str, reason: str = "invalid condition") -> None:
        self.item_id = item_id
        self.reason = reason
        super().__init__(f"Bad {self.kind} condition for '{item_id}': {reason}")


class BadSegmentConditionError(BadConditionError):
    """The condition of a segment is invalid."""

    kind = "segment"


class BadScoringConditionError(BadConditionError):
    """The condition of a scoring element is invalid."""

    kind = "scoring"


class ProfileUpdateError(SegmentationError):
    """
    A single profile update was refused by the store.

    This is the only error the per-profile retry loop retries on.
    """

    def __init__(self, profile_id: str, message: Optional[str] = None) -> None:
        self.profile_id = profile_id
        super().__init__(message or f"Failed to update profile '{profile_id}'")


class ProfileNotFoundError(SegmentationError):
    """A profile disappeared before it could be reloaded for a retry."""

    def __init__(self, profile_id: str) -> None:
        self.profile_id = profile_id
        super().__init__(f"Profile '{profile_id}' not found")


class MaintenanceError(SegmentationError):
    """
    A scheduled maintenance pass finished with failures.

    The pass keeps going past individual failures; this error is raised at
    the end so the scheduler records the run as failed.
    """

    def __init__(self, task: str, failed: list[str], message: Optional[str] = None) -> None:
        self.task = task
        self.failed = list(failed)
        super().__init__(message or f"{task}: {len(self.failed)} item(s) failed: {', '.join(self.failed)}")
