"""
Bulk Profile Update Pipeline.

Keeps the segment, score and past event fields of every stored profile in
line with the definitions:
- Membership changes stream matching profiles page by page through a
  scroll cursor and update each page either in one multi-item request
  (batched mode) or profile by profile
- Profiles whose batched update failed are reloaded and retried up to a
  bounded number of times, then logged and left for the next full resync
- Each mutated profile gets one non-persistent profileUpdated event
- Scores are resynced with store-side scripted updates

Pages are processed sequentially within one call.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .conditions import (
    boolean_condition,
    not_condition,
    score_exists_condition,
    segment_membership_condition,
)
from .core.config import SegmentationSettings, get_settings
from .core.errors import ProfileNotFoundError, ProfileUpdateError
from .core.logging import get_logger
from .core.retry import is_retry_enabled, profile_update_retry
from .models import PROFILE, RULE, SEGMENT, Condition, Event, Profile, Scoring, ScriptedUpdate, Segment

if TYPE_CHECKING:
    from .interfaces import EventService, PersistenceService

logger = get_logger(__name__)

PROFILE_UPDATED_EVENT = "profileUpdated"

# Scripted updates applied by the store, see ScriptedUpdate
RESET_SCORE_SCRIPT = "resetScore"
ADD_SCORE_SCRIPT = "addScore"
REMOVE_SCORE_SCRIPT = "removeScore"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ProfileUpdatePipeline:
    """
    Paged, retry-aware mutation of profiles.

    Usage:
        pipeline = ProfileUpdatePipeline(persistence, events)
        pipeline.update_existing_profiles_for_segment(segment)
    """

    def __init__(
        self,
        persistence: PersistenceService,
        events: EventService,
        settings: SegmentationSettings | None = None,
    ) -> None:
        self._persistence = persistence
        self._events = events
        self._settings = settings or get_settings()

    # =========================================================================
    # Segment Membership
    # =========================================================================

    def build_segment_update_fields(self, profile: Profile, segment_id: str, is_add: bool) -> dict[str, Any]:
        """
        Apply a membership change to profile and return the fields to write.

        The whole segment set is written back, along with a fresh
        systemProperties.lastUpdated.
        """
        if is_add:
            profile.segments.add(segment_id)
        else:
            profile.segments.discard(segment_id)

        profile.system_properties["lastUpdated"] = _now()
        return {
            "segments": sorted(profile.segments),
            "systemProperties": profile.system_properties,
        }

    def update_existing_profiles_for_segment(self, segment: Segment) -> int:
        """
        Bring stored memberships of one segment in line with its condition.

        Enabled segments add matching non-members and remove non-matching
        members; disabled segments lose all members.

        Returns:
            Number of profiles updated
        """
        start = time.monotonic()
        segment_id = segment.item_id
        membership = segment_membership_condition(segment_id)

        if segment.metadata.enabled and segment.condition is not None:
            to_add = boolean_condition("and", [segment.condition, not_condition(membership)])
            to_remove = boolean_condition("and", [membership, not_condition(segment.condition)])
            updated = self.update_profiles_segment(to_add, segment_id, is_add=True)
            updated += self.update_profiles_segment(to_remove, segment_id, is_add=False)
        else:
            updated = self.update_profiles_segment(membership, segment_id, is_add=False)

        logger.info("%d profiles updated in %dms", updated, (time.monotonic() - start) * 1000)
        return updated

    def update_profiles_segment(self, condition: Condition, segment_id: str, is_add: bool) -> int:
        """
        Add or remove segment_id on every profile matching condition.

        Returns:
            Number of profiles processed
        """
        updated = 0
        page = self._persistence.query(
            condition,
            None,
            PROFILE,
            0,
            self._settings.segment_update_batch_size,
            self._settings.scroll_time_validity,
        )

        while page is not None and len(page) > 0:
            start = time.monotonic()
            if self._settings.batch_segment_profile_update:
                self.batch_update_profiles_segment(segment_id, page.items, is_add)
            else:
                for profile in page.items:
                    fields = self.build_segment_update_fields(profile, segment_id, is_add)
                    if not self._persistence.update(profile, PROFILE, fields):
                        logger.warning(
                            "Failed to update segment %s for profile %s",
                            segment_id,
                            profile.item_id,
                            extra={"item_type": SEGMENT, "item_id": segment_id, "profile_id": profile.item_id},
                        )

            if self._settings.send_profile_update_event_for_segment_update:
                self.send_profile_updated_events(page.items)

            updated += len(page)
            logger.info(
                "%d profiles %s segment %s in %dms",
                len(page),
                "added to" if is_add else "removed from",
                segment_id,
                (time.monotonic() - start) * 1000,
            )

            if page.scroll_identifier is None:
                break
            page = self._persistence.continue_scroll_query(
                PROFILE, page.scroll_identifier, page.scroll_time_validity
            )

        return updated

    def batch_update_profiles_segment(self, segment_id: str, profiles: list[Profile], is_add: bool) -> list[str]:
        """
        Update a page of profiles in one request, retrying the failures.

        Returns:
            Ids of the profiles still not updated after their retries
        """
        items = {
            profile.item_id: self.build_segment_update_fields(profile, segment_id, is_add)
            for profile in profiles
        }
        failed_ids = self._persistence.update_items(items, PROFILE) or []

        return [
            profile_id
            for profile_id in failed_ids
            if not self.retry_failed_segment_update(profile_id, segment_id, is_add)
        ]

    def retry_failed_segment_update(self, profile_id: str, segment_id: str, is_add: bool) -> bool:
        """
        Reload one profile and re-apply a membership change.

        Returns:
            True once an attempt succeeded, False when retry is disabled or
            every attempt failed
        """
        max_retries = self._settings.max_retries_for_update_profile_segment
        context = {"item_type": SEGMENT, "item_id": segment_id, "profile_id": profile_id}
        if not is_retry_enabled(max_retries):
            logger.warning("Failed to update segment %s for profile %s", segment_id, profile_id, extra=context)
            return False

        @profile_update_retry(max_retries, self._settings.seconds_delay_for_retry_update_profile_segment)
        def attempt() -> None:
            logger.warning("Retry updating profile segment %s, profile %s", segment_id, profile_id, extra=context)
            profile = self._persistence.load(profile_id, PROFILE)
            if profile is None:
                raise ProfileNotFoundError(profile_id)
            fields = self.build_segment_update_fields(profile, segment_id, is_add)
            if not self._persistence.update(profile, PROFILE, fields):
                raise ProfileUpdateError(
                    profile_id,
                    f"Failed retry update profile segment {segment_id}, profile {profile_id}",
                )

        try:
            attempt()
        except (ProfileUpdateError, ProfileNotFoundError) as e:
            logger.error("Giving up on segment %s for profile %s: %s", segment_id, profile_id, e, extra=context)
            return False
        return True

    def send_profile_updated_events(self, profiles: Iterable[Profile]) -> None:
        """Send one non-persistent profileUpdated event per profile."""
        for profile in profiles:
            event = Event(
                event_type=PROFILE_UPDATED_EVENT,
                profile=profile,
                target=profile,
                persistent=False,
            )
            try:
                self._events.send(event)
            except Exception:
                logger.warning("Failed to send %s event for profile %s", PROFILE_UPDATED_EVENT, profile.item_id, exc_info=True)

    # =========================================================================
    # Scores
    # =========================================================================

    def update_existing_profiles_for_scoring(self, scoring: Scoring) -> None:
        """
        Recompute the stored score of one scoring on every profile.

        Existing scores are reset to the profile's score modifier (or
        removed), then each element adds its value to the profiles it
        matches. A disabled scoring only gets the reset.
        """
        start = time.monotonic()
        scoring_id = scoring.item_id

        updates = [
            ScriptedUpdate(
                script=RESET_SCORE_SCRIPT,
                params={"scoringId": scoring_id},
                condition=score_exists_condition(scoring_id),
            )
        ]
        if scoring.metadata.enabled:
            for element in scoring.elements:
                updates.append(
                    ScriptedUpdate(
                        script=ADD_SCORE_SCRIPT,
                        params={"scoringId": scoring_id, "scoringValue": element.value},
                        condition=element.condition,
                    )
                )

        self._persistence.update_with_query_and_script(PROFILE, updates)
        logger.info("Updated scoring for profiles in %dms", (time.monotonic() - start) * 1000)

    def update_existing_profiles_for_removed_scoring(self, scoring_id: str) -> None:
        """Drop the score of a removed scoring from every profile."""
        start = time.monotonic()
        self._persistence.update_with_query_and_script(
            PROFILE,
            [
                ScriptedUpdate(
                    script=REMOVE_SCORE_SCRIPT,
                    params={"scoringId": scoring_id},
                    condition=score_exists_condition(scoring_id),
                )
            ],
        )
        logger.info("Removed scoring from profiles in %dms", (time.monotonic() - start) * 1000)

    # =========================================================================
    # Past Events
    # =========================================================================

    def update_profiles_with_past_event_property(self, event_count_by_profile: dict[str, int], property_key: str) -> int:
        """
        Store past event counts under systemProperties.pastEvents[property_key].

        Counts are written in batches; a failing batch is logged and skipped.
        Aggregation meta keys (starting with '_') are ignored.

        Returns:
            Number of profiles updated
        """
        entries = [
            (profile_id, count)
            for profile_id, count in event_count_by_profile.items()
            if not profile_id.startswith("_")
        ]
        batch_size = self._settings.segment_update_batch_size
        updated = 0

        for offset in range(0, len(entries), batch_size):
            batch = {
                profile_id: {
                    "systemProperties": {
                        "pastEvents": {property_key: count},
                        "lastUpdated": _now(),
                    }
                }
                for profile_id, count in entries[offset : offset + batch_size]
            }
            try:
                failed_ids = self._persistence.update_items(batch, PROFILE) or []
            except Exception:
                logger.error(
                    "Error updating %d profiles for past event system properties",
                    len(batch),
                    extra={"item_type": RULE, "item_id": property_key},
                    exc_info=True,
                )
                continue
            if failed_ids:
                logger.warning(
                    "%d profiles not updated for past event %s",
                    len(failed_ids),
                    property_key,
                    extra={"item_type": RULE, "item_id": property_key, "failed": failed_ids},
                )
            updated += len(batch) - len(failed_ids)

        return updated
