"""
Definition Cache.

Read-mostly snapshot of every stored segment and scoring, refreshed on a
fixed interval by the maintenance scheduler.

Readers take `cache.snapshot` once and work on it; refresh builds a whole
new snapshot before publishing it with a single attribute assignment, so a
reader sees either the old or the new snapshot in full and never waits.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .conditions import resolve_condition_types
from .core.logging import get_logger
from .models import SCORING, SEGMENT, Scoring, Segment

if TYPE_CHECKING:
    from .interfaces import DefinitionsService, PersistenceService

logger = get_logger(__name__)


@dataclass(frozen=True)
class DefinitionSnapshot:
    """Immutable view of all segments and scorings at one point in time."""

    segments: tuple[Segment, ...] = ()
    scorings: tuple[Scoring, ...] = ()
    loaded_at: datetime | None = field(default=None, compare=False)

    @property
    def enabled_segments(self) -> list[Segment]:
        return [s for s in self.segments if s.metadata.enabled]

    @property
    def enabled_scorings(self) -> list[Scoring]:
        return [s for s in self.scorings if s.metadata.enabled]

    def get_segment(self, segment_id: str) -> Segment | None:
        for segment in self.segments:
            if segment.item_id == segment_id:
                return segment
        return None

    def get_scoring(self, scoring_id: str) -> Scoring | None:
        for scoring in self.scorings:
            if scoring.item_id == scoring_id:
                return scoring
        return None


class DefinitionCache:
    """
    Periodically reloaded segment and scoring definitions.

    Usage:
        cache = DefinitionCache(persistence, definitions)
        cache.refresh()
        for segment in cache.snapshot.enabled_segments:
            ...
    """

    def __init__(self, persistence: PersistenceService, definitions: DefinitionsService) -> None:
        self._persistence = persistence
        self._definitions = definitions
        self._snapshot = DefinitionSnapshot()
        self._refresh_lock = threading.Lock()
        self._refresh_count = 0

    @property
    def snapshot(self) -> DefinitionSnapshot:
        """Current snapshot."""
        return self._snapshot

    @property
    def segments(self) -> tuple[Segment, ...]:
        return self._snapshot.segments

    @property
    def scorings(self) -> tuple[Scoring, ...]:
        return self._snapshot.scorings

    @property
    def refresh_count(self) -> int:
        """Number of snapshots published since creation."""
        return self._refresh_count

    def load_snapshot(self) -> DefinitionSnapshot:
        """
        Build a new snapshot from the store without publishing it.

        Enabled definitions get their condition types resolved; definitions
        with unresolvable types are logged and kept as they are.
        """
        segments: list[Segment] = []
        for segment in self._persistence.get_all_items(SEGMENT):
            if segment.metadata.enabled and not resolve_condition_types(
                self._definitions, segment.condition, f"segment {segment.item_id}"
            ):
                logger.warning(
                    "Segment %s has unresolved condition types",
                    segment.item_id,
                    extra={"item_type": SEGMENT, "item_id": segment.item_id},
                )
            segments.append(segment)

        scorings: list[Scoring] = []
        for scoring in self._persistence.get_all_items(SCORING):
            if scoring.metadata.enabled:
                for element in scoring.elements:
                    if not resolve_condition_types(
                        self._definitions, element.condition, f"scoring {scoring.item_id}"
                    ):
                        logger.warning(
                            "Scoring %s has unresolved condition types",
                            scoring.item_id,
                            extra={"item_type": SCORING, "item_id": scoring.item_id},
                        )
            scorings.append(scoring)

        return DefinitionSnapshot(
            segments=tuple(segments),
            scorings=tuple(scorings),
            loaded_at=datetime.now(timezone.utc),
        )

    def refresh(self) -> DefinitionSnapshot:
        """
        Reload all definitions and publish the new snapshot.

        Concurrent refreshes are serialized; readers are never blocked.

        Returns:
            The published snapshot
        """
        with self._refresh_lock:
            start = time.monotonic()
            snapshot = self.load_snapshot()
            self._snapshot = snapshot
            self._refresh_count += 1

        logger.debug(
            "Loaded %d segments and %d scorings in %dms",
            len(snapshot.segments),
            len(snapshot.scorings),
            (time.monotonic() - start) * 1000,
        )
        return snapshot
