"""
Dependency Impact Analysis.

Finds the segments and scorings that reference a given segment or scoring
id, and rewrites them when that definition is removed:
- A dependent whose condition still has something left after the reference
  is dropped is re-saved with the rewritten condition
- A dependent left with nothing is disabled and its auto-generated rules
  are retired

Impact analysis reads the definition cache, so it can lag the store by up
to one refresh interval.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterable
from enum import Enum
from typing import TYPE_CHECKING, Union

from .conditions import (
    SCORING_REFERENCE,
    SEGMENT_REFERENCE,
    ReferenceKind,
    contains_reference,
    rewrite_removing_reference,
    segment_membership_condition,
)
from .core.logging import get_logger
from .models import SCORING, SEGMENT, DependentMetadata, Scoring, ScoringElement, Segment

if TYPE_CHECKING:
    from .cache import DefinitionCache
    from .interfaces import PersistenceService
    from .pipeline import ProfileUpdatePipeline
    from .rules import RuleDeriver

logger = get_logger(__name__)

Definition = Union[Segment, Scoring]


class DefinitionKind(str, Enum):
    """Kind of definition that can be referenced by other definitions."""

    SEGMENT = "segment"
    SCORING = "scoring"

    @property
    def reference(self) -> ReferenceKind:
        """Leaf condition type referencing this kind."""
        if self is DefinitionKind.SEGMENT:
            return SEGMENT_REFERENCE
        return SCORING_REFERENCE

    @property
    def item_type(self) -> str:
        """Store item type of this kind."""
        if self is DefinitionKind.SEGMENT:
            return SEGMENT
        return SCORING


# =============================================================================
# Pure Analysis
# =============================================================================


def find_dependents(
    kind: DefinitionKind,
    target_id: str,
    segments: Iterable[Segment],
    scorings: Iterable[Scoring],
) -> tuple[list[Segment], list[Scoring]]:
    """
    Find definitions with at least one reachable leaf referencing target_id.

    A scoring is a dependent as soon as one of its elements references the id.

    Returns:
        (dependent segments, dependent scorings)
    """
    reference = kind.reference

    dependent_segments = [
        segment
        for segment in segments
        if contains_reference(segment.condition, reference, target_id)
    ]
    dependent_scorings = [
        scoring
        for scoring in scorings
        if any(contains_reference(e.condition, reference, target_id) for e in scoring.elements)
    ]
    return dependent_segments, dependent_scorings


def to_dependent_metadata(segments: Iterable[Segment], scorings: Iterable[Scoring]) -> DependentMetadata:
    """Summarize dependents, detached from the cached definitions."""
    return DependentMetadata(
        segments=[copy.deepcopy(s.metadata) for s in segments],
        scorings=[copy.deepcopy(s.metadata) for s in scorings],
    )


def without_reference(definition: Definition, kind: DefinitionKind, target_id: str) -> Definition:
    """
    Return a copy of definition that no longer references target_id.

    The copy is disabled when no condition survives the rewrite.
    """
    updated = copy.deepcopy(definition)
    reference = kind.reference

    if isinstance(updated, Segment):
        updated.condition = rewrite_removing_reference(updated.condition, reference, target_id)
        if updated.condition is None:
            updated.metadata.enabled = False
        return updated

    elements: list[ScoringElement] = []
    for element in updated.elements:
        condition = rewrite_removing_reference(element.condition, reference, target_id)
        if condition is not None:
            elements.append(ScoringElement(condition=condition, value=element.value))
    updated.elements = elements
    if not elements:
        updated.metadata.enabled = False
    return updated


# =============================================================================
# Analyzer
# =============================================================================


class DependencyAnalyzer:
    """
    Impact-checked removal of segments and scorings.

    Usage:
        analyzer = DependencyAnalyzer(cache, pipeline, deriver, persistence,
                                      save_segment=service.set_segment_definition,
                                      save_scoring=service.set_scoring_definition)
        summary = analyzer.remove_definition(DefinitionKind.SEGMENT, "vip", validate=True)
    """

    def __init__(
        self,
        cache: DefinitionCache,
        pipeline: ProfileUpdatePipeline,
        deriver: RuleDeriver,
        persistence: PersistenceService,
        save_segment: Callable[[Segment], None],
        save_scoring: Callable[[Scoring], None],
    ) -> None:
        self._cache = cache
        self._pipeline = pipeline
        self._deriver = deriver
        self._persistence = persistence
        self._save_segment = save_segment
        self._save_scoring = save_scoring

    def get_dependents(self, kind: DefinitionKind, target_id: str) -> tuple[list[Segment], list[Scoring]]:
        """Dependents of target_id in the current cache snapshot."""
        snapshot = self._cache.snapshot
        return find_dependents(kind, target_id, snapshot.segments, snapshot.scorings)

    def get_dependent_metadata(self, kind: DefinitionKind, target_id: str) -> DependentMetadata:
        segments, scorings = self.get_dependents(kind, target_id)
        return to_dependent_metadata(segments, scorings)

    def remove_dependency(self, definition: Definition, kind: DefinitionKind, target_id: str) -> Definition:
        """
        Rewrite one dependent and save it.

        Returns:
            The saved copy
        """
        updated = without_reference(definition, kind, target_id)

        if isinstance(updated, Segment):
            emptied = updated.condition is None
        else:
            emptied = not updated.elements

        if emptied:
            logger.info(
                "Disabling %s since its condition only referenced %s",
                updated.item_id,
                target_id,
            )
            self._deriver.retire_rules(updated.item_id)

        if isinstance(updated, Segment):
            self._save_segment(updated)
        else:
            self._save_scoring(updated)
        return updated

    def remove_definition(self, kind: DefinitionKind, target_id: str, validate: bool) -> DependentMetadata:
        """
        Remove a segment or scoring, fixing up everything that references it.

        With validate=True and at least one dependent, nothing is changed and
        the dependents are only reported.

        Args:
            kind: Kind of the definition to remove
            target_id: Id of the definition
            validate: Refuse to remove a definition that has dependents

        Returns:
            Dependents as they were before the removal
        """
        segments, scorings = self.get_dependents(kind, target_id)
        summary = to_dependent_metadata(segments, scorings)

        if validate and not summary.is_empty:
            logger.info(
                "Not removing %s %s: %d dependent segment(s), %d dependent scoring(s)",
                kind.value,
                target_id,
                len(summary.segments),
                len(summary.scorings),
            )
            return summary

        if kind is DefinitionKind.SEGMENT:
            self._pipeline.update_profiles_segment(
                segment_membership_condition(target_id), target_id, is_add=False
            )
        else:
            self._pipeline.update_existing_profiles_for_removed_scoring(target_id)

        for segment in segments:
            self.remove_dependency(segment, kind, target_id)
        for scoring in scorings:
            self.remove_dependency(scoring, kind, target_id)

        self._persistence.remove(target_id, kind.item_type)
        self._deriver.retire_rules(target_id)

        logger.info("Removed %s %s", kind.value, target_id)
        return summary
