"""
Segment and Scoring Service.

Public entry point of the engine. Wires the definition cache, the bulk
profile update pipeline, the rule deriver and the dependency analyzer
together and exposes:
- Definition CRUD with validation, rule derivation and profile resync
- Impact-checked removal
- Classification of a single profile against the cached definitions
- Matching profile listing and counting
- The maintenance passes driven by the scheduler
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .cache import DefinitionCache, DefinitionSnapshot
from .conditions import (
    DATE_EXPR_MARKER,
    contains_text,
    property_condition,
    resolve_condition_types,
    segment_membership_condition,
)
from .core.config import SegmentationSettings, get_settings
from .core.errors import BadScoringConditionError, BadSegmentConditionError, MaintenanceError
from .core.logging import get_logger, with_context
from .dependencies import DefinitionKind, DependencyAnalyzer
from .loader import load_definitions
from .models import (
    PROFILE,
    SCORING,
    SEGMENT,
    Condition,
    DependentMetadata,
    Metadata,
    PartialList,
    Profile,
    Scoring,
    Segment,
    SegmentsAndScores,
)
from .pipeline import ProfileUpdatePipeline
from .rules import RuleDeriver, generated_property_key

if TYPE_CHECKING:
    from .interfaces import DefinitionsService, EventService, PersistenceService, RulesService

logger = get_logger(__name__)

# Sample profile conditions are validated against before a save
VALIDATION_PROFILE_ID = "validation-profile-id"


class SegmentService:
    """
    Segment and scoring management.

    Usage:
        service = SegmentService(persistence, definitions, rules, events)
        service.refresh_definitions()
        service.set_segment_definition(segment)
        result = service.classify(profile)
    """

    def __init__(
        self,
        persistence: PersistenceService,
        definitions: DefinitionsService,
        rules: RulesService,
        events: EventService,
        settings: SegmentationSettings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._persistence = persistence
        self._definitions = definitions

        self.cache = DefinitionCache(persistence, definitions)
        self.pipeline = ProfileUpdatePipeline(persistence, events, self._settings)
        self.deriver = RuleDeriver(persistence, definitions, rules, self.pipeline, self._settings)
        self.analyzer = DependencyAnalyzer(
            self.cache,
            self.pipeline,
            self.deriver,
            persistence,
            save_segment=self.set_segment_definition,
            save_scoring=self.set_scoring_definition,
        )

    @property
    def settings(self) -> SegmentationSettings:
        return self._settings

    @property
    def snapshot(self) -> DefinitionSnapshot:
        """Current definition cache snapshot."""
        return self.cache.snapshot

    # =========================================================================
    # Segments
    # =========================================================================

    def get_segment_metadatas(
        self,
        offset: int = 0,
        size: int = 50,
        sort_by: str | None = None,
        scope: str | None = None,
    ) -> PartialList[Metadata]:
        """Page through segment metadata, optionally restricted to one scope."""
        return self._query_metadatas(SEGMENT, offset, size, sort_by, scope)

    def get_segment_definition(self, segment_id: str) -> Segment | None:
        """Load a segment from the store, resolving its condition types."""
        segment = self._persistence.load(segment_id, SEGMENT)
        if segment is not None and segment.metadata.enabled:
            resolve_condition_types(self._definitions, segment.condition, f"segment {segment_id}")
        return segment

    def set_segment_definition(self, segment: Segment) -> None:
        """
        Validate, save and apply a segment.

        Enabled segments must have a condition whose types resolve and which
        the store accepts; their auto-generated rules are updated unless
        plugins are missing. A disabled segment gives up its rules. The
        segment is then saved and the membership of every profile resynced.

        Raises:
            BadSegmentConditionError: Nothing was saved
        """
        metadata = segment.metadata
        if metadata.enabled:
            if segment.condition is None:
                raise BadSegmentConditionError(segment.item_id, "missing condition")
            if not resolve_condition_types(self._definitions, segment.condition, f"segment {segment.item_id}"):
                raise BadSegmentConditionError(segment.item_id, "unresolved condition type")
            if not self._persistence.is_valid_condition(segment.condition, Profile(VALIDATION_PROFILE_ID)):
                raise BadSegmentConditionError(segment.item_id)
            if not metadata.missing_plugins:
                self.deriver.update_auto_generated_rules(metadata, [segment.condition])
        else:
            self.deriver.retire_rules(segment.item_id)

        self._persistence.save(segment)
        self.pipeline.update_existing_profiles_for_segment(segment)

    def remove_segment_definition(self, segment_id: str, validate: bool = True) -> DependentMetadata:
        """
        Remove a segment unless validate is set and other definitions use it.

        Returns:
            Definitions referencing the segment before the call
        """
        return self.analyzer.remove_definition(DefinitionKind.SEGMENT, segment_id, validate)

    def get_segment_dependent_metadata(self, segment_id: str) -> DependentMetadata:
        return self.analyzer.get_dependent_metadata(DefinitionKind.SEGMENT, segment_id)

    def get_matching_individuals(
        self,
        segment_id: str,
        offset: int = 0,
        size: int = 50,
        sort_by: str | None = None,
    ) -> PartialList[Profile]:
        """Profiles whose stored membership holds segment_id (empty for unknown ids)."""
        if self._persistence.load(segment_id, SEGMENT) is None:
            return PartialList(offset=offset, page_size=size)
        return self._persistence.query(segment_membership_condition(segment_id), sort_by, PROFILE, offset, size)

    def get_matching_individuals_count(self, segment_id: str) -> int:
        if self._persistence.load(segment_id, SEGMENT) is None:
            return 0
        return self._persistence.query_count(segment_membership_condition(segment_id), PROFILE)

    def is_profile_in_segment(self, profile: Profile, segment_id: str) -> bool:
        return segment_id in self.classify(profile).segments

    def get_segment_metadatas_for_profile(self, profile: Profile) -> list[Metadata]:
        """Metadata of the enabled segments a profile matches."""
        snapshot = self.cache.snapshot
        return [
            segment.metadata
            for segment in snapshot.enabled_segments
            if segment.condition is not None and self._persistence.test_match(segment.condition, profile)
        ]

    # =========================================================================
    # Scorings
    # =========================================================================

    def get_scoring_metadatas(
        self,
        offset: int = 0,
        size: int = 50,
        sort_by: str | None = None,
        scope: str | None = None,
    ) -> PartialList[Metadata]:
        """Page through scoring metadata, optionally restricted to one scope."""
        return self._query_metadatas(SCORING, offset, size, sort_by, scope)

    def get_scoring_definition(self, scoring_id: str) -> Scoring | None:
        scoring = self._persistence.load(scoring_id, SCORING)
        if scoring is not None and scoring.metadata.enabled:
            for element in scoring.elements:
                resolve_condition_types(self._definitions, element.condition, f"scoring {scoring_id}")
        return scoring

    def set_scoring_definition(self, scoring: Scoring) -> None:
        """
        Validate, save and apply a scoring.

        Declares the profile score field, then recomputes the score of every
        profile.

        Raises:
            BadScoringConditionError: Nothing was saved
        """
        metadata = scoring.metadata
        if metadata.enabled:
            for element in scoring.elements:
                if not resolve_condition_types(self._definitions, element.condition, f"scoring {scoring.item_id}"):
                    raise BadScoringConditionError(scoring.item_id, "unresolved condition type")
                if not self._persistence.is_valid_condition(element.condition, Profile(VALIDATION_PROFILE_ID)):
                    raise BadScoringConditionError(scoring.item_id)
            if not metadata.missing_plugins:
                self.deriver.update_auto_generated_rules(metadata, [e.condition for e in scoring.elements])
        else:
            self.deriver.retire_rules(scoring.item_id)

        self._persistence.save(scoring)
        self._persistence.create_mapping(
            PROFILE,
            {"properties": {"scores": {"properties": {scoring.item_id: {"type": "long"}}}}},
        )
        self.pipeline.update_existing_profiles_for_scoring(scoring)

    def create_scoring_definition(self, scope: str, scoring_id: str, name: str, description: str = "") -> Scoring:
        """Create and save a scoring with no elements."""
        scoring = Scoring(metadata=Metadata(id=scoring_id, name=name, description=description, scope=scope))
        self.set_scoring_definition(scoring)
        return scoring

    def remove_scoring_definition(self, scoring_id: str, validate: bool = True) -> DependentMetadata:
        """
        Remove a scoring unless validate is set and other definitions use it.

        Returns:
            Definitions referencing the scoring before the call
        """
        return self.analyzer.remove_definition(DefinitionKind.SCORING, scoring_id, validate)

    def get_scoring_dependent_metadata(self, scoring_id: str) -> DependentMetadata:
        return self.analyzer.get_dependent_metadata(DefinitionKind.SCORING, scoring_id)

    # =========================================================================
    # Classification
    # =========================================================================

    def classify(self, profile: Profile) -> SegmentsAndScores:
        """
        Evaluate a profile against the cached enabled definitions.

        A score is the sum of the matching element values plus the profile's
        score modifier for that scoring; only positive scores are reported.
        """
        snapshot = self.cache.snapshot
        segments = {
            segment.item_id
            for segment in snapshot.enabled_segments
            if segment.condition is not None and self._persistence.test_match(segment.condition, profile)
        }
        return SegmentsAndScores(segments=segments, scores=self._score(snapshot, profile))

    def score(self, profile: Profile) -> dict[str, int]:
        """Scores of a profile for the cached enabled scorings."""
        return self._score(self.cache.snapshot, profile)

    def _score(self, snapshot: DefinitionSnapshot, profile: Profile) -> dict[str, int]:
        scores: dict[str, int] = {}
        modifiers = profile.score_modifiers
        for scoring in snapshot.enabled_scorings:
            score = sum(
                element.value
                for element in scoring.elements
                if self._persistence.test_match(element.condition, profile)
            )
            modifier = modifiers.get(scoring.item_id)
            if modifier is not None:
                score += int(modifier)
            if score > 0:
                scores[scoring.item_id] = score
        return scores

    def get_generated_property_key(self, condition: Condition, parent: Condition) -> str | None:
        """pastEvents key for an event trigger and its window node."""
        return generated_property_key(condition, parent)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def refresh_definitions(self) -> DefinitionSnapshot:
        return self.cache.refresh()

    def recalculate_past_event_conditions(self) -> int:
        return self.deriver.recalculate_past_event_conditions()

    def recalculate_date_expr_segments(self) -> int:
        """
        Resync membership of enabled segments using relative date expressions.

        Returns:
            Number of segments resynced

        Raises:
            MaintenanceError: If at least one segment failed
        """
        log = with_context(logger, task="date-expr-recompute", item_type=SEGMENT)
        log.info("Recalculating segments with date expression conditions")
        start = time.monotonic()
        recalculated = 0
        failed: list[str] = []

        for segment in self.cache.snapshot.enabled_segments:
            if not contains_text(segment.condition, DATE_EXPR_MARKER):
                continue
            try:
                self.pipeline.update_existing_profiles_for_segment(segment)
                recalculated += 1
            except Exception:
                log.error(
                    "Error while recalculating segment %s",
                    segment.item_id,
                    extra={"item_id": segment.item_id},
                    exc_info=True,
                )
                failed.append(segment.item_id)

        log.info(
            "%d segments with date expression recalculated in %dms",
            recalculated,
            (time.monotonic() - start) * 1000,
        )
        if failed:
            raise MaintenanceError("date-expr-recompute", failed)
        return recalculated

    def load_predefined_definitions(self, directory: Path | None = None) -> int:
        """
        Save the segments and scorings found in a definitions directory.

        Defaults to settings.predefined_definitions_dir. A definition that
        fails to save is logged and skipped.

        Returns:
            Number of definitions saved
        """
        directory = directory or self._settings.predefined_definitions_dir
        if directory is None:
            return 0

        loaded = load_definitions(directory)
        saved = 0
        for segment in loaded.segments:
            try:
                self.set_segment_definition(segment)
                saved += 1
            except Exception:
                logger.error(
                    "Error while saving predefined segment %s",
                    segment.item_id,
                    extra={"item_type": SEGMENT, "item_id": segment.item_id},
                    exc_info=True,
                )
        for scoring in loaded.scorings:
            try:
                self.set_scoring_definition(scoring)
                saved += 1
            except Exception:
                logger.error(
                    "Error while saving predefined scoring %s",
                    scoring.item_id,
                    extra={"item_type": SCORING, "item_id": scoring.item_id},
                    exc_info=True,
                )

        logger.info("Saved %d predefined definitions from %s", saved, directory)
        return saved

    # =========================================================================
    # Helpers
    # =========================================================================

    def _query_metadatas(
        self,
        item_type: str,
        offset: int,
        size: int,
        sort_by: str | None,
        scope: str | None,
    ) -> PartialList[Metadata]:
        condition = property_condition("metadata.scope", "equals", scope) if scope else None
        page: PartialList[Any] = self._persistence.query(condition, sort_by, item_type, offset, size)
        return PartialList(
            items=[item.metadata for item in page.items],
            offset=page.offset,
            page_size=page.page_size,
            total_size=page.total_size,
        )
