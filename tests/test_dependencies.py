"""
Tests for dependency impact analysis.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from segmentation.conditions import boolean_condition
from segmentation.dependencies import (
    DefinitionKind,
    DependencyAnalyzer,
    find_dependents,
    to_dependent_metadata,
    without_reference,
)
from segmentation.models import SCORING, SEGMENT, Condition, Segment
from tests.conftest import age_over, in_segments, make_scoring, make_segment


def scoring_ref(scoring_id: str) -> Condition:
    return Condition("scoringCondition", {"scoringPlanId": scoring_id, "threshold": 10})


@pytest.fixture
def segments() -> list[Segment]:
    return [
        make_segment("a", age_over(30)),
        make_segment("b", in_segments("a", "c")),
        make_segment("d", in_segments("a")),
        make_segment("e", boolean_condition("and", [age_over(1), boolean_condition("or", [in_segments("a")])])),
        make_segment("unrelated", in_segments("c")),
    ]


class TestFindDependents:
    """Tests for find_dependents."""

    def test_segments_referencing_id(self, segments):
        found, _ = find_dependents(DefinitionKind.SEGMENT, "a", segments, [])
        assert [s.item_id for s in found] == ["b", "d", "e"]

    def test_scoring_with_one_matching_element(self):
        scoring = make_scoring("s", [(age_over(1), 1), (in_segments("a"), 2)])
        other = make_scoring("t", [(age_over(1), 1)])

        _, found = find_dependents(DefinitionKind.SEGMENT, "a", [], [scoring, other])

        assert [s.item_id for s in found] == ["s"]

    def test_scoring_references(self):
        segment = make_segment("high", scoring_ref("engagement"))
        scoring = make_scoring("combined", [(scoring_ref("engagement"), 1)])

        found_segments, found_scorings = find_dependents(
            DefinitionKind.SCORING, "engagement", [segment], [scoring]
        )

        assert found_segments == [segment]
        assert found_scorings == [scoring]

    def test_no_dependents(self, segments):
        assert find_dependents(DefinitionKind.SEGMENT, "zzz", segments, []) == ([], [])

    def test_dependent_metadata_is_detached(self, segments):
        summary = to_dependent_metadata(segments[:1], [])
        summary.segments[0].name = "changed"
        assert segments[0].metadata.name == "A"


class TestWithoutReference:
    """Tests for without_reference."""

    def test_segment_keeps_other_ids(self, segments):
        updated = without_reference(segments[1], DefinitionKind.SEGMENT, "a")

        assert updated.condition == in_segments("c")
        assert updated.metadata.enabled is True
        assert segments[1].condition == in_segments("a", "c")

    def test_segment_emptied_is_disabled(self, segments):
        updated = without_reference(segments[2], DefinitionKind.SEGMENT, "a")

        assert updated.condition is None
        assert updated.metadata.enabled is False
        assert segments[2].metadata.enabled is True

    def test_nested_combinator_collapses(self, segments):
        updated = without_reference(segments[3], DefinitionKind.SEGMENT, "a")
        assert updated.condition == age_over(1)

    def test_scoring_drops_emptied_elements(self):
        scoring = make_scoring("s", [(age_over(1), 1), (in_segments("a"), 2)])

        updated = without_reference(scoring, DefinitionKind.SEGMENT, "a")

        assert [(e.condition, e.value) for e in updated.elements] == [(age_over(1), 1)]
        assert updated.metadata.enabled is True

    def test_scoring_without_elements_is_disabled(self):
        scoring = make_scoring("s", [(in_segments("a"), 2)])
        updated = without_reference(scoring, DefinitionKind.SEGMENT, "a")

        assert updated.elements == []
        assert updated.metadata.enabled is False


class TestDependencyAnalyzer:
    """Tests for DependencyAnalyzer."""

    @pytest.fixture
    def collaborators(self, segments):
        cache = SimpleNamespace(snapshot=SimpleNamespace(segments=tuple(segments), scorings=()))
        return SimpleNamespace(
            cache=cache,
            pipeline=MagicMock(),
            deriver=MagicMock(),
            persistence=MagicMock(),
            save_segment=MagicMock(),
            save_scoring=MagicMock(),
        )

    @pytest.fixture
    def analyzer(self, collaborators) -> DependencyAnalyzer:
        c = collaborators
        return DependencyAnalyzer(c.cache, c.pipeline, c.deriver, c.persistence, c.save_segment, c.save_scoring)

    def test_validate_with_dependents_changes_nothing(self, analyzer, collaborators):
        summary = analyzer.remove_definition(DefinitionKind.SEGMENT, "a", validate=True)

        assert [m.id for m in summary.segments] == ["b", "d", "e"]
        collaborators.pipeline.update_profiles_segment.assert_not_called()
        collaborators.persistence.remove.assert_not_called()
        collaborators.save_segment.assert_not_called()

    def test_validate_without_dependents_removes(self, analyzer, collaborators):
        summary = analyzer.remove_definition(DefinitionKind.SEGMENT, "unrelated", validate=True)

        assert summary.is_empty
        collaborators.persistence.remove.assert_called_once_with("unrelated", SEGMENT)
        collaborators.deriver.retire_rules.assert_called_once_with("unrelated")

    def test_forced_removal_rewrites_dependents(self, analyzer, collaborators):
        analyzer.remove_definition(DefinitionKind.SEGMENT, "a", validate=False)

        saved = {call.args[0].item_id: call.args[0] for call in collaborators.save_segment.call_args_list}
        assert saved["b"].condition == in_segments("c")
        assert saved["b"].metadata.enabled is True
        assert saved["d"].condition is None
        assert saved["d"].metadata.enabled is False
        assert saved["e"].condition == age_over(1)

    def test_forced_removal_strips_members_then_deletes(self, analyzer, collaborators):
        analyzer.remove_definition(DefinitionKind.SEGMENT, "a", validate=False)

        condition, segment_id = collaborators.pipeline.update_profiles_segment.call_args.args
        assert condition.get("propertyName") == "segments"
        assert condition.get("propertyValue") == "a"
        assert segment_id == "a"
        assert collaborators.pipeline.update_profiles_segment.call_args.kwargs == {"is_add": False}
        collaborators.persistence.remove.assert_called_once_with("a", SEGMENT)

    def test_emptied_dependent_rules_retired(self, analyzer, collaborators):
        analyzer.remove_definition(DefinitionKind.SEGMENT, "a", validate=False)

        retired = [call.args[0] for call in collaborators.deriver.retire_rules.call_args_list]
        assert retired == ["d", "a"]

    def test_scoring_removal_uses_score_script(self, collaborators):
        scoring = make_scoring("combined", [(scoring_ref("engagement"), 1), (age_over(1), 2)])
        collaborators.cache.snapshot = SimpleNamespace(segments=(), scorings=(scoring,))
        c = collaborators
        analyzer = DependencyAnalyzer(c.cache, c.pipeline, c.deriver, c.persistence, c.save_segment, c.save_scoring)

        summary = analyzer.remove_definition(DefinitionKind.SCORING, "engagement", validate=False)

        assert [m.id for m in summary.scorings] == ["combined"]
        c.pipeline.update_existing_profiles_for_removed_scoring.assert_called_once_with("engagement")
        saved = c.save_scoring.call_args.args[0]
        assert [e.value for e in saved.elements] == [2]
        c.persistence.remove.assert_called_once_with("engagement", SCORING)

    def test_summary_reflects_state_before_removal(self, analyzer):
        summary = analyzer.remove_definition(DefinitionKind.SEGMENT, "a", validate=False)
        d = next(m for m in summary.segments if m.id == "d")
        assert d.enabled is True
