"""
Segmentation Test Suite - Shared Fixtures

In-memory fakes of the collaborators the engine drives:
- InMemoryPersistence: dict-backed store with a small condition matcher,
  scroll cursors over a snapshot of matching ids, failure injection for
  partial updates and store-side score scripts
- FakeDefinitions: condition/action type registry with system tags
- FakeRules: rule storage
- FakeEvents: records sent events
"""

from __future__ import annotations

import copy
import uuid
from collections import defaultdict
from typing import Any

import pytest

from segmentation.conditions import iter_conditions
from segmentation.core.config import SegmentationSettings, reset_settings
from segmentation.core.logging import reset_logging
from segmentation.models import (
    PROFILE,
    RULE,
    SCORING,
    SEGMENT,
    ActionType,
    Condition,
    ConditionType,
    Event,
    Metadata,
    PartialList,
    Profile,
    Rule,
    Scoring,
    ScoringElement,
    ScriptedUpdate,
    Segment,
    TermsAggregate,
)

# Test-only leaf types
PAST_EVENT_CONDITION = "pastEventCondition"
EVENT_TYPE_CONDITION = "eventTypeCondition"


# =============================================================================
# Persistence
# =============================================================================


def _item_type(item: Any) -> str:
    if isinstance(item, Profile):
        return PROFILE
    if isinstance(item, Segment):
        return SEGMENT
    if isinstance(item, Scoring):
        return SCORING
    if isinstance(item, Rule):
        return RULE
    raise TypeError(f"Unsupported item {item!r}")


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _resolve_path(item: Any, path: str) -> Any:
    """Value at a dotted path of the item's JSON form."""
    value: Any = item.to_dict() if hasattr(item, "to_dict") else item
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class InMemoryPersistence:
    """
    Dict-backed PersistenceService.

    Failure injection:
        failures[id] = n     next n writes of id fail (update and update_items)
        always_fail          ids whose writes always fail
        fail_batches = n     next n update_items calls raise
        invalid_condition_types  type ids is_valid_condition rejects
    """

    def __init__(self) -> None:
        self.items: dict[str, dict[str, Any]] = defaultdict(dict)
        self.event_counts: dict[str, int] = {}

        self.failures: dict[str, int] = {}
        self.always_fail: set[str] = set()
        self.fail_batches = 0
        self.invalid_condition_types: set[str] = set()

        # Recorded calls
        self.update_calls: list[str] = []
        self.batch_calls: list[dict[str, dict[str, Any]]] = []
        self.page_sizes: list[int] = []
        self.scripts: list[ScriptedUpdate] = []
        self.mappings: list[tuple[str, dict[str, Any]]] = []
        self.refreshed: list[str] = []
        self.aggregate_calls: list[tuple[Condition, TermsAggregate, int | None]] = []
        self.metric_calls: list[tuple[Condition, list[str], str]] = []
        self.removed: list[tuple[str, str]] = []

        self._scrolls: dict[str, tuple[str, list[str], int, int]] = {}

    # -- helpers --------------------------------------------------------------

    def add(self, *items: Any) -> None:
        for item in items:
            self.save(item)

    def profile(self, profile_id: str) -> Profile:
        return self.items[PROFILE][profile_id]

    def _should_fail(self, item_id: str) -> bool:
        if item_id in self.always_fail:
            return True
        remaining = self.failures.get(item_id, 0)
        if remaining > 0:
            self.failures[item_id] = remaining - 1
            return True
        return False

    def _apply(self, item: Any, fields: dict[str, Any]) -> None:
        for name, value in fields.items():
            if name == "segments":
                item.segments = set(value)
            elif name == "systemProperties":
                item.system_properties = _deep_merge(item.system_properties, value)
            elif name == "scores":
                item.scores = dict(value)
            else:
                item.properties[name] = value

    # -- matcher --------------------------------------------------------------

    def match(self, condition: Condition, item: Any) -> bool:
        type_id = condition.type_id
        if type_id == "booleanCondition":
            results = [self.match(sub, item) for sub in condition.get("subConditions") or []]
            if condition.get("operator") == "or":
                return any(results)
            return all(results)
        if type_id == "notCondition":
            return not self.match(condition.get("subCondition"), item)
        if type_id == "matchAllCondition":
            return True
        if type_id in ("profilePropertyCondition", "sessionPropertyCondition"):
            return self._match_property(condition, item)
        if type_id == "profileSegmentCondition":
            wanted = set(condition.get("segments") or [])
            return bool(wanted & set(getattr(item, "segments", set())))
        if type_id == "scoringCondition":
            score = getattr(item, "scores", {}).get(condition.get("scoringPlanId"), 0)
            return score >= (condition.get("threshold") or 1)
        if type_id == PAST_EVENT_CONDITION:
            counts = item.past_events if isinstance(item, Profile) else {}
            return counts.get(condition.get("generatedPropertyKey"), 0) >= (condition.get("minimumEventCount") or 1)
        return False

    def _match_property(self, condition: Condition, item: Any) -> bool:
        value = _resolve_path(item, condition.get("propertyName"))
        operator = condition.get("comparisonOperator")
        expected = condition.get("propertyValue", condition.get("propertyValueInteger"))

        if operator == "exists":
            return value is not None
        if operator == "missing":
            return value is None
        if operator == "equals":
            if isinstance(value, list):
                return expected in value
            return value == expected
        if operator == "notEquals":
            return value != expected
        if value is None or expected is None:
            return False
        if operator == "greaterThan":
            return value > expected
        if operator == "greaterThanOrEqualTo":
            return value >= expected
        if operator == "lessThan":
            return value < expected
        if operator == "lessThanOrEqualTo":
            return value <= expected
        return False

    # -- PersistenceService ---------------------------------------------------

    def test_match(self, condition: Condition, item: Any) -> bool:
        return self.match(condition, item)

    def _matching_ids(self, condition: Condition | None, item_type: str, sort_by: str | None) -> list[str]:
        stored = self.items[item_type]
        ids = [
            item_id
            for item_id in sorted(stored)
            if condition is None or self.match(condition, stored[item_id])
        ]
        if sort_by:
            field_name, _, order = sort_by.partition(":")
            ids.sort(key=lambda i: str(_resolve_path(stored[i], field_name) or ""), reverse=order == "desc")
        return ids

    def query(
        self,
        condition: Condition | None,
        sort_by: str | None,
        item_type: str,
        offset: int = 0,
        size: int = -1,
        scroll_time_validity: str | None = None,
    ) -> PartialList:
        ids = self._matching_ids(condition, item_type, sort_by)
        end = None if size < 0 else offset + size
        page_ids = ids[offset:end]
        items = [copy.deepcopy(self.items[item_type][i]) for i in page_ids]

        scroll_id = None
        if scroll_time_validity is not None:
            scroll_id = str(uuid.uuid4())
            self._scrolls[scroll_id] = (item_type, ids, offset + len(page_ids), size)
            if items:
                self.page_sizes.append(len(items))

        return PartialList(
            items=items,
            offset=offset,
            page_size=size,
            total_size=len(ids),
            scroll_identifier=scroll_id,
            scroll_time_validity=scroll_time_validity,
        )

    def continue_scroll_query(
        self,
        item_type: str,
        scroll_identifier: str | None,
        scroll_time_validity: str | None,
    ) -> PartialList | None:
        state = self._scrolls.pop(scroll_identifier, None) if scroll_identifier else None
        if state is None:
            return None
        stored_type, ids, position, size = state
        page_ids = ids[position : position + size]
        items = [
            copy.deepcopy(self.items[stored_type][i]) for i in page_ids if i in self.items[stored_type]
        ]
        if not items:
            return PartialList(total_size=len(ids))

        self.page_sizes.append(len(items))
        next_id = str(uuid.uuid4())
        self._scrolls[next_id] = (stored_type, ids, position + len(page_ids), size)
        return PartialList(
            items=items,
            offset=position,
            page_size=size,
            total_size=len(ids),
            scroll_identifier=next_id,
            scroll_time_validity=scroll_time_validity,
        )

    def query_count(self, condition: Condition, item_type: str) -> int:
        return len(self._matching_ids(condition, item_type, None))

    def load(self, item_id: str, item_type: str) -> Any | None:
        item = self.items[item_type].get(item_id)
        return copy.deepcopy(item) if item is not None else None

    def get_all_items(self, item_type: str) -> list[Any]:
        stored = self.items[item_type]
        return [copy.deepcopy(stored[i]) for i in sorted(stored)]

    def save(self, item: Any) -> bool:
        self.items[_item_type(item)][item.item_id] = copy.deepcopy(item)
        return True

    def remove(self, item_id: str, item_type: str) -> bool:
        self.removed.append((item_id, item_type))
        return self.items[item_type].pop(item_id, None) is not None

    def update(self, item: Any, item_type: str, fields: dict[str, Any]) -> bool:
        self.update_calls.append(item.item_id)
        stored = self.items[item_type].get(item.item_id)
        if stored is None or self._should_fail(item.item_id):
            return False
        self._apply(stored, copy.deepcopy(fields))
        return True

    def update_items(self, items: dict[str, dict[str, Any]], item_type: str) -> list[str]:
        self.batch_calls.append(items)
        if self.fail_batches > 0:
            self.fail_batches -= 1
            raise RuntimeError("bulk request rejected")

        failed: list[str] = []
        for item_id, fields in items.items():
            stored = self.items[item_type].get(item_id)
            if stored is None or self._should_fail(item_id):
                failed.append(item_id)
                continue
            self._apply(stored, copy.deepcopy(fields))
        return failed

    def update_with_query_and_script(self, item_type: str, updates: list[ScriptedUpdate]) -> bool:
        for update in updates:
            self.scripts.append(update)
            scoring_id = update.params["scoringId"]
            for item in self.items[item_type].values():
                if not self.match(update.condition, item):
                    continue
                if update.script == "resetScore":
                    modifier = item.score_modifiers.get(scoring_id)
                    if modifier is not None:
                        item.scores[scoring_id] = modifier
                    else:
                        item.scores.pop(scoring_id, None)
                elif update.script == "addScore":
                    item.scores[scoring_id] = item.scores.get(scoring_id, 0) + update.params["scoringValue"]
                elif update.script == "removeScore":
                    item.scores.pop(scoring_id, None)
                item.system_properties["lastUpdated"] = "now"
        return True

    def aggregate(
        self,
        condition: Condition,
        aggregate: TermsAggregate,
        item_type: str,
        size: int | None = None,
    ) -> dict[str, int]:
        self.aggregate_calls.append((condition, aggregate, size))
        profile_ids = sorted(self.event_counts)
        if aggregate.num_partitions:
            profile_ids = [
                pid for index, pid in enumerate(profile_ids) if index % aggregate.num_partitions == aggregate.partition
            ]
        if size is not None:
            profile_ids = profile_ids[:size]
        counts = {pid: self.event_counts[pid] for pid in profile_ids}
        counts["_filtered"] = sum(counts.values())
        return counts

    def get_single_value_metrics(
        self,
        condition: Condition,
        metrics: list[str],
        field: str,
        item_type: str,
    ) -> dict[str, float]:
        self.metric_calls.append((condition, metrics, field))
        return {"_card": float(len(self.event_counts))}

    def is_valid_condition(self, condition: Condition, item: Any) -> bool:
        return not any(node.type_id in self.invalid_condition_types for node in iter_conditions(condition))

    def create_mapping(self, item_type: str, mapping: dict[str, Any]) -> None:
        self.mappings.append((item_type, mapping))

    def refresh_index(self, item_type: str) -> None:
        self.refreshed.append(item_type)


# =============================================================================
# Registry, Rules, Events
# =============================================================================


DEFAULT_CONDITION_TYPES = {
    "booleanCondition": set(),
    "notCondition": set(),
    "matchAllCondition": set(),
    "profilePropertyCondition": {"profileCondition"},
    "sessionPropertyCondition": {"eventCondition"},
    "profileSegmentCondition": {"profileCondition"},
    "scoringCondition": {"profileCondition"},
    PAST_EVENT_CONDITION: {"profileCondition"},
    EVENT_TYPE_CONDITION: {"eventCondition"},
    "eventPropertyCondition": {"eventCondition"},
    "hybridCondition": {"eventCondition", "profileCondition"},
}


class FakeDefinitions:
    """Condition and action type registry."""

    def __init__(self) -> None:
        self.condition_types = {
            type_id: ConditionType(id=type_id, system_tags=set(tags))
            for type_id, tags in DEFAULT_CONDITION_TYPES.items()
        }
        self.action_types = {"setEventOccurenceCountAction": ActionType(id="setEventOccurenceCountAction")}

    def get_condition_type(self, type_id: str) -> ConditionType | None:
        return self.condition_types.get(type_id)

    def get_action_type(self, type_id: str) -> ActionType | None:
        return self.action_types.get(type_id)


class FakeRules:
    """Rule storage."""

    def __init__(self) -> None:
        self.rules: dict[str, Rule] = {}
        self.removed: list[str] = []

    def get_rule(self, rule_id: str) -> Rule | None:
        rule = self.rules.get(rule_id)
        return copy.deepcopy(rule) if rule is not None else None

    def set_rule(self, rule: Rule) -> None:
        self.rules[rule.item_id] = copy.deepcopy(rule)

    def remove_rule(self, rule_id: str) -> None:
        self.removed.append(rule_id)
        self.rules.pop(rule_id, None)

    def get_rules_by_linked_item(self, item_id: str) -> list[Rule]:
        return [copy.deepcopy(r) for r in self.rules.values() if item_id in r.linked_items]

    def get_rule_metadatas(self) -> list[Metadata]:
        return [copy.deepcopy(r.metadata) for r in self.rules.values()]


class FakeEvents:
    """Event sink recording everything it is sent."""

    def __init__(self) -> None:
        self.sent: list[Event] = []
        self.fail = False

    def send(self, event: Event) -> None:
        if self.fail:
            raise RuntimeError("event sink unavailable")
        self.sent.append(event)


# =============================================================================
# Builders
# =============================================================================


def make_segment(segment_id: str, condition: Condition | None, enabled: bool = True, **metadata: Any) -> Segment:
    return Segment(
        metadata=Metadata(id=segment_id, name=segment_id.title(), scope="test", enabled=enabled, **metadata),
        condition=condition,
    )


def make_scoring(scoring_id: str, elements: list[tuple[Condition, int]], enabled: bool = True) -> Scoring:
    return Scoring(
        metadata=Metadata(id=scoring_id, name=scoring_id.title(), scope="test", enabled=enabled),
        elements=[ScoringElement(condition=c, value=v) for c, v in elements],
    )


def age_over(age: int) -> Condition:
    return Condition(
        "profilePropertyCondition",
        {"propertyName": "properties.age", "comparisonOperator": "greaterThan", "propertyValueInteger": age},
    )


def in_segments(*segment_ids: str) -> Condition:
    return Condition("profileSegmentCondition", {"matchType": "in", "segments": list(segment_ids)})


def past_event(event_type: str, number_of_days: int | None = 30, **window: Any) -> Condition:
    """Window node wrapping an event trigger on eventType."""
    params: dict[str, Any] = {
        "eventCondition": Condition(EVENT_TYPE_CONDITION, {"eventTypeId": event_type}),
        "minimumEventCount": 1,
    }
    if number_of_days is not None:
        params["numberOfDays"] = number_of_days
    params.update(window)
    return Condition(PAST_EVENT_CONDITION, params)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def reset_segmentation_state():
    """Reset settings and logging around each test."""
    reset_settings()
    reset_logging()
    yield
    reset_settings()
    reset_logging()


@pytest.fixture
def settings() -> SegmentationSettings:
    """Settings with no retry delay, independent of the environment."""
    return SegmentationSettings(_env_file=None, seconds_delay_for_retry_update_profile_segment=0)


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def definitions() -> FakeDefinitions:
    return FakeDefinitions()


@pytest.fixture
def rules() -> FakeRules:
    return FakeRules()


@pytest.fixture
def events() -> FakeEvents:
    return FakeEvents()
