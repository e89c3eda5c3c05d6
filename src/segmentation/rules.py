"""
Auto-Generated Counting Rules.

Segments and scorings may embed "how many times did event X happen in
window W" sub-trees. Evaluating those per profile would mean scanning raw
events at match time, so each distinct (event condition, window) pair is
turned into a hidden background rule that keeps a running count in the
profile's systemProperties.pastEvents under a content-addressed key.

Key facts:
- The key is "eventTriggered" + MD5 of the canonical JSON of the trigger
  sub-tree and its window, so identical clauses share one rule and one counter
- The key is written back into the window node as generatedPropertyKey
- A rule's linkedItems lists every definition whose tree maps to its key;
  a rule is deleted once nothing links to it
- New rules backfill existing profiles from stored events
"""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Iterable
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from .conditions import (
    SESSION_PROPERTY_CONDITION,
    boolean_condition,
    find_leaves_of_type,
    is_event_trigger,
    property_condition,
    resolve_condition_types,
)
from .core.config import SegmentationSettings, get_settings
from .core.errors import MaintenanceError
from .core.logging import get_logger, with_context
from .models import EVENT, PROFILE, RULE, Action, Condition, Metadata, Rule, TermsAggregate

if TYPE_CHECKING:
    from .interfaces import DefinitionsService, PersistenceService, RulesService
    from .pipeline import ProfileUpdatePipeline

logger = get_logger(__name__)

GENERATED_KEY_PREFIX = "eventTriggered"
GENERATED_PROPERTY_KEY = "generatedPropertyKey"
PAST_EVENT_ACTION = "setEventOccurenceCountAction"
PAST_EVENT_CONDITION_PARAM = "pastEventCondition"

# Window parameters read from the parent of an event trigger
NUMBER_OF_DAYS = "numberOfDays"
FROM_DATE = "fromDate"
TO_DATE = "toDate"


# =============================================================================
# Key Derivation
# =============================================================================


def _json_default(value: Any) -> Any:
    """Fixed formatting for values json does not handle natively."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_trigger(condition: Condition, parent: Condition) -> str:
    """
    Canonical serialized form of a trigger and its window.

    fromDate and toDate are only included when set, so keys of windows that
    use numberOfDays alone do not change when those parameters are unused.

    Raises:
        TypeError, ValueError: When a parameter value cannot be serialized
    """
    payload: dict[str, Any] = {
        "condition": condition.to_dict(),
        NUMBER_OF_DAYS: parent.get(NUMBER_OF_DAYS),
    }
    if parent.contains(FROM_DATE):
        payload[FROM_DATE] = parent.get(FROM_DATE)
    if parent.contains(TO_DATE):
        payload[TO_DATE] = parent.get(TO_DATE)

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_json_default)


def generated_property_key(condition: Condition, parent: Condition) -> str | None:
    """
    Derive the rule id and pastEvents key for a trigger.

    Args:
        condition: Event trigger sub-tree
        parent: Node holding the window parameters

    Returns:
        The key, or None if the trigger cannot be serialized
    """
    try:
        serialized = canonical_trigger(condition, parent)
    except (TypeError, ValueError):
        logger.error("Cannot generate key", exc_info=True)
        return None
    return GENERATED_KEY_PREFIX + hashlib.md5(serialized.encode("utf-8")).hexdigest()


def past_event_window_condition(event_condition: Condition, parent: Condition) -> Condition:
    """Event condition restricted to the window declared on parent."""
    sub_conditions = [event_condition]

    number_of_days = parent.get(NUMBER_OF_DAYS)
    if number_of_days is not None:
        sub_conditions.append(
            property_condition(
                "timeStamp", "greaterThan", f"now-{number_of_days}d", type_id=SESSION_PROPERTY_CONDITION
            )
        )
    from_date = parent.get(FROM_DATE)
    if from_date is not None:
        sub_conditions.append(
            property_condition(
                "timeStamp",
                "greaterThanOrEqualTo",
                from_date,
                value_parameter="propertyValueDate",
                type_id=SESSION_PROPERTY_CONDITION,
            )
        )
    to_date = parent.get(TO_DATE)
    if to_date is not None:
        sub_conditions.append(
            property_condition(
                "timeStamp",
                "lessThanOrEqualTo",
                to_date,
                value_parameter="propertyValueDate",
                type_id=SESSION_PROPERTY_CONDITION,
            )
        )

    return boolean_condition("and", sub_conditions)


# =============================================================================
# Deriver
# =============================================================================


class RuleDeriver:
    """
    Materializes and retires auto-generated counting rules.

    Usage:
        deriver = RuleDeriver(persistence, definitions, rules, pipeline)
        deriver.update_auto_generated_rules(segment.metadata, [segment.condition])
    """

    def __init__(
        self,
        persistence: PersistenceService,
        definitions: DefinitionsService,
        rules: RulesService,
        pipeline: ProfileUpdatePipeline,
        settings: SegmentationSettings | None = None,
    ) -> None:
        self._persistence = persistence
        self._definitions = definitions
        self._rules = rules
        self._pipeline = pipeline
        self._settings = settings or get_settings()

    def derive_rules(self, metadata: Metadata, conditions: Iterable[Condition | None]) -> list[Rule]:
        """
        Build the rules a definition's trees currently map to.

        Writes generatedPropertyKey into each window node. New rules are
        backfilled but not saved; existing rules get metadata.id linked.

        Args:
            metadata: Metadata of the segment or scoring
            conditions: Its root condition, or one per scoring element

        Returns:
            One rule per distinct key
        """
        derived: dict[str, Rule] = {}

        for condition in conditions:
            for trigger, parent in find_leaves_of_type(condition, is_event_trigger):
                if parent is None:
                    logger.warning(
                        "Event condition %s of %s has no enclosing window, skipped",
                        trigger.type_id,
                        metadata.id,
                    )
                    continue

                key = generated_property_key(trigger, parent)
                if key is None:
                    continue

                parent.set(GENERATED_PROPERTY_KEY, key)
                if key in derived:
                    continue

                rule = self._rules.get_rule(key)
                if rule is None:
                    rule = self._create_rule(metadata, key, trigger, parent)
                    self.update_existing_profiles_for_past_event_condition(
                        trigger, parent, force_refresh=True, key=key
                    )
                elif metadata.id not in rule.linked_items:
                    rule.linked_items.append(metadata.id)
                derived[key] = rule

        return list(derived.values())

    def _create_rule(self, metadata: Metadata, key: str, trigger: Condition, parent: Condition) -> Rule:
        action = Action(
            type_id=PAST_EVENT_ACTION,
            parameters={PAST_EVENT_CONDITION_PARAM: parent},
            action_type=self._definitions.get_action_type(PAST_EVENT_ACTION),
        )
        return Rule(
            metadata=Metadata(
                id=key,
                name=f"Auto generated rule for {metadata.name}",
                scope=metadata.scope,
                hidden=True,
            ),
            condition=trigger,
            actions=[action],
            linked_items=[metadata.id],
        )

    def update_auto_generated_rules(self, metadata: Metadata, conditions: Iterable[Condition | None]) -> list[Rule]:
        """
        Save the rules derived from a definition and unlink the stale ones.

        Returns:
            The rules now linked to the definition
        """
        previous = self._rules.get_rules_by_linked_item(metadata.id)
        rules = self.derive_rules(metadata, conditions)

        for rule in rules:
            self._rules.set_rule(rule)

        derived_ids = {rule.item_id for rule in rules}
        stale = [rule for rule in previous if rule.item_id not in derived_ids]
        self.clear_auto_generated_rules(stale, metadata.id)
        return rules

    def clear_auto_generated_rules(self, rules: Iterable[Rule], item_id: str) -> None:
        """Unlink item_id from rules, deleting the ones nothing links to anymore."""
        for rule in rules:
            rule.linked_items = [linked for linked in rule.linked_items if linked != item_id]
            if not rule.linked_items:
                logger.info("Removing auto generated rule %s", rule.item_id)
                self._rules.remove_rule(rule.item_id)
            else:
                self._rules.set_rule(rule)

    def retire_rules(self, item_id: str) -> None:
        """Unlink item_id from every rule it is linked to."""
        self.clear_auto_generated_rules(self._rules.get_rules_by_linked_item(item_id), item_id)

    # =========================================================================
    # Backfill
    # =========================================================================

    def update_existing_profiles_for_past_event_condition(
        self,
        event_condition: Condition,
        parent: Condition,
        force_refresh: bool,
        key: str | None = None,
    ) -> int:
        """
        Recount past events for every profile and store the counts.

        Args:
            event_condition: Event trigger sub-tree
            parent: Window node
            force_refresh: Refresh the profile index afterwards
            key: pastEvents key (defaults to the key stored on parent)

        Returns:
            Number of profiles updated
        """
        start = time.monotonic()
        property_key = key or parent.get(GENERATED_PROPERTY_KEY)
        window = past_event_window_condition(event_condition, parent)
        resolve_condition_types(self._definitions, window, f"past event condition {property_key}")

        updated = 0
        if self._settings.past_events_disable_partitions:
            counts = self._persistence.aggregate(
                window,
                TermsAggregate("profileId"),
                EVENT,
                self._settings.maximum_ids_query_count,
            )
            updated = self._pipeline.update_profiles_with_past_event_property(counts, property_key)
        else:
            metrics = self._persistence.get_single_value_metrics(window, ["card"], "profileId.keyword", EVENT)
            cardinality = int(metrics.get("_card", 0))
            num_partitions = cardinality // self._settings.aggregate_query_bucket_size + 2
            for partition in range(num_partitions):
                counts = self._persistence.aggregate(
                    window,
                    TermsAggregate("profileId", partition, num_partitions),
                    EVENT,
                )
                updated += self._pipeline.update_profiles_with_past_event_property(counts, property_key)

        if force_refresh and updated > 0:
            self._persistence.refresh_index(PROFILE)

        logger.info(
            "%d profiles updated for past event condition in %dms",
            updated,
            (time.monotonic() - start) * 1000,
        )
        return updated

    def recalculate_past_event_conditions(self) -> int:
        """
        Recount every rule whose window is relative (numberOfDays).

        Keeps going past failing rules.

        Returns:
            Number of rules recounted

        Raises:
            MaintenanceError: If at least one rule failed
        """
        log = with_context(logger, task="past-event-recompute", item_type=RULE)
        log.info("Recalculating past event conditions")
        start = time.monotonic()
        recounted = 0
        failed: list[str] = []

        for metadata in self._rules.get_rule_metadatas():
            rule = self._rules.get_rule(metadata.id)
            if rule is None or rule.condition is None:
                continue
            for action in rule.actions:
                if action.type_id != PAST_EVENT_ACTION:
                    continue
                parent = action.get(PAST_EVENT_CONDITION_PARAM)
                if not isinstance(parent, Condition) or not parent.contains(NUMBER_OF_DAYS):
                    continue
                try:
                    self.update_existing_profiles_for_past_event_condition(
                        rule.condition, parent, force_refresh=False, key=rule.item_id
                    )
                    recounted += 1
                except Exception:
                    log.error(
                        "Error while recounting past events for rule %s",
                        rule.item_id,
                        extra={"item_id": rule.item_id},
                        exc_info=True,
                    )
                    failed.append(rule.item_id)

        log.info(
            "Finished recalculating past event conditions in %dms",
            (time.monotonic() - start) * 1000,
        )
        if failed:
            raise MaintenanceError("past-event-recompute", failed)
        return recounted
