"""
Collaborator Protocols for the Segmentation Engine.

Defines the interfaces of the external services the engine depends on.
The engine never matches conditions or stores items itself; it drives these
collaborators.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .models import (
        ActionType,
        Condition,
        ConditionType,
        Event,
        Metadata,
        PartialList,
        Rule,
        ScriptedUpdate,
        TermsAggregate,
    )


# =============================================================================
# Persistence
# =============================================================================


@runtime_checkable
class PersistenceService(Protocol):
    """
    Durable store with query, paging, partial update and aggregation.

    Item types are the constants of segmentation.models (PROFILE, SEGMENT,
    SCORING, RULE, EVENT).
    """

    def test_match(self, condition: Condition, item: Any) -> bool:
        """Evaluate a condition against a single item."""
        ...

    def query(
        self,
        condition: Condition | None,
        sort_by: str | None,
        item_type: str,
        offset: int = 0,
        size: int = -1,
        scroll_time_validity: str | None = None,
    ) -> PartialList:
        """
        Query items matching condition (all items when None).

        With scroll_time_validity, the result carries a scroll identifier
        valid for that long.
        """
        ...

    def continue_scroll_query(
        self,
        item_type: str,
        scroll_identifier: str | None,
        scroll_time_validity: str | None,
    ) -> PartialList | None:
        """Fetch the next page of a scroll query (None or empty when done)."""
        ...

    def query_count(self, condition: Condition, item_type: str) -> int:
        """Count items matching condition."""
        ...

    def load(self, item_id: str, item_type: str) -> Any | None:
        """Load one item by id."""
        ...

    def get_all_items(self, item_type: str) -> list[Any]:
        """Load every item of a type."""
        ...

    def save(self, item: Any) -> bool:
        """Create or replace an item."""
        ...

    def remove(self, item_id: str, item_type: str) -> bool:
        """Delete an item by id."""
        ...

    def update(self, item: Any, item_type: str, fields: dict[str, Any]) -> bool:
        """Partially update one item; False when the store refused the write."""
        ...

    def update_items(self, items: dict[str, dict[str, Any]], item_type: str) -> list[str]:
        """
        Partially update many items in one request.

        Args:
            items: Item id -> fields to write

        Returns:
            Ids of the items whose update failed
        """
        ...

    def update_with_query_and_script(self, item_type: str, updates: list[ScriptedUpdate]) -> bool:
        """Apply each named script to every item matching its condition, in order."""
        ...

    def aggregate(
        self,
        condition: Condition,
        aggregate: TermsAggregate,
        item_type: str,
        size: int | None = None,
    ) -> dict[str, int]:
        """Count matching items per term."""
        ...

    def get_single_value_metrics(
        self,
        condition: Condition,
        metrics: list[str],
        field: str,
        item_type: str,
    ) -> dict[str, float]:
        """Compute single-value metrics (keys are the metric names prefixed with '_')."""
        ...

    def is_valid_condition(self, condition: Condition, item: Any) -> bool:
        """Check that the store can evaluate condition against item."""
        ...

    def create_mapping(self, item_type: str, mapping: dict[str, Any]) -> None:
        """Declare additional field mappings for an item type."""
        ...

    def refresh_index(self, item_type: str) -> None:
        """Make recent writes visible to queries."""
        ...


# =============================================================================
# Type Registry
# =============================================================================


@runtime_checkable
class DefinitionsService(Protocol):
    """Registry of condition and action types."""

    def get_condition_type(self, type_id: str) -> ConditionType | None:
        ...

    def get_action_type(self, type_id: str) -> ActionType | None:
        ...


# =============================================================================
# Rules
# =============================================================================


@runtime_checkable
class RulesService(Protocol):
    """Rule storage."""

    def get_rule(self, rule_id: str) -> Rule | None:
        ...

    def set_rule(self, rule: Rule) -> None:
        ...

    def remove_rule(self, rule_id: str) -> None:
        ...

    def get_rules_by_linked_item(self, item_id: str) -> list[Rule]:
        """Rules whose linked items contain item_id."""
        ...

    def get_rule_metadatas(self) -> list[Metadata]:
        ...


# =============================================================================
# Events
# =============================================================================


@runtime_checkable
class EventService(Protocol):
    """Fire-and-forget event delivery."""

    def send(self, event: Event) -> Any:
        ...
