"""
Condition Tree Utilities.

Recursive inspection and rewriting of condition trees:
- Walking every nested condition parameter
- Finding leaves that satisfy a predicate, together with their parent
- Removing references to a segment or scoring, collapsing combinators
- Resolving condition types against the registry
- Building the membership conditions used by the bulk update pipeline

Rewrites never mutate their input; unchanged sub-trees are shared.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .core.logging import get_logger
from .models import Action, Condition

if TYPE_CHECKING:
    from .interfaces import DefinitionsService

logger = get_logger(__name__)

# =============================================================================
# Condition Type Ids
# =============================================================================

BOOLEAN_CONDITION = "booleanCondition"
NOT_CONDITION = "notCondition"
MATCH_ALL_CONDITION = "matchAllCondition"
PROFILE_PROPERTY_CONDITION = "profilePropertyCondition"
SESSION_PROPERTY_CONDITION = "sessionPropertyCondition"
PROFILE_SEGMENT_CONDITION = "profileSegmentCondition"
SCORING_CONDITION = "scoringCondition"

# System tags read from the type registry
EVENT_CONDITION_TAG = "eventCondition"
PROFILE_CONDITION_TAG = "profileCondition"

# Parameter name marking a relative date expression ("now-1d", ...)
DATE_EXPR_MARKER = "propertyValueDateExpr"

SUB_CONDITIONS = "subConditions"


# =============================================================================
# References
# =============================================================================


@dataclass(frozen=True)
class ReferenceKind:
    """
    A leaf condition type that references other definitions by id.

    multiple=True means the parameter holds a list of ids, otherwise a
    single id.
    """

    type_id: str
    parameter: str
    multiple: bool

    def is_reference(self, condition: Condition) -> bool:
        return condition.type_id == self.type_id

    def references(self, condition: Condition, target_id: str) -> bool:
        """Check whether this leaf references target_id."""
        if not self.is_reference(condition):
            return False
        value = condition.get(self.parameter)
        if self.multiple:
            return target_id in (value or [])
        return value == target_id

    def remove(self, condition: Condition, target_id: str) -> Condition | None:
        """
        Drop target_id from this leaf.

        Returns None when nothing is left to reference.
        """
        if not self.references(condition, target_id):
            return condition
        if not self.multiple:
            return None
        remaining = [i for i in condition.get(self.parameter) if i != target_id]
        if not remaining:
            return None
        return Condition(
            type_id=condition.type_id,
            parameters={**condition.parameters, self.parameter: remaining},
            condition_type=condition.condition_type,
        )


SEGMENT_REFERENCE = ReferenceKind(PROFILE_SEGMENT_CONDITION, "segments", multiple=True)
SCORING_REFERENCE = ReferenceKind(SCORING_CONDITION, "scoringPlanId", multiple=False)


# =============================================================================
# Walking
# =============================================================================


def is_boolean(condition: Condition) -> bool:
    """Check whether a node is a boolean combinator."""
    return condition.type_id == BOOLEAN_CONDITION or isinstance(condition.get(SUB_CONDITIONS), list)


def iter_child_conditions(condition: Condition) -> Iterator[Condition]:
    """Yield every condition held directly by a parameter of condition."""
    for value in condition.parameters.values():
        if isinstance(value, Condition):
            yield value
        elif isinstance(value, list):
            for item in value:
                if isinstance(item, Condition):
                    yield item


def iter_conditions(condition: Condition | None) -> Iterator[Condition]:
    """Depth-first iteration over all nodes of a tree."""
    if condition is None:
        return
    yield condition
    for child in iter_child_conditions(condition):
        yield from iter_conditions(child)


def find_leaves_of_type(
    condition: Condition | None,
    predicate: Callable[[Condition], bool],
    parent: Condition | None = None,
) -> list[tuple[Condition, Condition | None]]:
    """
    Find the outermost nodes satisfying predicate.

    Nodes that do not satisfy predicate are descended into; matching nodes
    are not.

    Args:
        condition: Root of the tree
        predicate: Leaf test
        parent: Parent of condition (None for the root)

    Returns:
        (node, parent) pairs in depth-first order
    """
    found: list[tuple[Condition, Condition | None]] = []
    if condition is None:
        return found
    if predicate(condition):
        found.append((condition, parent))
        return found
    for child in iter_child_conditions(condition):
        found.extend(find_leaves_of_type(child, predicate, condition))
    return found


def is_event_trigger(condition: Condition) -> bool:
    """Event-class leaf that is not also a profile-class leaf."""
    tags = condition.system_tags
    return EVENT_CONDITION_TAG in tags and PROFILE_CONDITION_TAG not in tags


def contains_reference(condition: Condition | None, reference: ReferenceKind, target_id: str) -> bool:
    """Check whether any reachable node references target_id."""
    return any(reference.references(node, target_id) for node in iter_conditions(condition))


def condition_to_text(condition: Condition | None) -> str:
    """Stable textual form of a tree."""
    if condition is None:
        return ""
    return json.dumps(condition.to_dict(), sort_keys=True, default=str)


def contains_text(condition: Condition | None, marker: str) -> bool:
    """Check whether marker appears anywhere in the textual form of a tree."""
    return marker in condition_to_text(condition)


# =============================================================================
# Rewriting
# =============================================================================


def rewrite_removing_reference(
    condition: Condition | None,
    reference: ReferenceKind,
    target_id: str,
) -> Condition | None:
    """
    Return a tree that no longer references target_id.

    Boolean combinators drop sub-conditions that became absent, collapse to
    their only survivor and become absent when none survive. Any other node
    wrapping a condition that became absent becomes absent itself.

    Args:
        condition: Tree to rewrite
        reference: Kind of reference to remove
        target_id: Id of the deleted segment or scoring

    Returns:
        Rewritten tree, or None when nothing is left
    """
    if condition is None:
        return None

    if is_boolean(condition):
        subs = condition.get(SUB_CONDITIONS) or []
        rewritten = [rewrite_removing_reference(sub, reference, target_id) for sub in subs]
        kept = [c for c in rewritten if c is not None]
        if not kept:
            return None
        if len(kept) == 1:
            return kept[0]
        if len(kept) == len(subs) and all(a is b for a, b in zip(kept, subs)):
            return condition
        return Condition(
            type_id=condition.type_id,
            parameters={**condition.parameters, SUB_CONDITIONS: kept},
            condition_type=condition.condition_type,
        )

    if reference.is_reference(condition):
        return reference.remove(condition, target_id)

    params: dict[str, Any] = dict(condition.parameters)
    changed = False
    for name, value in condition.parameters.items():
        if isinstance(value, Condition):
            updated = rewrite_removing_reference(value, reference, target_id)
            if updated is None:
                return None
            if updated is not value:
                params[name] = updated
                changed = True
        elif isinstance(value, list) and any(isinstance(v, Condition) for v in value):
            items = [
                rewrite_removing_reference(v, reference, target_id) if isinstance(v, Condition) else v
                for v in value
            ]
            kept_items = [v for v in items if v is not None]
            if not kept_items:
                return None
            if len(kept_items) != len(value) or any(a is not b for a, b in zip(kept_items, value)):
                params[name] = kept_items
                changed = True

    if not changed:
        return condition
    return Condition(type_id=condition.type_id, parameters=params, condition_type=condition.condition_type)


# =============================================================================
# Type Resolution
# =============================================================================


def resolve_condition_types(
    registry: DefinitionsService,
    condition: Condition | None,
    context: str,
) -> bool:
    """
    Attach registry types to every node of a tree.

    Args:
        registry: Condition type registry
        condition: Tree to resolve
        context: Description of the owner, used in log messages

    Returns:
        False if at least one type id could not be resolved
    """
    if condition is None:
        return True

    resolved = True
    for node in iter_conditions(condition):
        condition_type = registry.get_condition_type(node.type_id)
        if condition_type is None:
            logger.warning("Couldn't resolve condition type %s for %s", node.type_id, context)
            resolved = False
        else:
            node.condition_type = condition_type
    return resolved


def resolve_action_types(registry: DefinitionsService, actions: list[Action], context: str) -> bool:
    """Attach registry types to actions; False if one could not be resolved."""
    resolved = True
    for action in actions:
        action_type = registry.get_action_type(action.type_id)
        if action_type is None:
            logger.warning("Couldn't resolve action type %s for %s", action.type_id, context)
            resolved = False
        else:
            action.action_type = action_type
    return resolved


# =============================================================================
# Builders
# =============================================================================


def property_condition(
    property_name: str,
    comparison_operator: str,
    value: Any = None,
    value_parameter: str = "propertyValue",
    type_id: str = PROFILE_PROPERTY_CONDITION,
) -> Condition:
    """Build a property comparison leaf."""
    params: dict[str, Any] = {
        "propertyName": property_name,
        "comparisonOperator": comparison_operator,
    }
    if value is not None:
        params[value_parameter] = value
    return Condition(type_id=type_id, parameters=params)


def boolean_condition(operator: str, sub_conditions: list[Condition]) -> Condition:
    """Build an and/or combinator."""
    return Condition(
        type_id=BOOLEAN_CONDITION,
        parameters={"operator": operator, SUB_CONDITIONS: list(sub_conditions)},
    )


def not_condition(sub_condition: Condition) -> Condition:
    """Build a negation."""
    return Condition(type_id=NOT_CONDITION, parameters={"subCondition": sub_condition})


def match_all_condition() -> Condition:
    return Condition(type_id=MATCH_ALL_CONDITION)


def segment_membership_condition(segment_id: str) -> Condition:
    """Profiles currently holding segment_id in their segments field."""
    return property_condition("segments", "equals", segment_id)


def score_exists_condition(scoring_id: str) -> Condition:
    """Profiles holding a score for scoring_id."""
    return property_condition(f"scores.{scoring_id}", "exists")
