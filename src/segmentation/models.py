"""
Segmentation Data Models.

Core data structures for segments, scorings, condition trees, auto-generated
rules and the profiles they classify. Every persisted structure round-trips
through to_dict()/from_dict() using the store's JSON field names.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Generic, Iterator, TypeVar, Union

# Item types understood by the persistence service
PROFILE = "profile"
SEGMENT = "segment"
SCORING = "scoring"
RULE = "rule"
EVENT = "event"

# Scope given to definitions that do not declare one
SYSTEM_SCOPE = "systemscope"

T = TypeVar("T")

Scalar = Union[str, int, float, bool, None, date, datetime]

# Closed set of values a condition parameter can hold
ParameterValue = Union[
    Scalar,
    "Condition",
    list["Condition"],
    list[Scalar],
    dict[str, Any],
]


def _dump_value(value: Any) -> Any:
    """Convert a parameter value to its JSON form."""
    if isinstance(value, Condition):
        return value.to_dict()
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_dump_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _dump_value(v) for k, v in value.items()}
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _is_condition_dict(value: Any) -> bool:
    return isinstance(value, dict) and "type" in value and "parameterValues" in value


def _load_value(value: Any) -> Any:
    """Convert a JSON parameter value, recognising nested conditions."""
    if _is_condition_dict(value):
        return Condition.from_dict(value)
    if isinstance(value, list):
        return [_load_value(v) for v in value]
    return value


@dataclass
class Metadata:
    """Identity and flags shared by segments, scorings and rules."""

    id: str
    name: str = ""
    description: str = ""
    scope: str | None = None
    tags: set[str] = field(default_factory=set)
    system_tags: set[str] = field(default_factory=set)
    enabled: bool = True
    hidden: bool = False
    missing_plugins: bool = False
    read_only: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "scope": self.scope,
            "tags": sorted(self.tags),
            "systemTags": sorted(self.system_tags),
            "enabled": self.enabled,
            "hidden": self.hidden,
            "missingPlugins": self.missing_plugins,
            "readOnly": self.read_only,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Metadata:
        """Create from dict."""
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            description=data.get("description") or "",
            scope=data.get("scope"),
            tags=set(data.get("tags") or []),
            system_tags=set(data.get("systemTags") or []),
            enabled=data.get("enabled", True),
            hidden=data.get("hidden", False),
            missing_plugins=data.get("missingPlugins", False),
            read_only=data.get("readOnly", False),
        )


@dataclass
class ConditionType:
    """Registry entry for a condition type id."""

    id: str
    name: str = ""
    system_tags: set[str] = field(default_factory=set)


@dataclass
class ActionType:
    """Registry entry for an action type id."""

    id: str
    name: str = ""
    system_tags: set[str] = field(default_factory=set)


@dataclass
class Condition:
    """
    A node of a condition tree.

    Boolean combinators hold "operator" and "subConditions"; every other node
    is a leaf predicate evaluated by the store. The resolved registry type is
    attached by resolve_condition_types() and never serialized.
    """

    type_id: str
    parameters: dict[str, ParameterValue] = field(default_factory=dict)
    condition_type: ConditionType | None = field(default=None, repr=False, compare=False)

    def get(self, name: str, default: Any = None) -> Any:
        """Get a parameter value."""
        return self.parameters.get(name, default)

    def set(self, name: str, value: ParameterValue) -> None:
        """Set a parameter value."""
        self.parameters[name] = value

    def contains(self, name: str) -> bool:
        """Check whether a parameter is present and not None."""
        return self.parameters.get(name) is not None

    @property
    def system_tags(self) -> set[str]:
        """System tags of the resolved type (empty when unresolved)."""
        if self.condition_type is None:
            return set()
        return self.condition_type.system_tags

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "type": self.type_id,
            "parameterValues": {k: _dump_value(v) for k, v in self.parameters.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Condition:
        """Create from dict."""
        params = data.get("parameterValues") or {}
        return cls(
            type_id=data["type"],
            parameters={k: _load_value(v) for k, v in params.items()},
        )


@dataclass
class ScoringElement:
    """A weighted condition of a scoring."""

    condition: Condition
    value: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"condition": self.condition.to_dict(), "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScoringElement:
        return cls(condition=Condition.from_dict(data["condition"]), value=int(data.get("value", 0)))


@dataclass
class Segment:
    """A named condition over profiles; matching profiles are members."""

    metadata: Metadata
    condition: Condition | None = None

    @property
    def item_id(self) -> str:
        return self.metadata.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "itemId": self.item_id,
            "metadata": self.metadata.to_dict(),
            "condition": self.condition.to_dict() if self.condition else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Segment:
        condition = data.get("condition")
        return cls(
            metadata=Metadata.from_dict(data["metadata"]),
            condition=Condition.from_dict(condition) if condition else None,
        )


@dataclass
class Scoring:
    """A named list of weighted conditions producing a score per profile."""

    metadata: Metadata
    elements: list[ScoringElement] = field(default_factory=list)

    @property
    def item_id(self) -> str:
        return self.metadata.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "itemId": self.item_id,
            "metadata": self.metadata.to_dict(),
            "elements": [e.to_dict() for e in self.elements],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Scoring:
        return cls(
            metadata=Metadata.from_dict(data["metadata"]),
            elements=[ScoringElement.from_dict(e) for e in data.get("elements") or []],
        )


@dataclass
class Action:
    """An action executed by a rule."""

    type_id: str
    parameters: dict[str, ParameterValue] = field(default_factory=dict)
    action_type: ActionType | None = field(default=None, repr=False, compare=False)

    def get(self, name: str, default: Any = None) -> Any:
        return self.parameters.get(name, default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type_id,
            "parameterValues": {k: _dump_value(v) for k, v in self.parameters.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Action:
        params = data.get("parameterValues") or {}
        return cls(type_id=data["type"], parameters={k: _load_value(v) for k, v in params.items()})


@dataclass
class Rule:
    """
    A background rule.

    Auto-generated counting rules are hidden and list the segments and
    scorings that depend on them in linked_items.
    """

    metadata: Metadata
    condition: Condition | None = None
    actions: list[Action] = field(default_factory=list)
    linked_items: list[str] = field(default_factory=list)

    @property
    def item_id(self) -> str:
        return self.metadata.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "itemId": self.item_id,
            "metadata": self.metadata.to_dict(),
            "condition": self.condition.to_dict() if self.condition else None,
            "actions": [a.to_dict() for a in self.actions],
            "linkedItems": list(self.linked_items),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Rule:
        condition = data.get("condition")
        return cls(
            metadata=Metadata.from_dict(data["metadata"]),
            condition=Condition.from_dict(condition) if condition else None,
            actions=[Action.from_dict(a) for a in data.get("actions") or []],
            linked_items=list(data.get("linkedItems") or []),
        )


@dataclass
class Profile:
    """
    A classified entity.

    Only the fields owned by the segmentation engine are modelled; everything
    else lives in properties.
    """

    item_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    system_properties: dict[str, Any] = field(default_factory=dict)
    segments: set[str] = field(default_factory=set)
    scores: dict[str, int] = field(default_factory=dict)

    @property
    def score_modifiers(self) -> dict[str, int]:
        """Profile-local score overrides keyed by scoring id."""
        return self.system_properties.get("scoreModifiers") or {}

    @property
    def past_events(self) -> dict[str, int]:
        """Past event counts keyed by generated property key."""
        return self.system_properties.get("pastEvents") or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "itemId": self.item_id,
            "properties": dict(self.properties),
            "systemProperties": _dump_value(self.system_properties),
            "segments": sorted(self.segments),
            "scores": dict(self.scores),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Profile:
        return cls(
            item_id=data["itemId"],
            properties=dict(data.get("properties") or {}),
            system_properties=dict(data.get("systemProperties") or {}),
            segments=set(data.get("segments") or []),
            scores=dict(data.get("scores") or {}),
        )


@dataclass
class Event:
    """An event handed to the event service."""

    event_type: str
    profile: Profile | None = None
    target: Any = None
    source: Any = None
    scope: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    persistent: bool = True
    item_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def profile_id(self) -> str | None:
        return self.profile.item_id if self.profile else None


@dataclass
class PartialList(Generic[T]):
    """
    One page of a query result.

    When the query was opened with a scroll time validity, scroll_identifier
    resumes the query from the next page.
    """

    items: list[T] = field(default_factory=list)
    offset: int = 0
    page_size: int = 0
    total_size: int = 0
    scroll_identifier: str | None = None
    scroll_time_validity: str | None = None

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[T]:
        return iter(self.items)


@dataclass(frozen=True)
class TermsAggregate:
    """Terms aggregation over a field, optionally restricted to one partition."""

    field: str
    partition: int | None = None
    num_partitions: int | None = None


@dataclass
class ScriptedUpdate:
    """
    A named update the store applies to every item matching condition.

    Scripts understood by the store:
        resetScore: scores[scoringId] = scoreModifiers[scoringId] if present,
                    otherwise remove scores[scoringId]
        addScore: scores[scoringId] += scoringValue (created at scoringValue)
        removeScore: remove scores[scoringId]
    All three set systemProperties.lastUpdated.
    """

    script: str
    params: dict[str, Any]
    condition: Condition


@dataclass
class DependentMetadata:
    """Metadata of the segments and scorings that reference a definition."""

    segments: list[Metadata] = field(default_factory=list)
    scorings: list[Metadata] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.segments and not self.scorings

    def to_dict(self) -> dict[str, Any]:
        return {
            "segments": [m.to_dict() for m in self.segments],
            "scorings": [m.to_dict() for m in self.scorings],
        }


@dataclass
class SegmentsAndScores:
    """Result of classifying one profile."""

    segments: set[str] = field(default_factory=set)
    scores: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"segments": sorted(self.segments), "scores": dict(self.scores)}
