#!/usr/bin/env python3
"""
Segmentation CLI Entry Point

Offline inspection of a directory of predefined definitions.
Run with: python -m segmentation <command> [args]
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime, timezone

from .conditions import find_leaves_of_type, is_event_trigger, resolve_condition_types
from .core.logging import set_log_level
from .dependencies import DefinitionKind, find_dependents, to_dependent_metadata
from .loader import load_definitions
from .models import ActionType, Condition, ConditionType
from .rules import generated_property_key

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def get_utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def output_json(data: dict, indent: int = 2) -> None:
    """Print JSON output to stdout."""
    print(json.dumps(data, indent=indent))


def output_error(message: str, exit_code: int = 1, **kwargs) -> None:
    """Print error JSON and exit."""
    error_data = {
        "error": kwargs.pop("error_type", "error"),
        "message": message,
        "query_timestamp": get_utc_timestamp(),
    }
    error_data.update(kwargs)
    output_json(error_data)
    sys.exit(exit_code)


class TagRegistry:
    """
    Offline condition type registry.

    Every type resolves; the ones named as event types carry the
    eventCondition tag.
    """

    def __init__(self, event_types: list[str]) -> None:
        self._event_types = set(event_types)

    @property
    def event_types(self) -> list[str]:
        return sorted(self._event_types)

    def get_condition_type(self, type_id: str) -> ConditionType:
        tags = {"eventCondition"} if type_id in self._event_types else set()
        return ConditionType(id=type_id, system_tags=tags)

    def get_action_type(self, type_id: str) -> ActionType:
        return ActionType(id=type_id)


def _rule_keys(registry: TagRegistry, item_id: str, conditions: list[Condition | None]) -> list[str]:
    keys: list[str] = []
    for condition in conditions:
        resolve_condition_types(registry, condition, item_id)
        for trigger, parent in find_leaves_of_type(condition, is_event_trigger):
            if parent is None:
                continue
            key = generated_property_key(trigger, parent)
            if key is not None and key not in keys:
                keys.append(key)
    return keys


# =============================================================================
# Commands
# =============================================================================


def cmd_check(args: argparse.Namespace) -> dict:
    """Load a definitions directory and report what was parsed."""
    loaded = load_definitions(args.directory)
    return {
        "directory": str(args.directory),
        "query_timestamp": get_utc_timestamp(),
        **loaded.to_dict(),
    }


def cmd_dependents(args: argparse.Namespace) -> dict:
    """List the definitions that reference a segment or scoring id."""
    loaded = load_definitions(args.directory)
    kind = DefinitionKind.SCORING if args.scoring else DefinitionKind.SEGMENT
    segments, scorings = find_dependents(kind, args.id, loaded.segments, loaded.scorings)
    return {
        "target": args.id,
        "kind": kind.value,
        "query_timestamp": get_utc_timestamp(),
        **to_dependent_metadata(segments, scorings).to_dict(),
    }


def cmd_rule_keys(args: argparse.Namespace) -> dict:
    """Print the counting rule keys each definition would derive."""
    loaded = load_definitions(args.directory)
    registry = TagRegistry(args.event_types or [])

    definitions = []
    for segment in loaded.segments:
        definitions.append(
            {
                "id": segment.item_id,
                "kind": DefinitionKind.SEGMENT.value,
                "keys": _rule_keys(registry, segment.item_id, [segment.condition]),
            }
        )
    for scoring in loaded.scorings:
        definitions.append(
            {
                "id": scoring.item_id,
                "kind": DefinitionKind.SCORING.value,
                "keys": _rule_keys(registry, scoring.item_id, [e.condition for e in scoring.elements]),
            }
        )

    return {
        "event_types": registry.event_types,
        "query_timestamp": get_utc_timestamp(),
        "definitions": definitions,
    }


# =============================================================================
# Main Entry Point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="segmentation",
        description="Inspect segment and scoring definition directories",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        type=str.upper,
        help="Override SEGMENTATION_LOG_LEVEL for this run (logs go to stderr)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    check_parser = subparsers.add_parser("check", help="Parse a definitions directory")
    check_parser.add_argument("directory", help="Directory holding segments/ and scoring/")
    check_parser.set_defaults(func=cmd_check)

    dependents_parser = subparsers.add_parser("dependents", help="List definitions referencing an id")
    dependents_parser.add_argument("directory", help="Directory holding segments/ and scoring/")
    dependents_parser.add_argument("id", help="Segment or scoring id")
    dependents_parser.add_argument(
        "--scoring", action="store_true", help="Treat the id as a scoring id"
    )
    dependents_parser.set_defaults(func=cmd_dependents)

    keys_parser = subparsers.add_parser("rule-keys", help="Show derived counting rule keys")
    keys_parser.add_argument("directory", help="Directory holding segments/ and scoring/")
    keys_parser.add_argument(
        "--event-type",
        dest="event_types",
        action="append",
        metavar="TYPE",
        help="Condition type id tagged as an event condition (repeatable)",
    )
    keys_parser.set_defaults(func=cmd_rule_keys)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        set_log_level(args.log_level)

    if not args.command:
        parser.print_help()
        return 0

    try:
        result = args.func(args)
        if isinstance(result, dict) and result:
            output_json(result)
            if "error" in result:
                return 1
        return 0

    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except Exception as e:
        output_error(str(e), error_type="command_error", command=args.command)
        return 1


if __name__ == "__main__":
    sys.exit(main())
