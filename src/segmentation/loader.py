"""
Predefined Definition Loader.

Reads segment and scoring definitions shipped as files:

    <dir>/segments/*.json|*.yaml|*.yml
    <dir>/scoring/*.json|*.yaml|*.yml

Each file holds one definition in the store's JSON shape
({"metadata": {...}, "condition": {...}} or {"metadata": {...},
"elements": [...]}). Definitions without a scope get the system scope.
Unreadable files are logged and skipped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .core.logging import get_logger
from .models import SYSTEM_SCOPE, Scoring, Segment

logger = get_logger(__name__)

SEGMENTS_DIR = "segments"
SCORING_DIR = "scoring"
DEFINITION_SUFFIXES = (".json", ".yaml", ".yml")


@dataclass
class LoadedDefinitions:
    """Definitions read from a directory, plus the files that failed."""

    segments: list[Segment] = field(default_factory=list)
    scorings: list[Scoring] = field(default_factory=list)
    errors: list[Path] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "segments": len(self.segments),
            "scorings": len(self.scorings),
            "errors": [str(p) for p in self.errors],
        }


def read_definition_file(path: Path) -> dict[str, Any]:
    """
    Parse one definition file.

    Raises:
        ValueError: If the file does not hold a mapping
    """
    with open(path, encoding="utf-8") as f:
        if path.suffix == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a definition object")
    data.setdefault("metadata", {})
    if not data["metadata"].get("scope"):
        data["metadata"]["scope"] = SYSTEM_SCOPE
    return data


def _definition_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix in DEFINITION_SUFFIXES)


def load_definitions(directory: Path | str) -> LoadedDefinitions:
    """
    Load every segment and scoring below directory.

    Args:
        directory: Root holding the segments/ and scoring/ sub-directories

    Returns:
        Parsed definitions, sorted by file name within each kind
    """
    root = Path(directory)
    loaded = LoadedDefinitions()

    for path in _definition_files(root / SEGMENTS_DIR):
        try:
            loaded.segments.append(Segment.from_dict(read_definition_file(path)))
            logger.debug("Loaded predefined segment from %s", path)
        except Exception as e:
            logger.warning("Failed to load segment %s: %s", path, e)
            loaded.errors.append(path)

    for path in _definition_files(root / SCORING_DIR):
        try:
            loaded.scorings.append(Scoring.from_dict(read_definition_file(path)))
            logger.debug("Loaded predefined scoring from %s", path)
        except Exception as e:
            logger.warning("Failed to load scoring %s: %s", path, e)
            loaded.errors.append(path)

    return loaded
