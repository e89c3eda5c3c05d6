"""Tests for the segmentation CLI."""

from __future__ import annotations

import json
import logging
import re

import pytest

from segmentation.__main__ import build_parser, main
from segmentation.models import Condition
from tests.conftest import EVENT_TYPE_CONDITION, age_over, in_segments, make_scoring, make_segment, past_event


@pytest.fixture
def definitions_dir(tmp_path):
    """Directory with two segments, one referencing the other, and a scoring."""
    segments = tmp_path / "segments"
    scoring = tmp_path / "scoring"
    segments.mkdir()
    scoring.mkdir()

    (segments / "adults.json").write_text(json.dumps(make_segment("adults", age_over(17)).to_dict()))
    (segments / "viewers.json").write_text(
        json.dumps(make_segment("viewers", past_event("view")).to_dict())
    )
    (segments / "adult-viewers.json").write_text(
        json.dumps(make_segment("adult-viewers", in_segments("adults", "viewers")).to_dict())
    )
    scored = Condition("scoringCondition", {"scoringPlanId": "engagement"})
    (scoring / "engagement.json").write_text(json.dumps(make_scoring("engagement", [(age_over(1), 1)]).to_dict()))
    (scoring / "loyal.json").write_text(json.dumps(make_scoring("loyal", [(scored, 2)]).to_dict()))
    return tmp_path


def run(capsys, *argv: str) -> dict:
    assert main(list(argv)) == 0
    return json.loads(capsys.readouterr().out)


class TestParser:
    """Tests for argument parsing."""

    def test_rule_keys_event_types_repeatable(self):
        args = build_parser().parse_args(["rule-keys", "defs", "--event-type", "a", "--event-type", "b"])
        assert args.event_types == ["a", "b"]

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_log_level_normalised(self):
        args = build_parser().parse_args(["--log-level", "debug", "check", "defs"])
        assert args.log_level == "DEBUG"

    def test_log_level_rejects_unknown(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--log-level", "chatty", "check", "defs"])


class TestCommands:
    """Tests for the CLI commands."""

    def test_check(self, capsys, definitions_dir):
        result = run(capsys, "check", str(definitions_dir))

        assert result["segments"] == 3
        assert result["scorings"] == 2
        assert result["errors"] == []
        assert "query_timestamp" in result

    def test_dependents_of_segment(self, capsys, definitions_dir):
        result = run(capsys, "dependents", str(definitions_dir), "adults")

        assert result["kind"] == "segment"
        assert [m["id"] for m in result["segments"]] == ["adult-viewers"]
        assert result["scorings"] == []

    def test_dependents_of_scoring(self, capsys, definitions_dir):
        result = run(capsys, "dependents", str(definitions_dir), "engagement", "--scoring")

        assert result["kind"] == "scoring"
        assert result["segments"] == []
        assert [m["id"] for m in result["scorings"]] == ["loyal"]

    def test_rule_keys(self, capsys, definitions_dir):
        result = run(capsys, "rule-keys", str(definitions_dir), "--event-type", EVENT_TYPE_CONDITION)
        keys = {d["id"]: d["keys"] for d in result["definitions"]}

        assert result["event_types"] == [EVENT_TYPE_CONDITION]
        assert len(keys["viewers"]) == 1
        assert re.fullmatch(r"eventTriggered[0-9a-f]{32}", keys["viewers"][0])
        assert keys["adults"] == []
        assert keys["engagement"] == []

    def test_rule_keys_without_event_types(self, capsys, definitions_dir):
        result = run(capsys, "rule-keys", str(definitions_dir))
        assert all(d["keys"] == [] for d in result["definitions"])

    def test_log_level_applied(self, capsys, definitions_dir):
        """--log-level overrides the configured level for the run."""
        run(capsys, "--log-level", "debug", "check", str(definitions_dir))
        assert logging.getLogger("segmentation").level == logging.DEBUG
