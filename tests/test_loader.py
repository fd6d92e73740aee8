"""
Unit tests for scenario file loading.
"""

import json

import pytest

from healrun.core.types import StepAction
from healrun.error_handling.exceptions import ScenarioValidationError
from healrun.scenarios.loader import (
    find_noop_assertions,
    load_scenario_file,
    load_scenarios,
    parse_scenarios,
)

LOGIN = {
    "name": "login succeeds",
    "steps": [
        {"id": "open", "action": "navigate", "value": "/login"},
        {"id": "submit", "action": "click", "target": "Sign in", "captureState": True},
    ],
    "expected": [{"type": "navigation", "assertion": {"urlContains": "/dashboard"}}],
}


def write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestParseScenarios:
    """Test the accepted file shapes."""

    def test_flow_object_inherited(self):
        scenarios = parse_scenarios({
            "flow": "auth",
            "scenarios": [LOGIN, {**LOGIN, "name": "other", "flow": "billing"}],
        })

        assert [s.flow for s in scenarios] == ["auth", "billing"]
        assert scenarios[0].steps[1].capture_state is True
        assert scenarios[0].steps[0].action == StepAction.NAVIGATE

    def test_list_and_single_object(self):
        assert parse_scenarios([LOGIN])[0].flow == "default"
        assert parse_scenarios(LOGIN)[0].name == "login succeeds"

    def test_invalid_scenario_lists_rules(self):
        bad = {**LOGIN, "steps": [{"id": "open", "action": "teleport"}]}

        with pytest.raises(ScenarioValidationError) as exc_info:
            parse_scenarios([bad], source="auth.scenario.json")

        error = exc_info.value
        assert error.source == "auth.scenario.json"
        assert "invalid scenario 'login succeeds'" in error.message
        assert any(rule.startswith("steps.0.action") for rule in error.failed_rules)

    def test_duplicate_step_ids_rejected(self):
        bad = {**LOGIN, "steps": [LOGIN["steps"][0], LOGIN["steps"][0]]}

        with pytest.raises(ScenarioValidationError, match="Duplicate step id 'open'"):
            parse_scenarios([bad])

    def test_scenarios_must_be_list(self):
        with pytest.raises(ScenarioValidationError, match="must be a list"):
            parse_scenarios({"flow": "auth", "scenarios": {"name": "x"}})

    def test_non_object_entry(self):
        with pytest.raises(ScenarioValidationError, match="is not an object"):
            parse_scenarios(["login"])

    def test_noop_assertions_found(self):
        scenario = parse_scenarios({
            **LOGIN,
            "expected": [
                {"type": "ui_state", "description": "nothing configured"},
                {"type": "navigation", "assertion": {"urlContains": "/dashboard"}},
            ],
        })[0]

        assert [o.description for o in find_noop_assertions(scenario)] == ["nothing configured"]


class TestLoadFiles:
    """Test loading from disk."""

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.scenario.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ScenarioValidationError, match="invalid JSON"):
            load_scenario_file(path)

    def test_invalid_utf8(self, tmp_path):
        path = tmp_path / "latin1.scenario.json"
        path.write_bytes(b'{"name": "caf\xe9"}')

        with pytest.raises(ScenarioValidationError, match="cannot read scenario file") as exc_info:
            load_scenario_file(path)

        assert isinstance(exc_info.value.cause, UnicodeDecodeError)

    def test_unreadable_path(self, tmp_path):
        path = tmp_path / "folder.scenario.json"
        path.mkdir()

        with pytest.raises(ScenarioValidationError, match="cannot read scenario file") as exc_info:
            load_scenario_file(path)

        assert isinstance(exc_info.value.cause, OSError)

    def test_directory_recursive_and_sorted(self, tmp_path):
        write(tmp_path / "b.scenario.json", {"flow": "courses", "scenarios": [{**LOGIN, "name": "create course"}]})
        write(tmp_path / "nested" / "a.scenario.json", {"flow": "auth", "scenarios": [LOGIN]})
        write(tmp_path / "notes.json", [{**LOGIN, "name": "ignored"}])

        scenarios = load_scenarios(tmp_path)

        assert [s.name for s in scenarios] == ["create course", "login succeeds"]

    def test_flow_filter_orders(self, tmp_path):
        write(tmp_path / "a.scenario.json", {"flow": "auth", "scenarios": [LOGIN]})
        write(tmp_path / "b.scenario.json", {"flow": "courses", "scenarios": [{**LOGIN, "name": "create course"}]})
        write(tmp_path / "c.scenario.json", {"flow": "billing", "scenarios": [{**LOGIN, "name": "pay"}]})

        scenarios = load_scenarios(tmp_path, flows=["courses", "auth"])

        assert [s.flow for s in scenarios] == ["courses", "auth"]

    def test_duplicate_names(self, tmp_path):
        write(tmp_path / "a.scenario.json", [LOGIN])
        write(tmp_path / "b.scenario.json", [LOGIN])

        with pytest.raises(ScenarioValidationError) as exc_info:
            load_scenarios(tmp_path)

        assert exc_info.value.failed_rules == ["duplicate name: login succeeds"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ScenarioValidationError, match="not found"):
            load_scenarios(tmp_path / "missing")
