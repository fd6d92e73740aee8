"""Scenario definitions on disk."""

from healrun.scenarios.loader import load_scenario_file, load_scenarios, parse_scenarios

__all__ = ["load_scenario_file", "load_scenarios", "parse_scenarios"]
