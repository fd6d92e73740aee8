"""
Loading scenario definitions from JSON files.

A scenario file holds either a list of scenarios or an object
``{"flow": "...", "scenarios": [...]}`` whose flow is inherited by every
scenario that does not name its own.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from healrun.core.types import ExpectedOutcome, TestScenario
from healrun.error_handling.exceptions import ScenarioValidationError
from healrun.monitoring.logger import get_logger

logger = get_logger(__name__)

SCENARIO_GLOB = "*.scenario.json"


def find_noop_assertions(scenario: TestScenario) -> List[ExpectedOutcome]:
    """Expected outcomes that configure no checker and would always pass."""
    return [
        outcome for outcome in scenario.expected
        if not outcome.assertion.configured_fields()
    ]


def _format_validation_error(exc: ValidationError) -> List[str]:
    rules = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        rules.append(f"{location}: {error['msg']}" if location else error["msg"])
    return rules


def parse_scenarios(data: Union[Dict[str, Any], List[Any]], source: str = "<memory>") -> List[TestScenario]:
    """
    Build scenarios from decoded JSON.

    Args:
        data: Scenario list or flow object
        source: Where the data came from, for error messages

    Returns:
        Validated scenarios

    Raises:
        ScenarioValidationError: If the shape or any scenario is invalid
    """
    flow: Optional[str] = None
    if isinstance(data, dict):
        flow = data.get("flow")
        raw_scenarios = data.get("scenarios")
        if raw_scenarios is None:
            raw_scenarios = [data]
            flow = None
    else:
        raw_scenarios = data

    if not isinstance(raw_scenarios, list):
        raise ScenarioValidationError(
            f"{source}: 'scenarios' must be a list", source=source
        )

    scenarios: List[TestScenario] = []
    for index, raw in enumerate(raw_scenarios):
        if not isinstance(raw, dict):
            raise ScenarioValidationError(
                f"{source}: scenario #{index} is not an object", source=source
            )
        if flow and "flow" not in raw:
            raw = {**raw, "flow": flow}
        try:
            scenario = TestScenario.model_validate(raw)
        except ValidationError as exc:
            name = raw.get("name", f"#{index}")
            rules = _format_validation_error(exc)
            raise ScenarioValidationError(
                f"{source}: invalid scenario '{name}': {'; '.join(rules)}",
                source=source,
                failed_rules=rules,
                cause=exc,
            ) from exc

        for outcome in find_noop_assertions(scenario):
            logger.warning(
                f"Expected outcome '{outcome.description or outcome.type.value}' "
                f"in '{scenario.name}' configures no checks and always passes",
                extra={"scenario": scenario.name, "source": source},
            )
        scenarios.append(scenario)

    return scenarios


def load_scenario_file(path: Union[str, Path]) -> List[TestScenario]:
    """Load and validate all scenarios in one JSON file."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ScenarioValidationError(
            f"{path}: invalid JSON: {exc.msg} (line {exc.lineno})",
            source=str(path),
            cause=exc,
        ) from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ScenarioValidationError(
            f"{path}: cannot read scenario file: {exc}",
            source=str(path),
            cause=exc,
        ) from exc

    scenarios = parse_scenarios(data, source=str(path))
    logger.debug(f"Loaded {len(scenarios)} scenario(s) from {path}")
    return scenarios


def load_scenarios(
    directory: Union[str, Path], flows: Optional[Sequence[str]] = None
) -> List[TestScenario]:
    """
    Load every ``*.scenario.json`` file under a directory.

    Args:
        directory: Directory to search recursively
        flows: Only keep these flows, in this order (all flows if empty)

    Returns:
        Scenarios ordered by flow, then by file name and position
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ScenarioValidationError(
            f"Scenario directory not found: {directory}", source=str(directory)
        )

    scenarios: List[TestScenario] = []
    for path in sorted(directory.rglob(SCENARIO_GLOB)):
        scenarios.extend(load_scenario_file(path))

    names = [s.name for s in scenarios]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ScenarioValidationError(
            f"Duplicate scenario names: {', '.join(duplicates)}",
            source=str(directory),
            failed_rules=[f"duplicate name: {n}" for n in duplicates],
        )

    if flows:
        order = {flow: position for position, flow in enumerate(flows)}
        scenarios = [s for s in scenarios if s.flow in order]
        scenarios.sort(key=lambda s: order[s.flow])

    logger.info(
        f"Loaded {len(scenarios)} scenario(s) from {directory}",
        extra={"flows": list(flows) if flows else None},
    )
    return scenarios
