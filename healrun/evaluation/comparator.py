"""
Comparison of expected outcomes against observed post-execution state.

Every assertion field has its own checker. An outcome passes only if every
configured checker passes; an outcome with nothing configured passes
vacuously. Element checks work on the textual page snapshot, never on a
live browser handle. All functions here are pure.
"""

import re
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from healrun.core.types import (
    ActualState,
    AssertionConfig,
    CapturedLogs,
    ComparisonResult,
    ConsoleLevel,
    Difference,
    ElementCountAssertion,
    ElementTextAssertion,
    ExpectedOutcome,
)

UrlResolver = Callable[[str], str]

BRACKET_SELECTOR = re.compile(r"^\[([\w:-]+)(?:\s*[~|^$*]?=\s*[\"']?([^\"'\]]*)[\"']?)?\]$")
HAS_TEXT_SELECTOR = re.compile(r":has-text\(\s*[\"']?([^\"')]+?)[\"']?\s*\)")
KEY_VALUE_SELECTOR = re.compile(r"\b(?:role|aria-[\w-]+)\s*=\s*[\"']?([^\"'\]]+)[\"']?")


def build_url(path: str, base_url: Optional[str] = None) -> str:
    """Resolve a relative path against the base URL. Absolute URLs pass through."""
    if not base_url or path.startswith(("http://", "https://")):
        return path
    return urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def selector_needle(selector: str) -> str:
    """
    Text to search the snapshot for, derived from a selector's shape.

    ``[data-testid="x"]`` gives ``x``, ``.card`` gives ``card``, ``#main``
    gives ``main``, ``role=button`` gives ``button``, ``a:has-text("Go")``
    gives ``Go``. Anything else is searched for as-is.
    """
    selector = selector.strip()

    bracket = BRACKET_SELECTOR.match(selector)
    if bracket:
        return bracket.group(2) or bracket.group(1)

    if selector.startswith((".", "#")) and len(selector) > 1:
        return selector[1:]

    has_text = HAS_TEXT_SELECTOR.search(selector)
    if has_text:
        return has_text.group(1)

    key_value = KEY_VALUE_SELECTOR.search(selector)
    if key_value:
        return key_value.group(1).strip()

    return selector


def snapshot_contains_element(snapshot: str, selector: str) -> bool:
    """Case-insensitive search for a selector's needle in the snapshot."""
    needle = selector_needle(selector)
    if not needle:
        return False
    return needle.lower() in snapshot.lower()


def count_elements(snapshot: str, selector: str) -> int:
    """Occurrences of a selector's needle in the snapshot."""
    needle = selector_needle(selector)
    if not needle:
        return 0
    return len(re.findall(re.escape(needle), snapshot, re.IGNORECASE))


def _text_matches(snapshot: str, config: ElementTextAssertion) -> Tuple[bool, bool]:
    """Return (element found, text matched)."""
    if not snapshot_contains_element(snapshot, config.selector):
        return False, False

    if config.contains:
        return True, config.text.lower() in snapshot.lower()

    needle = selector_needle(config.selector).lower()
    for line in snapshot.splitlines():
        if needle in line.lower() and config.text in line:
            return True, True
    return True, config.text in snapshot


def check_url(url: str, assertion: AssertionConfig, resolve_url: Optional[UrlResolver] = None) -> List[Difference]:
    differences: List[Difference] = []

    if assertion.url_equals is not None:
        expected = assertion.url_equals
        resolved = resolve_url(expected) if resolve_url else expected
        if url.rstrip("/") not in (expected.rstrip("/"), resolved.rstrip("/")):
            differences.append(Difference(
                check="urlEquals",
                expected=expected,
                actual=url,
                message=f'URL should equal "{expected}" but was "{url}"',
            ))

    if assertion.url_contains is not None and assertion.url_contains not in url:
        differences.append(Difference(
            check="urlContains",
            expected=f'contains "{assertion.url_contains}"',
            actual=url,
            message=f'URL should contain "{assertion.url_contains}" but was "{url}"',
        ))

    if assertion.url_matches is not None:
        try:
            matched = re.search(assertion.url_matches, url) is not None
            problem = None
        except re.error as exc:
            matched = False
            problem = f"invalid pattern: {exc}"
        if not matched:
            differences.append(Difference(
                check="urlMatches",
                expected=f"matches /{assertion.url_matches}/",
                actual=url,
                message=problem or f'URL should match pattern "{assertion.url_matches}" but was "{url}"',
            ))

    return differences


def check_elements(snapshot: str, assertion: AssertionConfig) -> List[Difference]:
    differences: List[Difference] = []

    if assertion.element_exists is not None and not snapshot_contains_element(snapshot, assertion.element_exists):
        differences.append(Difference(
            check="elementExists",
            expected=f'element "{assertion.element_exists}" exists',
            actual="not found",
            message=f'Element "{assertion.element_exists}" should exist but was not found',
        ))

    if assertion.element_not_exists is not None and snapshot_contains_element(snapshot, assertion.element_not_exists):
        differences.append(Difference(
            check="elementNotExists",
            expected=f'element "{assertion.element_not_exists}" does not exist',
            actual="found",
            message=f'Element "{assertion.element_not_exists}" should not exist but was found',
        ))

    if assertion.element_visible is not None and not snapshot_contains_element(snapshot, assertion.element_visible):
        differences.append(Difference(
            check="elementVisible",
            expected=f'element "{assertion.element_visible}" is visible',
            actual="not visible",
            message=f'Element "{assertion.element_visible}" should be visible but was not',
        ))

    if assertion.element_text is not None:
        differences.extend(check_element_text(snapshot, assertion.element_text))

    if assertion.element_count is not None:
        differences.extend(check_element_count(snapshot, assertion.element_count))

    return differences


def check_element_text(snapshot: str, config: ElementTextAssertion) -> List[Difference]:
    found, matched = _text_matches(snapshot, config)
    if matched:
        return []
    verb = "contain" if config.contains else "have"
    return [Difference(
        check="elementText",
        expected=f'element "{config.selector}" {verb}s text "{config.text}"',
        actual="element found but text mismatch" if found else "element not found",
        message=f'Element "{config.selector}" should {verb} text "{config.text}"',
    )]


def check_element_count(snapshot: str, config: ElementCountAssertion) -> List[Difference]:
    actual = count_elements(snapshot, config.selector)
    if actual == config.count:
        return []
    return [Difference(
        check="elementCount",
        expected=config.count,
        actual=actual,
        message=f'Expected {config.count} elements matching "{config.selector}" but found {actual}',
    )]


def check_network(logs: CapturedLogs, assertion: AssertionConfig) -> List[Difference]:
    differences: List[Difference] = []

    if assertion.api_called is not None:
        endpoint = assertion.api_called.endpoint
        method = assertion.api_called.method
        called = any(
            endpoint in r.url and (not method or r.method == method.upper())
            for r in logs.network
        )
        if not called:
            differences.append(Difference(
                check="apiCalled",
                expected=f"{(method or 'ANY').upper()} {endpoint} was called",
                actual="not called",
                message=f"API {endpoint} should have been called but was not",
            ))

    if assertion.api_succeeded is not None:
        endpoint = assertion.api_succeeded.endpoint
        low, high = assertion.api_succeeded.status_range
        requests = [r for r in logs.network if endpoint in r.url]
        if not requests:
            differences.append(Difference(
                check="apiSucceeded",
                expected=f"{endpoint} called with status {low}-{high}",
                actual="not called",
                message=f"API {endpoint} should have succeeded but was not called",
            ))
        elif not any(
            not r.failed and r.status is not None and low <= r.status <= high
            for r in requests
        ):
            statuses = ", ".join("failed" if r.failed else str(r.status) for r in requests)
            differences.append(Difference(
                check="apiSucceeded",
                expected=f"status {low}-{high}",
                actual=f"status {statuses}",
                message=f"API {endpoint} should have status {low}-{high} but got {statuses}",
            ))

    if assertion.api_failed is not None:
        endpoint = assertion.api_failed.endpoint
        expected_status = assertion.api_failed.expected_status
        requests = [r for r in logs.network if endpoint in r.url]
        if not requests:
            differences.append(Difference(
                check="apiFailed",
                expected=f"{endpoint} called and failed",
                actual="not called",
                message=f"API {endpoint} should have been called (and failed) but was not",
            ))
        else:
            if expected_status is not None:
                failed = any(r.status == expected_status for r in requests)
            else:
                failed = any(
                    r.failed or (r.status is not None and r.status >= 400)
                    for r in requests
                )
            if not failed:
                statuses = ", ".join("failed" if r.failed else str(r.status) for r in requests)
                differences.append(Difference(
                    check="apiFailed",
                    expected=f"status {expected_status}" if expected_status else "failed request",
                    actual=f"status {statuses}",
                    message=f"API {endpoint} should have failed but got {statuses}",
                ))

    return differences


def check_console(logs: CapturedLogs, assertion: AssertionConfig) -> List[Difference]:
    differences: List[Difference] = []

    if assertion.no_console_errors:
        errors = [m for m in logs.console if m.level == ConsoleLevel.ERROR]
        if errors:
            differences.append(Difference(
                check="noConsoleErrors",
                expected="no console errors",
                actual=f"{len(errors)} errors",
                message=f"Expected no console errors but found {len(errors)}: {errors[0].message[:100]}",
            ))

    if assertion.console_contains is not None:
        needle = assertion.console_contains.lower()
        if not any(needle in m.message.lower() for m in logs.console):
            differences.append(Difference(
                check="consoleContains",
                expected=f'contains "{assertion.console_contains}"',
                actual="not found",
                message=f'Console should contain "{assertion.console_contains}" but did not',
            ))

    if assertion.console_not_contains is not None:
        needle = assertion.console_not_contains.lower()
        if any(needle in m.message.lower() for m in logs.console):
            differences.append(Difference(
                check="consoleNotContains",
                expected=f'does not contain "{assertion.console_not_contains}"',
                actual="found",
                message=f'Console should not contain "{assertion.console_not_contains}" but did',
            ))

    return differences


def compare(
    expected: ExpectedOutcome,
    actual: ActualState,
    resolve_url: Optional[UrlResolver] = None,
) -> ComparisonResult:
    """
    Evaluate one expected outcome against the observed state.

    Args:
        expected: Outcome to check
        actual: Observed URL, snapshot and logs
        resolve_url: Resolves relative paths for URL equality checks

    Returns:
        ComparisonResult with one Difference per failed check
    """
    assertion = expected.assertion
    differences: List[Difference] = []
    differences.extend(check_url(actual.url, assertion, resolve_url))
    differences.extend(check_elements(actual.snapshot, assertion))
    differences.extend(check_network(actual.logs, assertion))
    differences.extend(check_console(actual.logs, assertion))

    label = expected.description or expected.type.value
    passed = not differences
    if passed:
        message = f"Assertion passed: {label}"
    else:
        message = "Assertion failed: " + "; ".join(d.message for d in differences)

    return ComparisonResult(
        outcome_type=expected.type,
        description=expected.description,
        passed=passed,
        checks=len(assertion.configured_fields()),
        differences=differences,
        message=message,
    )


def compare_all(
    outcomes: Sequence[ExpectedOutcome],
    actual: ActualState,
    resolve_url: Optional[UrlResolver] = None,
) -> Tuple[bool, List[ComparisonResult]]:
    """Compare every outcome; passes iff all do."""
    results = [compare(outcome, actual, resolve_url) for outcome in outcomes]
    return all(r.passed for r in results), results


def summarize_comparison(results: Sequence[ComparisonResult]) -> str:
    """Deterministic, order-preserving text report of comparison results."""
    passed = sum(1 for r in results if r.passed)
    lines = [f"Comparison: {passed}/{len(results)} passed"]
    for result in results:
        mark = "✓" if result.passed else "✗"
        label = result.description or result.outcome_type.value
        lines.append(f"  {mark} {label}")
        for difference in result.differences:
            lines.append(f"      - {difference.message}")
    return "\n".join(lines)
