"""
Core data model and interfaces.
"""

from healrun.core.interfaces import BrowserDriver, BrowserSessionFactory
from healrun.core.types import (
    ActualState,
    AppliedFix,
    AssertionConfig,
    CapturedLogs,
    ComparisonResult,
    ConsoleMessage,
    DetectedError,
    ExpectedOutcome,
    NetworkRequest,
    ScenarioStatus,
    StepAction,
    StepResult,
    StepStatus,
    TestReport,
    TestResult,
    TestScenario,
    TestStep,
)

__all__ = [
    "BrowserDriver",
    "BrowserSessionFactory",
    "ActualState",
    "AppliedFix",
    "AssertionConfig",
    "CapturedLogs",
    "ComparisonResult",
    "ConsoleMessage",
    "DetectedError",
    "ExpectedOutcome",
    "NetworkRequest",
    "ScenarioStatus",
    "StepAction",
    "StepResult",
    "StepStatus",
    "TestReport",
    "TestResult",
    "TestScenario",
    "TestStep",
]
