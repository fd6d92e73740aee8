"""
Scenario execution. ``ScenarioOrchestrator`` is imported from
``healrun.orchestration.orchestrator``.
"""

from healrun.orchestration.context import TestContext, acquire_context
from healrun.orchestration.step_runner import StepRunner, is_step_retryable

__all__ = [
    "TestContext",
    "acquire_context",
    "StepRunner",
    "is_step_retryable",
]
