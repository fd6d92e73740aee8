"""
Scenario orchestration: setup, steps, observation, comparison, remediation
and teardown for each scenario, plus concurrent execution of many.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Set

from healrun.config.settings import Settings, get_settings
from healrun.core.interfaces import BrowserSessionFactory
from healrun.core.types import (
    ActualState,
    CapturedLogs,
    CreatedResource,
    DetectedError,
    ErrorSeverity,
    ScenarioStatus,
    StepAction,
    StepResult,
    StepStatus,
    TestReport,
    TestResult,
    TestScenario,
    TestStep,
    create_empty_logs,
    merge_logs,
    utc_now,
)
from healrun.error_handling.auto_fix import AutoFixEngine, FixContext
from healrun.error_handling.exceptions import DriverError
from healrun.evaluation.comparator import compare_all, summarize_comparison
from healrun.evaluation.error_detection import detect_errors, error_signature
from healrun.monitoring.logger import get_logger, log_test_event
from healrun.monitoring.reporter import generate_report
from healrun.orchestration.context import TestContext, acquire_context
from healrun.orchestration.step_runner import StepRunner, bounded

logger = get_logger(__name__)

SETUP = "setup"
MAIN = "main"
FINAL = "final"


@dataclass
class LogSegment:
    """Logs from one capture point, attributed to the step that produced them."""

    step_id: Optional[str]
    logs: CapturedLogs
    phase: str = MAIN
    superseded: bool = False
    detected: bool = False


def build_login_steps(settings: Settings) -> List[TestStep]:
    """Setup steps that sign in with the configured test account."""
    steps = [
        TestStep(id="login-navigate", action=StepAction.NAVIGATE, value=settings.login_path),
        TestStep(
            id="login-email",
            action=StepAction.TYPE,
            target=settings.login_email_field,
            value="{testEmail}",
        ),
        TestStep(
            id="login-password",
            action=StepAction.TYPE,
            target=settings.login_password_field,
            value="{testPassword}",
        ),
        TestStep(id="login-submit", action=StepAction.CLICK, target=settings.login_submit),
    ]
    if settings.login_success_url:
        steps.append(TestStep(
            id="login-wait",
            action=StepAction.WAIT_FOR,
            value=f"urlContains:{settings.login_success_url}",
            timeout=settings.navigation_timeout_ms,
        ))
    return steps


def materials_used(scenarios: Sequence[TestScenario]) -> List[str]:
    """Files referenced by upload steps, in first-use order."""
    seen: List[str] = []
    for scenario in scenarios:
        steps = list(scenario.steps)
        if scenario.setup:
            steps.extend(scenario.setup.steps)
        for step in steps:
            if step.action == StepAction.UPLOAD and step.value and step.value not in seen:
                seen.append(step.value)
    return seen


class _ScenarioRun:
    """Mutable state of one scenario execution."""

    def __init__(
        self,
        scenario: TestScenario,
        ctx: TestContext,
        result: TestResult,
        runner: StepRunner,
        engine: AutoFixEngine,
        settings: Settings,
    ) -> None:
        self.scenario = scenario
        self.ctx = ctx
        self.result = result
        self.runner = runner
        self.engine = engine
        self.settings = settings
        self.segments: List[LogSegment] = []
        self.step_results: List[Optional[StepResult]] = [None] * len(scenario.steps)
        self.abort_index: Optional[int] = None
        self.aborted: Set[int] = set()
        self.resume_from: Optional[int] = None
        self.last_step_id: Optional[str] = None
        self.snapshot = ""
        self.url = ""

    @property
    def log_extra(self) -> Dict[str, str]:
        return {"scenario": self.scenario.name, "flow": self.scenario.flow}

    def add_segment(
        self, step_id: Optional[str], logs: Optional[CapturedLogs], phase: str = MAIN,
        superseded: bool = False,
    ) -> None:
        if logs is not None and not logs.is_empty():
            self.segments.append(LogSegment(step_id, logs, phase, superseded))

    async def drain(self, step_id: Optional[str], phase: str = MAIN) -> None:
        """Capture whatever the session buffered and attribute it to ``step_id``."""
        try:
            logs = await self.runner.capture(self.ctx)
        except DriverError as exc:
            logger.warning(f"Log capture failed: {exc.message}", extra=self.log_extra)
            return
        self.add_segment(step_id, logs, phase)

    def current_logs(self) -> CapturedLogs:
        """Non-superseded logs of the step phase, used for comparison."""
        return merge_logs(*[
            s.logs for s in self.segments
            if not s.superseded and s.phase != SETUP
        ])

    # Setup

    async def run_setup(self) -> bool:
        setup = self.scenario.setup
        if setup is None:
            return True

        steps: List[TestStep] = []
        if setup.login:
            steps.extend(build_login_steps(self.settings))
        if setup.start_path:
            steps.append(TestStep(id="setup-start", action=StepAction.NAVIGATE, value=setup.start_path))
        steps.extend(setup.steps)

        ok = True
        for step in steps:
            step_result = await self.runner.run_step(step, self.ctx)
            self.result.setup_steps.append(step_result)
            if step_result.status in (StepStatus.FAIL, StepStatus.ERROR) and not step.optional:
                self.result.error_message = (
                    f"Setup step '{step.id}' failed: {step_result.error_message}"
                )
                ok = False
                break

        await self.drain(None, SETUP)

        if ok:
            ok = await self._capture_resources()
        return ok

    async def _capture_resources(self) -> bool:
        setup = self.scenario.setup
        for capture in setup.captures:
            try:
                url = await bounded(
                    self.ctx.driver.current_url(), self.settings.action_timeout_ms, "current_url"
                )
            except DriverError as exc:
                self.result.error_message = f"Could not capture {capture.kind} id: {exc.message}"
                return False
            match = re.search(capture.url_pattern, url)
            if match is None:
                self.result.error_message = (
                    f"Could not capture {capture.kind} id from URL {url!r}"
                )
                return False
            resource = CreatedResource(
                kind=capture.kind,
                id=match.group(1) if match.groups() else match.group(0),
                store_key=capture.store_as,
                cleanup_steps=capture.cleanup_steps,
            )
            self.ctx.register_resource(resource)
            self.result.created_resources.append(resource)
            logger.info(
                f"Registered {resource.kind} {resource.id} for cleanup",
                extra=self.log_extra,
            )
        return True

    # Steps

    async def execute_step(self, step: TestStep) -> StepResult:
        if step.capture_state:
            await self.drain(self.last_step_id)
        step_result = await self.runner.run_step(step, self.ctx)
        if step_result.status != StepStatus.SKIP:
            self.last_step_id = step.id
        self.add_segment(step.id, step_result.logs)
        if step_result.screenshot:
            self.result.screenshots.append(step_result.screenshot)
        return step_result

    def _aborted_result(self, step: TestStep) -> StepResult:
        aborted_by = self.scenario.steps[self.abort_index].id
        skipped = StepResult(step_id=step.id, action=step.action)
        skipped.skip_reason = f"aborted after step '{aborted_by}' failed"
        skipped.transition_to(StepStatus.SKIP)
        return skipped

    async def run_steps(self, start: int = 0) -> None:
        """Run steps from ``start`` with fail-fast; aborted steps get skip results."""
        for index in range(start, len(self.scenario.steps)):
            step = self.scenario.steps[index]
            if self.step_results[index] is not None and index not in self.aborted:
                continue

            if self.abort_index is not None and not step.run_on_teardown:
                self.step_results[index] = self._aborted_result(step)
                self.aborted.add(index)
                continue

            self.aborted.discard(index)
            step_result = await self.execute_step(step)
            self.step_results[index] = step_result
            if (
                self.abort_index is None
                and step_result.status in (StepStatus.FAIL, StepStatus.ERROR)
                and not step.optional
            ):
                self.abort_index = index
                logger.warning(
                    f"Aborting remaining steps after '{step.id}' failed",
                    extra=self.log_extra,
                )

    # Observation

    async def observe(self) -> ActualState:
        """Final capture of logs, URL and snapshot."""
        await self.drain(self.last_step_id, FINAL)
        try:
            timeout_ms = self.settings.action_timeout_ms
            self.url = await bounded(self.ctx.driver.current_url(), timeout_ms, "current_url")
            self.snapshot = await bounded(self.ctx.driver.snapshot(), timeout_ms, "snapshot")
            self.ctx.last_snapshot = self.snapshot
        except DriverError as exc:
            logger.warning(f"Final page observation failed: {exc.message}", extra=self.log_extra)
            self.snapshot = self.ctx.last_snapshot or ""

        return ActualState(url=self.url, snapshot=self.snapshot, logs=self.current_logs())

    def detect_new_errors(self) -> List[DetectedError]:
        found: List[DetectedError] = []
        for segment in self.segments:
            if segment.detected or segment.superseded:
                continue
            segment.detected = True
            found.extend(detect_errors(segment.logs, segment.step_id))
        self.result.errors.extend(found)
        return found

    def compare(self, actual: ActualState) -> bool:
        passed, comparisons = compare_all(
            self.scenario.expected, actual, resolve_url=self.ctx.resolve_url
        )
        self.result.comparisons = comparisons
        if comparisons:
            logger.debug(summarize_comparison(comparisons), extra=self.log_extra)
        return passed

    def compute_status(self, comparisons_passed: bool) -> ScenarioStatus:
        results = [r for r in self.step_results if r is not None]
        if any(r.status == StepStatus.ERROR for r in results):
            return ScenarioStatus.ERROR
        steps_ok = all(
            r.status in (StepStatus.PASS, StepStatus.SKIP) or step.optional
            for step, r in zip(self.scenario.steps, self.step_results)
            if r is not None
        ) and self.abort_index is None
        return ScenarioStatus.PASS if steps_ok and comparisons_passed else ScenarioStatus.FAIL

    # Remediation

    def _fix_candidates(self) -> List[DetectedError]:
        candidates: List[DetectedError] = []
        seen = set()
        for error in self.result.errors:
            if not (error.is_retryable or error.severity == ErrorSeverity.HIGH):
                continue
            signature = error_signature(error)
            if signature in seen:
                continue
            seen.add(signature)
            candidates.append(error)
        return candidates

    def _step_index(self, step_id: Optional[str]) -> Optional[int]:
        for index, step in enumerate(self.scenario.steps):
            if step.id == step_id:
                return index
        return None

    def _make_retry(self, step: TestStep, attempts: List[StepResult]) -> Callable[[], Awaitable[StepResult]]:
        previous = self.step_results[self._step_index(step.id)]
        base_attempt = previous.attempt if previous else 1

        async def retry() -> StepResult:
            await self.drain(None)
            replay = await self.runner.run_step(step, self.ctx, force_capture=True)
            replay.attempt = base_attempt + len(attempts) + 1
            attempts.append(replay)
            return replay

        return retry

    async def remediate(self) -> bool:
        """
        Try one fix per error signature. Returns True if any replay succeeded.
        """
        any_success = False
        for error in self._fix_candidates():
            index = self._step_index(error.step_id)
            step = self.scenario.steps[index] if index is not None else None
            attempts: List[StepResult] = []
            fix_context = FixContext(
                scenario=self.scenario.name,
                step=step,
                retry_step=self._make_retry(step, attempts) if step is not None else None,
            )
            fix = await self.engine.attempt_fix(error, fix_context)
            self.result.fixes.append(fix)

            if fix.success and fix.retried_step_id is not None and fix_context.last_result is not None:
                self._accept_replay(index, fix_context.last_result, attempts)
                any_success = True
            else:
                for replay in attempts:
                    self.add_segment(step.id, replay.logs, superseded=True)
                    if replay.screenshot:
                        self.result.screenshots.append(replay.screenshot)

        if any_success and self.abort_index is None and self.resume_from is not None:
            # Steps aborted behind a now-passing step get their turn.
            start, self.resume_from = self.resume_from, None
            await self.run_steps(start=start)
        return any_success

    def _accept_replay(self, index: int, replay: StepResult, attempts: List[StepResult]) -> None:
        step = self.scenario.steps[index]
        for segment in self.segments:
            if segment.step_id == step.id:
                segment.superseded = True
        for earlier in attempts[:-1]:
            self.add_segment(step.id, earlier.logs, superseded=True)
        self.add_segment(step.id, replay.logs)
        self.step_results[index] = replay
        self.last_step_id = step.id
        if self.abort_index == index:
            self.abort_index = None
            self.resume_from = index + 1
            logger.info(f"Resuming after successful replay of '{step.id}'", extra=self.log_extra)

    # Lifecycle

    async def execute(self) -> None:
        if not await self.run_setup():
            for index, step in enumerate(self.scenario.steps):
                skipped = StepResult(step_id=step.id, action=step.action)
                skipped.skip_reason = "setup failed"
                skipped.transition_to(StepStatus.SKIP)
                self.step_results[index] = skipped
            self.detect_new_errors()
            setup_error = any(r.status == StepStatus.ERROR for r in self.result.setup_steps)
            self.result.status = ScenarioStatus.ERROR if setup_error else ScenarioStatus.FAIL
            await self._screenshot_on_failure()
            return

        await self.run_steps()
        actual = await self.observe()
        passed = self.compare(actual)
        self.detect_new_errors()
        status = self.compute_status(passed)

        if status == ScenarioStatus.FAIL and self.settings.auto_fix_enabled:
            if await self.remediate():
                actual = await self.observe()
                passed = self.compare(actual)
                self.detect_new_errors()
                status = self.compute_status(passed)

        self.result.status = status
        if status != ScenarioStatus.PASS:
            self._describe_failure()
            await self._screenshot_on_failure()

    def _describe_failure(self) -> None:
        if self.result.error_message:
            return
        for step_result in self.step_results:
            if step_result is not None and step_result.status in (StepStatus.FAIL, StepStatus.ERROR):
                self.result.error_message = (
                    f"Step '{step_result.step_id}' {step_result.status.value}: {step_result.error_message}"
                )
                return
        failed = [c for c in self.result.comparisons if not c.passed]
        if failed:
            self.result.error_message = failed[0].message

    async def _screenshot_on_failure(self) -> None:
        if not self.settings.screenshot_on_failure:
            return
        try:
            path = await self.runner.save_screenshot(self.ctx, "failure")
            self.result.screenshots.append(path)
        except DriverError as exc:
            logger.warning(f"Failure screenshot not taken: {exc.message}", extra=self.log_extra)

    async def teardown(self) -> None:
        """Run teardown steps, then resource cleanup newest first. Failures are recorded only."""
        steps: List[TestStep] = []
        if self.scenario.teardown:
            steps.extend(self.scenario.teardown.steps)
        for resource in reversed(self.ctx.resources):
            steps.extend(resource.cleanup_steps)

        for step in steps:
            try:
                step_result = await self.runner.run_step(step, self.ctx)
            except Exception as exc:
                logger.exception(f"Teardown step '{step.id}' raised", extra=self.log_extra)
                self.result.teardown_errors.append(f"{step.id}: {type(exc).__name__}: {exc}")
                continue
            self.result.teardown_steps.append(step_result)
            if step_result.status in (StepStatus.FAIL, StepStatus.ERROR):
                self.result.teardown_errors.append(f"{step.id}: {step_result.error_message}")

    def finish(self) -> None:
        """Copy accumulated state onto the result."""
        self.result.steps = [r for r in self.step_results if r is not None]
        self.result.logs = merge_logs(*[s.logs for s in self.segments]) if self.segments else create_empty_logs(self.url)
        self.result.final_url = self.url or None


class ScenarioOrchestrator:
    """Runs scenarios end to end against sessions from a factory."""

    def __init__(
        self,
        session_factory: BrowserSessionFactory,
        settings: Optional[Settings] = None,
        step_runner: Optional[StepRunner] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            session_factory: Opens one browser session per scenario
            settings: Orchestrator settings
            step_runner: Step runner (one is built from settings if omitted)
            sleep: Coroutine used for fixed waits and backoff
        """
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.step_runner = step_runner or StepRunner(self.settings, sleep=sleep)
        self._sleep = sleep

    def initial_store(self) -> Dict[str, str]:
        return {
            "testEmail": self.settings.test_email,
            "testPassword": self.settings.test_password,
            "baseUrl": self.settings.base_url,
        }

    async def run_scenario(self, scenario: TestScenario) -> TestResult:
        """
        Run one scenario to completion.

        Teardown and session release happen on every exit path, including
        cancellation. Exceptions from the orchestration itself give an
        ``error`` result; cancellation is re-raised.

        Args:
            scenario: Scenario to run

        Returns:
            TestResult
        """
        result = TestResult(
            scenario=scenario.name,
            flow=scenario.flow,
            description=scenario.description,
        )
        if scenario.skip:
            result.status = ScenarioStatus.SKIP
            result.steps = []
            result.completed_at = utc_now()
            log_test_event("scenario_skipped", scenario.name)
            return result

        log_test_event("scenario_started", scenario.name, data={"flow": scenario.flow})
        run: Optional[_ScenarioRun] = None
        try:
            async with acquire_context(
                self.session_factory,
                self.settings.base_url,
                scenario=scenario.name,
                store=self.initial_store(),
                close_timeout_ms=self.settings.action_timeout_ms,
            ) as ctx:
                run = _ScenarioRun(
                    scenario,
                    ctx,
                    result,
                    self.step_runner,
                    AutoFixEngine(self.settings, sleep=self._sleep),
                    self.settings,
                )
                try:
                    await run.execute()
                finally:
                    await run.teardown()
        except asyncio.CancelledError:
            result.status = ScenarioStatus.ERROR
            result.error_message = "Scenario cancelled"
            raise
        except Exception as exc:
            logger.exception(
                "Orchestration error",
                extra={"scenario": scenario.name, "flow": scenario.flow},
            )
            result.status = ScenarioStatus.ERROR
            result.error_message = f"{type(exc).__name__}: {exc}"
        finally:
            if run is not None:
                run.finish()
            result.completed_at = utc_now()
            result.duration_ms = (result.completed_at - result.started_at).total_seconds() * 1000

        log_test_event(
            "scenario_finished",
            scenario.name,
            data={
                "status": result.status.value,
                "duration_ms": result.duration_ms,
                "errors": len(result.errors),
                "fixes": len(result.fixes),
            },
        )
        return result

    async def run_all(
        self,
        scenarios: Sequence[TestScenario],
        tags: Optional[Sequence[str]] = None,
        run_id: Optional[str] = None,
    ) -> TestReport:
        """
        Run scenarios concurrently, each in its own session, and aggregate.

        Args:
            scenarios: Scenarios to run
            tags: Only run scenarios carrying at least one of these tags
            run_id: Identifier for the report

        Returns:
            Aggregated TestReport; results keep input order
        """
        selected = [
            s for s in scenarios
            if not tags or set(tags) & set(s.tags)
        ]
        start_time = utc_now()
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_scenarios)

        async def _run(scenario: TestScenario) -> TestResult:
            async with semaphore:
                return await self.run_scenario(scenario)

        logger.info(
            f"Running {len(selected)} scenario(s)",
            extra={"max_concurrent": self.settings.max_concurrent_scenarios},
        )
        results = await asyncio.gather(*(_run(s) for s in selected))
        end_time = utc_now()

        return generate_report(
            list(results),
            start_time,
            end_time,
            run_id=run_id,
            test_materials_used=materials_used(selected),
            base_url=self.settings.base_url,
            flow_order=self.settings.test_flows,
            headless=self.settings.browser_headless,
        )
