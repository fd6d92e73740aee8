"""
Execution of single scenario steps against a browser session.
"""

import asyncio
import re
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

from healrun.browser.capture import capture_logs
from healrun.config.settings import Settings, get_settings
from healrun.core.types import (
    CapturedLogs,
    ElementTextAssertion,
    StepAction,
    StepCondition,
    StepResult,
    StepStatus,
    TestStep,
    utc_now,
)
from healrun.error_handling.exceptions import (
    DriverError,
    ScenarioValidationError,
    StepFailedError,
    StepTimeoutError,
)
from healrun.evaluation.comparator import check_element_text, snapshot_contains_element
from healrun.monitoring.logger import get_logger, log_performance_metric
from healrun.orchestration.context import TestContext

logger = get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")

T = TypeVar("T")

# Read-only actions are safe to replay; anything that mutates page or
# server state must opt in with an explicit retryable flag.
IDEMPOTENT_ACTIONS = frozenset({
    StepAction.NAVIGATE,
    StepAction.WAIT_FOR,
    StepAction.SNAPSHOT,
    StepAction.SCREENSHOT,
    StepAction.SCROLL,
    StepAction.HOVER,
    StepAction.ASSERT_TEXT,
    StepAction.ASSERT_VISIBLE,
    StepAction.ASSERT_NOT_VISIBLE,
})

TARGETED_ACTIONS = {
    StepAction.CLICK: "click",
    StepAction.HOVER: "hover",
    StepAction.TYPE: "type",
    StepAction.UPLOAD: "upload",
    StepAction.SELECT: "select",
    StepAction.CLEAR_INPUT: "clear",
}

VALUE_REQUIRED = frozenset({
    StepAction.TYPE,
    StepAction.UPLOAD,
    StepAction.SELECT,
    StepAction.PRESS_KEY,
})


async def bounded(awaitable: Awaitable[T], timeout_ms: int, action: str) -> T:
    """Await a driver call with a deadline. Timeouts surface as DriverError."""
    try:
        return await asyncio.wait_for(awaitable, timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise DriverError(f"{action} timed out after {timeout_ms}ms", action=action) from None


def is_step_retryable(step: TestStep) -> bool:
    """Explicit flag wins; otherwise only read-only actions are retryable."""
    if step.retryable is not None:
        return step.retryable
    return step.action in IDEMPOTENT_ACTIONS


def get_timeout_ms(step: TestStep, settings: Settings) -> int:
    """Timeout budget for a step: its override, else by action kind."""
    if step.timeout:
        return step.timeout
    if step.action == StepAction.NAVIGATE:
        return settings.navigation_timeout_ms
    if step.action == StepAction.UPLOAD:
        return settings.upload_timeout_ms
    if step.action == StepAction.WAIT_FOR:
        return settings.ai_processing_timeout_ms
    return settings.action_timeout_ms


def substitute(text: Optional[str], ctx: TestContext) -> Optional[str]:
    """Replace ``{key}`` placeholders with values from the context store."""
    if text is None:
        return None

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key in ctx.store:
            return str(ctx.store[key])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "scenario"


class StepRunner:
    """Runs one step at a time through the context's driver."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the step runner.

        Args:
            settings: Timeouts, capture limits and directories
            sleep: Coroutine used for fixed waits
        """
        self.settings = settings or get_settings()
        self._sleep = sleep

    async def capture(self, ctx: TestContext) -> CapturedLogs:
        """Drain the session's log buffers."""
        ctx.assert_owned()
        return await bounded(self._capture(ctx), self.settings.action_timeout_ms, "log capture")

    async def _capture(self, ctx: TestContext) -> CapturedLogs:
        page_path = await ctx.driver.current_url()
        return await capture_logs(ctx.driver, page_path, self.settings)

    async def run_step(
        self, step: TestStep, ctx: TestContext, force_capture: bool = False
    ) -> StepResult:
        """
        Execute a step and return its result.

        Driver failures, failed inline assertions and timeouts produce
        ``fail``. Any other exception is a contract violation and produces
        ``error``. Cancellation propagates.

        Args:
            step: Step to run
            ctx: Context owned by the calling scenario
            force_capture: Capture logs even if the step does not ask for it

        Returns:
            StepResult in a terminal state
        """
        ctx.assert_owned()
        result = StepResult(step_id=step.id, action=step.action)
        log_extra = {"scenario": ctx.scenario, "step_id": step.id, "action": step.action.value}

        if step.condition is not None and not step.condition.is_empty():
            try:
                met, reason = await bounded(
                    self._condition_met(step.condition, ctx),
                    self.settings.action_timeout_ms,
                    "condition check",
                )
            except DriverError as exc:
                result.transition_to(StepStatus.RUNNING)
                result.error_message = f"Condition check failed: {exc.message}"
                result.transition_to(StepStatus.FAIL)
                return result
            if not met:
                result.skip_reason = reason
                result.transition_to(StepStatus.SKIP)
                logger.info("Skipping step, condition not met", extra=log_extra)
                return result

        timeout_ms = get_timeout_ms(step, self.settings)
        logger.info("Executing step", extra=log_extra)
        result.transition_to(StepStatus.RUNNING)

        try:
            await asyncio.wait_for(self._execute(step, ctx, result, timeout_ms), timeout_ms / 1000)
            result.transition_to(StepStatus.PASS)
        except asyncio.TimeoutError:
            result.error_message = f"Step '{step.id}' timed out after {timeout_ms}ms"
            result.transition_to(StepStatus.FAIL)
        except (DriverError, StepFailedError, StepTimeoutError) as exc:
            result.error_message = exc.message
            result.transition_to(StepStatus.FAIL)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error while executing step", extra=log_extra)
            result.error_message = f"{type(exc).__name__}: {exc}"
            result.transition_to(StepStatus.ERROR)

        if result.status != StepStatus.PASS:
            logger.warning(
                f"Step {step.id} finished with status {result.status.value}: {result.error_message}",
                extra=log_extra,
            )

        if step.capture_state or force_capture:
            try:
                result.logs = await self.capture(ctx)
            except DriverError as exc:
                logger.warning(
                    f"Could not capture logs after step {step.id}: {exc.message}",
                    extra=log_extra,
                )

        log_performance_metric("step_duration", result.duration_ms, context={"step_id": step.id})
        return result

    async def _condition_met(self, condition: StepCondition, ctx: TestContext):
        if condition.store_has is not None and condition.store_has not in ctx.store:
            return False, f"store has no '{condition.store_has}'"

        if condition.url_contains is not None:
            url = await ctx.driver.current_url()
            if condition.url_contains not in url:
                return False, f"URL does not contain '{condition.url_contains}'"

        if condition.element_present is not None or condition.element_absent is not None:
            snapshot = await ctx.driver.snapshot()
            ctx.last_snapshot = snapshot
            if condition.element_present is not None and not snapshot_contains_element(
                snapshot, substitute(condition.element_present, ctx)
            ):
                return False, f"element '{condition.element_present}' not present"
            if condition.element_absent is not None and snapshot_contains_element(
                snapshot, substitute(condition.element_absent, ctx)
            ):
                return False, f"element '{condition.element_absent}' present"

        return True, None

    async def _find(self, ctx: TestContext, descriptor: Optional[str], action: str) -> str:
        if not descriptor:
            raise ScenarioValidationError(f"Action '{action}' requires a target")
        ref = await ctx.driver.find(descriptor)
        if ref is None:
            raise DriverError(
                f"Element not found: {descriptor}", action=action, descriptor=descriptor
            )
        return ref

    async def _execute(
        self, step: TestStep, ctx: TestContext, result: StepResult, timeout_ms: int
    ) -> None:
        driver = ctx.driver
        target = substitute(step.target, ctx)
        value = substitute(step.value, ctx)

        if step.action in VALUE_REQUIRED and value is None:
            raise ScenarioValidationError(
                f"Step '{step.id}' ({step.action.value}) requires a value"
            )

        if step.action == StepAction.NAVIGATE:
            path = value or target
            if not path:
                raise ScenarioValidationError(f"Step '{step.id}' has no URL to navigate to")
            await driver.navigate(ctx.resolve_url(path))

        elif step.action == StepAction.UPLOAD:
            ref = await self._find(ctx, target, "upload")
            await driver.act(ref, "upload", str(self._material_path(value)))

        elif step.action in TARGETED_ACTIONS:
            kind = TARGETED_ACTIONS[step.action]
            ref = await self._find(ctx, target, kind)
            await driver.act(ref, kind, value)

        elif step.action == StepAction.SCROLL:
            ref = await self._find(ctx, target, "scroll") if target else None
            await driver.act(ref, "scroll", value)

        elif step.action == StepAction.PRESS_KEY:
            ref = await self._find(ctx, target, "key") if target else None
            await driver.act(ref, "key", value)

        elif step.action == StepAction.WAIT_FOR:
            await self._wait_for(step, ctx, target, value, timeout_ms)

        elif step.action == StepAction.SNAPSHOT:
            ctx.last_snapshot = await driver.snapshot()

        elif step.action == StepAction.SCREENSHOT:
            result.screenshot = await self.save_screenshot(ctx, step.id)

        elif step.action in (StepAction.ASSERT_TEXT, StepAction.ASSERT_VISIBLE, StepAction.ASSERT_NOT_VISIBLE):
            snapshot = await driver.snapshot()
            ctx.last_snapshot = snapshot
            self._assert_snapshot(step, snapshot, target, value)

        else:
            raise ScenarioValidationError(f"Unsupported action: {step.action}")

    def _assert_snapshot(
        self, step: TestStep, snapshot: str, target: Optional[str], value: Optional[str]
    ) -> None:
        if step.action == StepAction.ASSERT_TEXT:
            if value is None:
                raise ScenarioValidationError(f"Step '{step.id}' (assertText) requires a value")
            if target:
                differences = check_element_text(
                    snapshot, ElementTextAssertion(selector=target, text=value, contains=True)
                )
                if differences:
                    raise StepFailedError(differences[0].message, step_id=step.id)
            elif value.lower() not in snapshot.lower():
                raise StepFailedError(f'Text "{value}" not found on page', step_id=step.id)
            return

        if not target:
            raise ScenarioValidationError(f"Step '{step.id}' ({step.action.value}) requires a target")

        present = snapshot_contains_element(snapshot, target)
        if step.action == StepAction.ASSERT_VISIBLE and not present:
            raise StepFailedError(f'Element "{target}" is not visible', step_id=step.id)
        if step.action == StepAction.ASSERT_NOT_VISIBLE and present:
            raise StepFailedError(f'Element "{target}" is visible', step_id=step.id)

    async def _wait_for(
        self,
        step: TestStep,
        ctx: TestContext,
        target: Optional[str],
        value: Optional[str],
        timeout_ms: int,
    ) -> None:
        """
        Wait for a condition. Supported forms of ``value``:

        ``timeout:MS`` or a bare number sleeps; ``urlContains:X`` polls the
        URL; ``element:X`` or a target polls the snapshot for an element;
        ``text:X`` (or any other text) polls the snapshot for text.
        """
        raw = (value or "").strip()
        kind, _, argument = raw.partition(":")
        kind = kind.strip().lower()
        argument = argument.strip()

        if raw and (raw.replace(".", "", 1).isdigit() or (kind == "timeout" and argument)):
            duration_ms = float(argument if kind == "timeout" else raw)
            await self._sleep(duration_ms / 1000)
            return

        if kind == "urlcontains" and argument:
            description = f"URL containing '{argument}'"

            async def predicate() -> bool:
                return argument in await ctx.driver.current_url()

        elif (kind == "element" and argument) or (not raw and target):
            selector = argument if kind == "element" else target
            description = f"element '{selector}'"

            async def predicate() -> bool:
                ctx.last_snapshot = await ctx.driver.snapshot()
                return snapshot_contains_element(ctx.last_snapshot, selector)

        elif raw:
            text = argument if kind == "text" and argument else raw
            description = f"text '{text}'"

            async def predicate() -> bool:
                ctx.last_snapshot = await ctx.driver.snapshot()
                return text.lower() in ctx.last_snapshot.lower()

        else:
            raise ScenarioValidationError(f"Step '{step.id}' (waitFor) has nothing to wait for")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        interval = self.settings.poll_interval_ms / 1000
        while True:
            if await predicate():
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise StepTimeoutError(
                    f"Timed out after {timeout_ms}ms waiting for {description}",
                    timeout_ms=timeout_ms,
                    step_id=step.id,
                )
            await asyncio.sleep(min(interval, remaining))

    def _material_path(self, value: str) -> Path:
        path = Path(value)
        if path.is_absolute():
            return path
        return self.settings.test_materials_dir / path

    async def save_screenshot(self, ctx: TestContext, label: str) -> str:
        """Capture a screenshot and write it to the screenshots directory."""
        data = await bounded(ctx.driver.screenshot(), self.settings.action_timeout_ms, "screenshot")
        directory = self.settings.screenshots_dir
        directory.mkdir(parents=True, exist_ok=True)
        timestamp = utc_now().strftime("%Y%m%d_%H%M%S_%f")
        path = directory / f"{_slug(ctx.scenario)}-{_slug(label)}-{timestamp}.png"
        await asyncio.to_thread(path.write_bytes, data)
        logger.debug("Saved screenshot", extra={"scenario": ctx.scenario, "path": str(path)})
        return str(path)
