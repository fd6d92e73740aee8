"""
Bounded automatic remediation of detected runtime errors.

Strategy selection is a pure function of an error's code, severity and
retryability. Retries replay a step on the scenario's own context, are
paced by a backoff strategy and are capped per error signature across
every call made to one engine.
"""

import asyncio
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from healrun.config.settings import Settings, get_settings
from healrun.core.types import (
    AppliedFix,
    CodeChange,
    DetectedError,
    ErrorSeverity,
    FixStrategy,
    FixStrategyType,
    StepResult,
    StepStatus,
    TestStep,
)
from healrun.error_handling.recovery import (
    ExponentialBackoffStrategy,
    FixedDelayStrategy,
    RetryStrategy,
)
from healrun.evaluation.error_detection import (
    STACK_FRAME_PATTERN,
    detect_errors,
    error_signature,
    find_pattern,
)
from healrun.monitoring.logger import get_logger
from healrun.orchestration.step_runner import is_step_retryable

logger = get_logger(__name__)

# Failures that need operator action rather than a replay.
INFRASTRUCTURE_CODES = frozenset({
    "SERVICE_UNAVAILABLE",
    "DATABASE_ERROR",
    "STORAGE_QUOTA_EXCEEDED",
    "UNAUTHORIZED",
    "SESSION_EXPIRED",
})

# Throttled or overloaded upstreams: wait a fixed time, then replay once.
RATE_LIMIT_CODES = frozenset({
    "RATE_LIMITED",
    "HTTP_429",
    "HTTP_503",
    "AI_TIMEOUT",
})

# Directories where application source starts inside a checkout.
SOURCE_ROOTS = ("src", "app", "pages", "components", "lib", "server", "api")

HOST_PATH_PATTERN = re.compile(r"^(?:/|[A-Za-z]:/)")

Signature = Tuple[str, Optional[str], Optional[str]]


def select_strategy(error: DetectedError, settings: Optional[Settings] = None) -> FixStrategy:
    """
    Choose the remediation policy for an error.

    Order: strategy declared by the taxonomy entry, infrastructure codes
    (skip), rate-limit codes (wait_and_retry), retryable errors (retry),
    high severity (report_code_fix), everything else (skip).
    """
    settings = settings or get_settings()
    pattern = find_pattern(error.code)

    if pattern is not None and pattern.fix_strategy is not None:
        kind = pattern.fix_strategy
    elif error.code in INFRASTRUCTURE_CODES:
        kind = FixStrategyType.SKIP
    elif error.code in RATE_LIMIT_CODES:
        kind = FixStrategyType.WAIT_AND_RETRY
    elif error.is_retryable:
        kind = FixStrategyType.RETRY
    elif error.severity == ErrorSeverity.HIGH:
        kind = FixStrategyType.REPORT_CODE_FIX
    else:
        kind = FixStrategyType.SKIP

    if kind == FixStrategyType.REPORT_CODE_FIX and not settings.suggest_code_fixes:
        kind = FixStrategyType.SKIP

    if kind == FixStrategyType.RETRY:
        return FixStrategy(
            type=kind,
            max_attempts=settings.retry_max_attempts,
            wait_ms=settings.retry_backoff_ms,
            description="Replay the step with exponential backoff",
        )
    if kind == FixStrategyType.WAIT_AND_RETRY:
        return FixStrategy(
            type=kind,
            max_attempts=settings.wait_and_retry_max_attempts,
            wait_ms=settings.rate_limit_wait_ms,
            description="Wait for the upstream to recover, then replay the step",
        )
    if kind == FixStrategyType.REPORT_CODE_FIX:
        return FixStrategy(
            type=kind,
            max_attempts=1,
            description="Suggest code changes for review",
        )
    return FixStrategy(
        type=FixStrategyType.SKIP,
        max_attempts=0,
        description="Record as infrastructure issue",
    )


@dataclass
class FixContext:
    """What the engine may act on while fixing one error."""

    scenario: str = ""
    step: Optional[TestStep] = None
    retry_step: Optional[Callable[[], Awaitable[StepResult]]] = None
    last_result: Optional[StepResult] = None


class CodeFixAdvisor:
    """Builds advisory CodeChange suggestions. Never modifies files."""

    def locate(self, error: DetectedError) -> Tuple[Optional[str], Optional[int]]:
        """First application frame of the error's stack trace as (file, line)."""
        text = "\n".join(filter(None, [error.stack_trace, error.message]))
        for match in STACK_FRAME_PATTERN.finditer(text):
            raw_file = match.group(1) or match.group(3)
            raw_line = match.group(2) or match.group(4)
            if not raw_file or "node_modules" in raw_file:
                continue
            return self._normalize_file(raw_file), int(raw_line)
        return None, None

    @staticmethod
    def _normalize_file(raw: str) -> str:
        if raw.startswith(("http://", "https://")):
            return urlparse(raw).path.lstrip("/") or raw
        if raw.startswith("file:"):
            raw = urlparse(raw).path
        raw = raw.replace("\\", "/")
        if HOST_PATH_PATTERN.match(raw):
            return CodeFixAdvisor._relative_to_checkout(raw)
        raw = re.sub(r"^webpack-internal:/+(?:\([\w-]+\)/)?", "", raw)
        raw = re.sub(r"^webpack:/+[^/]*/", "", raw)
        return raw.lstrip("./") or raw

    @staticmethod
    def _relative_to_checkout(path: str) -> str:
        """Drop the host prefix of an absolute path, keeping it from the source root on."""
        parts = [p for p in path.split("/") if p and not p.endswith(":")]
        if parts[:1] in (["Users"], ["home"]):
            parts = parts[2:]
        for index, part in enumerate(parts):
            if part in SOURCE_ROOTS:
                return "/".join(parts[index:])
        return parts[-1] if parts else path

    def suggest(self, error: DetectedError) -> List[CodeChange]:
        file, line = self.locate(error)
        changes: List[CodeChange] = []

        if error.code == "HYDRATION_ERROR":
            changes.extend(self.suggest_hydration_fix(error, file, line))
        elif error.code == "VALIDATION_ERROR":
            changes.extend(self.suggest_validation_fix(error, file, line))

        if error.exposes_internal_info:
            changes.extend(self.suggest_error_sanitization_fix(error))

        if not changes and file:
            changes.append(CodeChange(
                file=file,
                line=line,
                reason=f"{error.code} raised from this location",
                before="// code raising the error",
                after="// handle the failure and show a user-facing message",
            ))

        return changes

    def suggest_hydration_fix(
        self, error: DetectedError, file: Optional[str], line: Optional[int]
    ) -> List[CodeChange]:
        match = re.search(r"\b(?:in|at) ([A-Z]\w+)", error.message)
        component = match.group(1) if match else "Component"
        target = file or f"components/{component}.tsx"
        return [
            CodeChange(
                file=target,
                line=line,
                reason="Hydration mismatch: component renders differently on server and client",
                before="// dynamic content rendered during the first pass",
                after=(
                    "const [mounted, setMounted] = useState(false)\n"
                    "useEffect(() => setMounted(true), [])\n"
                    "if (!mounted) return null"
                ),
            ),
            CodeChange(
                file=target,
                line=line,
                reason="Alternative for intentional differences: suppress the warning",
                before="<div>",
                after="<div suppressHydrationWarning>",
            ),
        ]

    def suggest_validation_fix(
        self, error: DetectedError, file: Optional[str], line: Optional[int]
    ) -> List[CodeChange]:
        endpoint = error.api_endpoint or "the form submission"
        return [
            CodeChange(
                file=file or "unknown (check form/input handling)",
                line=line,
                reason=f"Validation error from {endpoint}: client input does not match API expectations",
                before="// submit without validation",
                after="// validate input against the API schema before submission",
            )
        ]

    def suggest_error_sanitization_fix(self, error: DetectedError) -> List[CodeChange]:
        endpoint = (error.api_endpoint or "unknown").strip("/")
        return [
            CodeChange(
                file=f"app/{endpoint}/route.ts" if error.api_endpoint else "api route (unknown)",
                reason="Internal error details exposed to the client",
                before="return NextResponse.json({ error: error.message })",
                after="return createErrorResponse(ErrorCodes.INTERNAL_ERROR)",
            ),
            CodeChange(
                file="lib/utils/error-sanitizer.ts",
                reason="Sanitize user-facing error messages",
                before="setError(err.message)",
                after="setError(sanitizeError(err))",
            ),
        ]


class AutoFixEngine:
    """Applies remediation strategies to detected errors."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        advisor: Optional[CodeFixAdvisor] = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            settings: Retry policy settings
            sleep: Coroutine used for backoff waits
            advisor: Source of code-change suggestions
        """
        self.settings = settings or get_settings()
        self.advisor = advisor or CodeFixAdvisor()
        self._sleep = sleep
        self._attempts: Dict[Signature, int] = defaultdict(int)
        self._history: List[AppliedFix] = []

    def attempts_for(self, error: DetectedError) -> int:
        """Replays already spent on an error's signature."""
        return self._attempts.get(error_signature(error), 0)

    def can_auto_fix(self, error: DetectedError) -> bool:
        strategy = select_strategy(error, self.settings)
        return (
            strategy.type in (FixStrategyType.RETRY, FixStrategyType.WAIT_AND_RETRY)
            and self.attempts_for(error) < strategy.max_attempts
        )

    def get_fix_history(self) -> List[AppliedFix]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()
        self._attempts.clear()

    async def attempt_fix(self, error: DetectedError, context: FixContext) -> AppliedFix:
        """
        Select and apply a strategy for an error.

        Args:
            error: Error to remediate
            context: Step to replay and how to replay it

        Returns:
            AppliedFix describing what was done
        """
        strategy = select_strategy(error, self.settings)
        log_extra = {"scenario": context.scenario, "error_code": error.code}
        logger.info(
            f"Attempting {strategy.type.value} for {error.code}",
            extra=log_extra,
        )

        if strategy.type in (FixStrategyType.RETRY, FixStrategyType.WAIT_AND_RETRY):
            fix = await self._replay(error, strategy, context)
        elif strategy.type == FixStrategyType.REPORT_CODE_FIX:
            fix = self._report_code_fix(error, strategy)
        else:
            fix = self._skip(error, strategy, "skipped", f"Infrastructure issue: {error.code}")

        self._history.append(fix)
        logger.info(
            f"Fix for {error.code}: {fix.action} (success={fix.success})",
            extra=log_extra,
        )
        return fix

    def _skip(
        self,
        error: DetectedError,
        strategy: FixStrategy,
        action: str,
        details: str,
        attempts: int = 0,
    ) -> AppliedFix:
        return AppliedFix(
            error=error,
            strategy=FixStrategy(
                type=FixStrategyType.SKIP,
                max_attempts=strategy.max_attempts,
                wait_ms=strategy.wait_ms,
                description=strategy.description,
            ),
            success=False,
            action=action,
            details=details,
            attempts=attempts,
        )

    def _backoff(self, strategy: FixStrategy) -> RetryStrategy:
        if strategy.type == FixStrategyType.WAIT_AND_RETRY:
            return FixedDelayStrategy(delay_ms=strategy.wait_ms, max_attempts=strategy.max_attempts)
        return ExponentialBackoffStrategy(
            base_delay_ms=strategy.wait_ms,
            max_delay_ms=self.settings.retry_max_backoff_ms,
            max_attempts=strategy.max_attempts,
            multiplier=self.settings.retry_backoff_multiplier,
        )

    async def _replay(
        self, error: DetectedError, strategy: FixStrategy, context: FixContext
    ) -> AppliedFix:
        signature = error_signature(error)
        backoff = self._backoff(strategy)

        if not backoff.should_retry(self._attempts[signature]):
            return self._skip(
                error, strategy, "attempts_exhausted",
                f"All {strategy.max_attempts} attempts already used for {error.code}",
            )
        if context.step is None or context.retry_step is None:
            return self._skip(error, strategy, "no_retry_target", "Error is not attributed to a step")
        if not is_step_retryable(context.step):
            return self._skip(
                error, strategy, "not_retryable",
                f"Step '{context.step.id}' ({context.step.action.value}) is not marked retryable",
            )

        attempts = 0
        while backoff.should_retry(self._attempts[signature]):
            attempts += 1
            delay_ms = backoff.get_delay_ms(attempts)
            if delay_ms > 0:
                logger.info(
                    f"Waiting {delay_ms}ms before replaying step {context.step.id}",
                    extra={"scenario": context.scenario, "step_id": context.step.id},
                )
                await self._sleep(delay_ms / 1000)

            self._attempts[signature] += 1
            result = await context.retry_step()
            context.last_result = result

            if self._replay_succeeded(error, result):
                action = "waited_and_retried" if strategy.type == FixStrategyType.WAIT_AND_RETRY else "retried"
                return AppliedFix(
                    error=error,
                    strategy=strategy,
                    success=True,
                    action=action,
                    details=f"Succeeded on attempt {attempts}",
                    attempts=attempts,
                    retried_step_id=context.step.id,
                )

        return AppliedFix(
            error=error,
            strategy=strategy,
            success=False,
            action="retry_exhausted",
            details=f"Still failing after {attempts} attempt(s)",
            attempts=attempts,
            retried_step_id=context.step.id,
        )

    @staticmethod
    def _replay_succeeded(error: DetectedError, result: StepResult) -> bool:
        if result.status != StepStatus.PASS:
            return False
        if result.logs is None:
            return True
        return not any(
            e.code == error.code and e.api_endpoint == error.api_endpoint
            for e in detect_errors(result.logs)
        )

    def _report_code_fix(self, error: DetectedError, strategy: FixStrategy) -> AppliedFix:
        changes = self.advisor.suggest(error)
        return AppliedFix(
            error=error,
            strategy=strategy,
            success=bool(changes),
            action="code_fix_suggested" if changes else "no_fix_available",
            details=(
                f"Suggested {len(changes)} code change(s)"
                if changes else "No automatic fix available"
            ),
            attempts=1,
            code_changes=changes,
        )


def format_code_changes(changes: Sequence[CodeChange]) -> str:
    """Render code-change suggestions as plain text."""
    if not changes:
        return "No code changes suggested"

    lines = ["Suggested Code Changes:", "=" * 50, ""]
    for change in changes:
        location = f"{change.file}:{change.line}" if change.line else change.file
        lines.append(f"File: {location}")
        lines.append(f"Reason: {change.reason}")
        if change.before:
            lines.append("Before:")
            lines.extend(f"  {line}" for line in change.before.splitlines())
        if change.after:
            lines.append("After:")
            lines.extend(f"  {line}" for line in change.after.splitlines())
        lines.append(f"Status: {'Applied' if change.applied else 'Pending review'}")
        lines.append("-" * 40)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def summarize_fixes(fixes: Sequence[AppliedFix]) -> str:
    """One-line-per-fix summary with totals."""
    if not fixes:
        return "No fixes attempted"

    succeeded = sum(1 for f in fixes if f.success)
    lines = [f"Auto-fix: {succeeded}/{len(fixes)} succeeded"]
    for fix in fixes:
        mark = "✓" if fix.success else "✗"
        lines.append(
            f"  {mark} {fix.error.code}: {fix.strategy.type.value} -> {fix.action}"
            + (f" ({fix.details})" if fix.details else "")
        )
    return "\n".join(lines)
