"""
Core data models and types for the healrun orchestrator.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from healrun.error_handling.exceptions import OrchestrationError


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model accepting camelCase and snake_case field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(BaseModel):
    """Immutable variant of CamelModel."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


class StepAction(str, Enum):
    """Actions a step can perform against the browser."""

    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    UPLOAD = "upload"
    SELECT = "select"
    WAIT_FOR = "waitFor"
    SNAPSHOT = "snapshot"
    SCREENSHOT = "screenshot"
    SCROLL = "scroll"
    HOVER = "hover"
    PRESS_KEY = "pressKey"
    CLEAR_INPUT = "clearInput"
    ASSERT_TEXT = "assertText"
    ASSERT_VISIBLE = "assertVisible"
    ASSERT_NOT_VISIBLE = "assertNotVisible"


class StepStatus(str, Enum):
    """Lifecycle state of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"
    ERROR = "error"


ALLOWED_TRANSITIONS: Dict[StepStatus, Tuple[StepStatus, ...]] = {
    StepStatus.PENDING: (StepStatus.RUNNING, StepStatus.SKIP),
    StepStatus.RUNNING: (
        StepStatus.PASS,
        StepStatus.FAIL,
        StepStatus.SKIP,
        StepStatus.ERROR,
    ),
}


class ScenarioStatus(str, Enum):
    """Overall status of a scenario run."""

    PENDING = "pending"
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIP = "skip"


class OutcomeType(str, Enum):
    """Kinds of expected outcomes."""

    NAVIGATION = "navigation"
    UI_STATE = "ui_state"
    NETWORK_SUCCESS = "network_success"
    NETWORK_ERROR = "network_error"
    CONSOLE_CLEAN = "console_clean"
    CONSOLE_CONTAINS = "console_contains"
    ELEMENT_VISIBLE = "element_visible"
    ELEMENT_TEXT = "element_text"


class ConsoleLevel(str, Enum):
    """Browser console message levels."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    DEBUG = "debug"
    LOG = "log"


class ErrorSeverity(str, Enum):
    """Severity of a detected runtime error."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ErrorSource(str, Enum):
    """Channel a detected error came from."""

    CONSOLE = "console"
    NETWORK = "network"
    UI = "ui"


class FixStrategyType(str, Enum):
    """Remediation policies of the auto-fix engine."""

    RETRY = "retry"
    WAIT_AND_RETRY = "wait_and_retry"
    REPORT_CODE_FIX = "report_code_fix"
    SKIP = "skip"


# Scenario definition


class StepCondition(FrozenCamelModel):
    """Guard evaluated before a step runs. All configured predicates must hold."""

    store_has: Optional[str] = Field(None, description="Key present in the context store")
    url_contains: Optional[str] = None
    element_present: Optional[str] = None
    element_absent: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(
            (self.store_has, self.url_contains, self.element_present, self.element_absent)
        )


class TestStep(FrozenCamelModel):
    """A single atomic browser action within a scenario."""

    __test__ = False

    id: str = Field(..., min_length=1, description="Unique within the scenario")
    action: StepAction
    target: Optional[str] = Field(None, description="Element descriptor")
    value: Optional[str] = Field(None, description="URL, text, file path or duration")
    description: Optional[str] = None
    timeout: Optional[int] = Field(None, gt=0, description="Timeout override (ms)")
    capture_state: bool = False
    optional: bool = False
    condition: Optional[StepCondition] = None
    retryable: Optional[bool] = Field(
        None, description="Whether the step is safe to replay"
    )
    run_on_teardown: bool = Field(
        False, description="Run even after a fail-fast abort"
    )

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> Any:
        """Accept numeric payloads such as wait durations."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


class ElementTextAssertion(FrozenCamelModel):
    selector: str
    text: str
    contains: bool = True


class ElementCountAssertion(FrozenCamelModel):
    selector: str
    count: int = Field(..., ge=0)


class ApiCallAssertion(FrozenCamelModel):
    endpoint: str
    method: Optional[str] = None


class ApiSuccessAssertion(FrozenCamelModel):
    endpoint: str
    status_range: Tuple[int, int] = (200, 299)


class ApiFailureAssertion(FrozenCamelModel):
    endpoint: str
    expected_status: Optional[int] = None


class AssertionConfig(FrozenCamelModel):
    """Concrete predicates of an expected outcome. Unset fields are not checked."""

    url_equals: Optional[str] = None
    url_contains: Optional[str] = None
    url_matches: Optional[str] = None
    element_exists: Optional[str] = None
    element_not_exists: Optional[str] = None
    element_visible: Optional[str] = None
    element_text: Optional[ElementTextAssertion] = None
    element_count: Optional[ElementCountAssertion] = None
    api_called: Optional[ApiCallAssertion] = None
    api_succeeded: Optional[ApiSuccessAssertion] = None
    api_failed: Optional[ApiFailureAssertion] = None
    no_console_errors: Optional[bool] = None
    console_contains: Optional[str] = None
    console_not_contains: Optional[str] = None

    def configured_fields(self) -> List[str]:
        """Names of the predicates that are set."""
        return [
            name
            for name in type(self).model_fields
            if getattr(self, name) is not None
        ]


class ExpectedOutcome(FrozenCamelModel):
    """A declared predicate over post-execution state."""

    type: OutcomeType
    description: str = ""
    assertion: AssertionConfig = Field(default_factory=AssertionConfig)


class ResourceCapture(FrozenCamelModel):
    """Extracts a created resource id from the current URL after setup."""

    kind: str
    url_pattern: str = Field(..., description="Regex with one capture group for the id")
    store_as: str
    cleanup_steps: List[TestStep] = Field(default_factory=list)


class ScenarioSetup(FrozenCamelModel):
    login: bool = False
    start_path: Optional[str] = None
    steps: List[TestStep] = Field(default_factory=list)
    captures: List[ResourceCapture] = Field(default_factory=list)


class ScenarioTeardown(FrozenCamelModel):
    steps: List[TestStep] = Field(default_factory=list)


class TestScenario(FrozenCamelModel):
    """Immutable description of one scenario."""

    __test__ = False

    name: str = Field(..., min_length=1)
    description: str = ""
    flow: str = "default"
    steps: List[TestStep] = Field(default_factory=list)
    expected: List[ExpectedOutcome] = Field(default_factory=list)
    setup: Optional[ScenarioSetup] = None
    teardown: Optional[ScenarioTeardown] = None
    tags: List[str] = Field(default_factory=list)
    skip: bool = False

    @model_validator(mode="after")
    def validate_unique_step_ids(self) -> "TestScenario":
        """Reject scenarios with duplicate step ids."""
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step id '{step.id}' in scenario '{self.name}'")
            seen.add(step.id)
        return self


# Captured signals


class ConsoleMessage(FrozenCamelModel):
    level: ConsoleLevel = ConsoleLevel.LOG
    message: str
    timestamp: datetime = Field(default_factory=utc_now)
    source: Optional[str] = None


class NetworkRequest(FrozenCamelModel):
    url: str
    method: str = "GET"
    status: Optional[int] = None
    status_text: str = ""
    duration: Optional[float] = Field(None, description="Duration in milliseconds")
    failed: bool = Field(False, description="Transport-level failure")
    error_message: Optional[str] = None
    request_body: Optional[str] = None
    response_body: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class CapturedLogs(FrozenCamelModel):
    """Console and network signals observed at one capture point."""

    console: List[ConsoleMessage] = Field(default_factory=list)
    network: List[NetworkRequest] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)
    page_path: str = ""

    def is_empty(self) -> bool:
        return not self.console and not self.network


def create_empty_logs(page_path: str = "") -> CapturedLogs:
    """Create an empty capture for the given page."""
    return CapturedLogs(page_path=page_path)


def merge_logs(*captures: Optional[CapturedLogs]) -> CapturedLogs:
    """
    Merge captures in argument order into a new CapturedLogs.

    The timestamp is the latest of the inputs and the page path the last
    non-empty one.
    """
    present = [c for c in captures if c is not None]
    if not present:
        return create_empty_logs()

    console: List[ConsoleMessage] = []
    network: List[NetworkRequest] = []
    page_path = ""
    for capture in present:
        console.extend(capture.console)
        network.extend(capture.network)
        if capture.page_path:
            page_path = capture.page_path

    return CapturedLogs(
        console=console,
        network=network,
        timestamp=max(c.timestamp for c in present),
        page_path=page_path,
    )


# Detection and remediation


class DetectedError(FrozenCamelModel):
    """A classified runtime error extracted from captured logs."""

    code: str
    message: str
    severity: ErrorSeverity
    source: ErrorSource
    timestamp: datetime = Field(default_factory=utc_now)
    step_id: Optional[str] = None
    api_endpoint: Optional[str] = None
    network_status: Optional[int] = None
    stack_trace: Optional[str] = None
    is_retryable: bool = False
    exposes_internal_info: bool = False


class FixStrategy(FrozenCamelModel):
    type: FixStrategyType
    max_attempts: int = Field(1, ge=0)
    wait_ms: int = Field(0, ge=0)
    description: str = ""


class CodeChange(FrozenCamelModel):
    """Advisory source change for a human to review. Never applied automatically."""

    file: str
    line: Optional[int] = None
    before: str = ""
    after: str = ""
    reason: str
    applied: bool = False


class AppliedFix(FrozenCamelModel):
    error: DetectedError
    strategy: FixStrategy
    success: bool
    action: str
    details: Optional[str] = None
    attempts: int = 0
    retried_step_id: Optional[str] = None
    code_changes: List[CodeChange] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utc_now)


# Results


class StepResult(CamelModel):
    """Outcome of executing one step."""

    step_id: str
    action: StepAction
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0
    error_message: Optional[str] = None
    skip_reason: Optional[str] = None
    logs: Optional[CapturedLogs] = None
    screenshot: Optional[str] = None
    attempt: int = 1

    def transition_to(self, status: StepStatus) -> None:
        """Move to a new status, enforcing the step state machine."""
        if status not in ALLOWED_TRANSITIONS.get(self.status, ()):
            raise OrchestrationError(
                f"Illegal step transition {self.status.value} -> {status.value}",
                details={"step_id": self.step_id},
            )
        self.status = status
        now = utc_now()
        if status == StepStatus.RUNNING:
            self.started_at = now
        elif status != StepStatus.PENDING:
            self.completed_at = now
            if self.started_at:
                self.duration_ms = (now - self.started_at).total_seconds() * 1000

    @property
    def is_terminal(self) -> bool:
        return self.status not in (StepStatus.PENDING, StepStatus.RUNNING)


class CreatedResource(FrozenCamelModel):
    """Handle of a resource created during a run, cleaned up at teardown."""

    kind: str
    id: str
    store_key: Optional[str] = None
    cleanup_steps: List[TestStep] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class ActualState(FrozenCamelModel):
    """Observed post-execution state handed to the comparator."""

    url: str = ""
    snapshot: str = ""
    logs: CapturedLogs = Field(default_factory=create_empty_logs)


class Difference(FrozenCamelModel):
    check: str
    expected: Any = None
    actual: Any = None
    message: str = ""


class ComparisonResult(FrozenCamelModel):
    outcome_type: OutcomeType
    description: str = ""
    passed: bool
    checks: int = 0
    differences: List[Difference] = Field(default_factory=list)
    message: str = ""


class TestResult(CamelModel):
    """Result of one scenario run."""

    __test__ = False

    scenario: str
    flow: str
    description: str = ""
    status: ScenarioStatus = ScenarioStatus.PENDING
    steps: List[StepResult] = Field(default_factory=list)
    setup_steps: List[StepResult] = Field(default_factory=list)
    teardown_steps: List[StepResult] = Field(default_factory=list)
    logs: CapturedLogs = Field(default_factory=create_empty_logs)
    comparisons: List[ComparisonResult] = Field(default_factory=list)
    errors: List[DetectedError] = Field(default_factory=list)
    fixes: List[AppliedFix] = Field(default_factory=list)
    screenshots: List[str] = Field(default_factory=list)
    created_resources: List[CreatedResource] = Field(default_factory=list)
    teardown_errors: List[str] = Field(default_factory=list)
    final_url: Optional[str] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0

    def step_result(self, step_id: str) -> Optional[StepResult]:
        for result in self.steps:
            if result.step_id == step_id:
                return result
        return None


# Reports


class ReportMetadata(CamelModel):
    run_id: str
    generated_at: datetime = Field(default_factory=utc_now)
    start_time: datetime
    end_time: datetime
    duration_ms: float
    version: str = "1.0"


class EnvironmentInfo(CamelModel):
    base_url: Optional[str] = None
    browser: str = "chromium"
    headless: Optional[bool] = None
    python_version: str = ""
    platform: str = ""
    test_materials_used: List[str] = Field(default_factory=list)


class ReportSummary(CamelModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    pass_rate: float = 0.0


class FailedStepReport(CamelModel):
    step_id: str
    action: StepAction
    status: StepStatus
    error_message: Optional[str] = None


class LogCounts(CamelModel):
    console_errors: int = 0
    console_warnings: int = 0
    network_requests: int = 0
    network_failures: int = 0


class ScenarioReport(CamelModel):
    name: str
    description: str = ""
    status: ScenarioStatus
    duration_ms: float = 0.0
    failed_steps: List[FailedStepReport] = Field(default_factory=list)
    failed_comparisons: List[str] = Field(default_factory=list)
    screenshots: List[str] = Field(default_factory=list)
    error_codes: List[str] = Field(default_factory=list)
    fix_count: int = 0
    log_counts: LogCounts = Field(default_factory=LogCounts)
    error_message: Optional[str] = None
    teardown_errors: List[str] = Field(default_factory=list)


class FlowReport(CamelModel):
    flow: str
    total: int = 0
    passed: int = 0
    failed: int = 0
    errors: int = 0
    skipped: int = 0
    scenarios: List[ScenarioReport] = Field(default_factory=list)


class ErrorReport(CamelModel):
    """Detected errors deduplicated by code."""

    code: str
    message: str
    severity: ErrorSeverity
    source: ErrorSource
    count: int = 0
    scenarios: List[str] = Field(default_factory=list)
    first_occurrence: datetime
    last_occurrence: datetime
    exposes_internal_info: bool = False
    is_retryable: bool = False


class FixReport(CamelModel):
    scenario: str
    error_code: str
    strategy: FixStrategyType
    success: bool
    action: str
    attempts: int = 0
    details: Optional[str] = None
    code_changes: List[CodeChange] = Field(default_factory=list)


class TestReport(CamelModel):
    """Aggregated report over many scenario results."""

    __test__ = False

    metadata: ReportMetadata
    environment: EnvironmentInfo
    summary: ReportSummary
    flows: List[FlowReport] = Field(default_factory=list)
    errors: List[ErrorReport] = Field(default_factory=list)
    fixes: List[FixReport] = Field(default_factory=list)
