"""
Run reporting for healrun.

Aggregates scenario results into a TestReport and renders it as JSON,
Markdown, HTML or a console summary.
"""

import platform
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from jinja2 import Template
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from healrun.core.types import (
    ConsoleLevel,
    EnvironmentInfo,
    FailedStepReport,
    FixReport,
    FlowReport,
    LogCounts,
    ReportMetadata,
    ReportSummary,
    ScenarioReport,
    ScenarioStatus,
    StepStatus,
    TestReport,
    TestResult,
)
from healrun.error_handling.aggregator import ErrorAggregator
from healrun.monitoring.logger import get_logger
from healrun.security.sanitizer import sanitize_string

logger = get_logger(__name__)

STATUS_ICONS = {
    ScenarioStatus.PASS: "✅",
    ScenarioStatus.FAIL: "❌",
    ScenarioStatus.ERROR: "💥",
    ScenarioStatus.SKIP: "⏭️",
    ScenarioStatus.PENDING: "…",
}

STATUS_STYLES = {
    ScenarioStatus.PASS: "green",
    ScenarioStatus.FAIL: "red",
    ScenarioStatus.ERROR: "bold red",
    ScenarioStatus.SKIP: "yellow",
    ScenarioStatus.PENDING: "dim",
}

FORMAT_EXTENSIONS = {"json": "json", "markdown": "md", "html": "html"}


def format_duration(duration_ms: float) -> str:
    """Human-readable duration: ms below a second, then s, then m s."""
    if duration_ms < 1000:
        return f"{duration_ms:.0f}ms"
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, seconds = divmod(seconds, 60)
    return f"{int(minutes)}m {seconds:.0f}s"


def _log_counts(result: TestResult) -> LogCounts:
    logs = result.logs
    return LogCounts(
        console_errors=sum(1 for m in logs.console if m.level == ConsoleLevel.ERROR),
        console_warnings=sum(1 for m in logs.console if m.level == ConsoleLevel.WARNING),
        network_requests=len(logs.network),
        network_failures=sum(
            1 for r in logs.network
            if r.failed or (r.status is not None and r.status >= 400)
        ),
    )


def _clean(message: Optional[str]) -> Optional[str]:
    return sanitize_string(message) if message else message


def _scenario_report(result: TestResult) -> ScenarioReport:
    failed_steps = [
        FailedStepReport(
            step_id=step.step_id,
            action=step.action,
            status=step.status,
            error_message=_clean(step.error_message),
        )
        for step in result.setup_steps + result.steps
        if step.status in (StepStatus.FAIL, StepStatus.ERROR)
    ]
    error_codes: List[str] = []
    for error in result.errors:
        if error.code not in error_codes:
            error_codes.append(error.code)

    return ScenarioReport(
        name=result.scenario,
        description=result.description,
        status=result.status,
        duration_ms=result.duration_ms,
        failed_steps=failed_steps,
        failed_comparisons=[_clean(c.message) for c in result.comparisons if not c.passed],
        screenshots=list(result.screenshots),
        error_codes=error_codes,
        fix_count=len(result.fixes),
        log_counts=_log_counts(result),
        error_message=_clean(result.error_message),
        teardown_errors=[_clean(e) for e in result.teardown_errors],
    )


def _count(results: Sequence[TestResult], status: ScenarioStatus) -> int:
    return sum(1 for r in results if r.status == status)


def build_summary(results: Sequence[TestResult]) -> ReportSummary:
    total = len(results)
    passed = _count(results, ScenarioStatus.PASS)
    return ReportSummary(
        total=total,
        passed=passed,
        failed=_count(results, ScenarioStatus.FAIL),
        errors=_count(results, ScenarioStatus.ERROR),
        skipped=_count(results, ScenarioStatus.SKIP),
        pass_rate=round(passed / total * 100, 1) if total else 0.0,
    )


def build_flows(
    results: Sequence[TestResult], flow_order: Optional[Sequence[str]] = None
) -> List[FlowReport]:
    """Group results by flow: configured order first, then order of appearance."""
    grouped: Dict[str, List[TestResult]] = {}
    for flow in flow_order or []:
        grouped.setdefault(flow, [])
    for result in results:
        grouped.setdefault(result.flow, []).append(result)

    flows = []
    for flow, flow_results in grouped.items():
        if not flow_results:
            continue
        flows.append(FlowReport(
            flow=flow,
            total=len(flow_results),
            passed=_count(flow_results, ScenarioStatus.PASS),
            failed=_count(flow_results, ScenarioStatus.FAIL),
            errors=_count(flow_results, ScenarioStatus.ERROR),
            skipped=_count(flow_results, ScenarioStatus.SKIP),
            scenarios=[_scenario_report(r) for r in flow_results],
        ))
    return flows


def build_fixes(results: Sequence[TestResult]) -> List[FixReport]:
    return [
        FixReport(
            scenario=result.scenario,
            error_code=fix.error.code,
            strategy=fix.strategy.type,
            success=fix.success,
            action=fix.action,
            attempts=fix.attempts,
            details=fix.details,
            code_changes=list(fix.code_changes),
        )
        for result in results
        for fix in result.fixes
    ]


def generate_report(
    results: Sequence[TestResult],
    start_time: datetime,
    end_time: datetime,
    run_id: Optional[str] = None,
    test_materials_used: Optional[Sequence[str]] = None,
    base_url: Optional[str] = None,
    flow_order: Optional[Sequence[str]] = None,
    headless: Optional[bool] = None,
) -> TestReport:
    """
    Aggregate scenario results into a report.

    Args:
        results: Scenario results, in run order
        start_time: When the run started
        end_time: When the run ended
        run_id: Identifier for the run (generated if omitted)
        test_materials_used: Upload files referenced by the run
        base_url: Application under test
        flow_order: Preferred order of flows in the report
        headless: Whether the browser ran headless

    Returns:
        TestReport
    """
    aggregator = ErrorAggregator()
    for result in results:
        aggregator.add_result(result)

    report = TestReport(
        metadata=ReportMetadata(
            run_id=run_id or uuid.uuid4().hex[:12],
            start_time=start_time,
            end_time=end_time,
            duration_ms=(end_time - start_time).total_seconds() * 1000,
        ),
        environment=EnvironmentInfo(
            base_url=base_url,
            headless=headless,
            python_version=sys.version.split()[0],
            platform=platform.platform(),
            test_materials_used=list(test_materials_used or []),
        ),
        summary=build_summary(results),
        flows=build_flows(results, flow_order),
        errors=aggregator.get_reports(),
        fixes=build_fixes(results),
    )

    logger.info(
        f"Report {report.metadata.run_id}: {report.summary.passed}/{report.summary.total} passed",
        extra={"run_id": report.metadata.run_id, "pass_rate": report.summary.pass_rate},
    )
    return report


def render_json(report: TestReport, indent: int = 2) -> str:
    return report.model_dump_json(by_alias=True, indent=indent)


def render_markdown(report: TestReport) -> str:
    """Generate Markdown report."""
    summary = report.summary
    md = "# E2E Test Report\n\n"
    md += f"**Run ID:** {report.metadata.run_id}\n"
    md += f"**Generated:** {report.metadata.generated_at.isoformat()}\n"
    md += f"**Duration:** {format_duration(report.metadata.duration_ms)}\n\n"

    md += "## Summary\n\n"
    md += "| Metric | Value |\n|---|---|\n"
    md += f"| Total | {summary.total} |\n"
    md += f"| Passed | {summary.passed} ✅ |\n"
    md += f"| Failed | {summary.failed} ❌ |\n"
    md += f"| Errors | {summary.errors} 💥 |\n"
    md += f"| Skipped | {summary.skipped} ⏭️ |\n"
    md += f"| Pass Rate | {summary.pass_rate}% |\n\n"

    md += "## Results by Flow\n\n"
    for flow in report.flows:
        md += f"### {flow.flow} ({flow.passed}/{flow.total} passed)\n\n"
        for scenario in flow.scenarios:
            icon = STATUS_ICONS[scenario.status]
            md += f"- {icon} **{scenario.name}** ({format_duration(scenario.duration_ms)})\n"
            if scenario.error_message:
                md += f"  - Error: {scenario.error_message}\n"
            for step in scenario.failed_steps:
                md += f"  - Step `{step.step_id}` ({step.action.value}) {step.status.value}"
                md += f": {step.error_message}\n" if step.error_message else "\n"
            for message in scenario.failed_comparisons:
                md += f"  - {message}\n"
            for error in scenario.teardown_errors:
                md += f"  - Teardown: {error}\n"
            for screenshot in scenario.screenshots:
                md += f"  - Screenshot: `{screenshot}`\n"
        md += "\n"

    if report.errors:
        md += "## Detected Errors\n\n"
        md += "| Code | Severity | Count | Scenarios | Message |\n|---|---|---|---|---|\n"
        for error in report.errors:
            message = error.message.replace("|", "\\|").replace("\n", " ")
            md += (
                f"| {error.code} | {error.severity.value} | {error.count} | "
                f"{', '.join(error.scenarios)} | {message} |\n"
            )
        md += "\n"

    if report.fixes:
        md += "## Auto-Fix Attempts\n\n"
        for fix in report.fixes:
            mark = "✓" if fix.success else "✗"
            md += f"- {mark} **{fix.error_code}** in {fix.scenario}: {fix.strategy.value} -> {fix.action}"
            md += f" ({fix.details})\n" if fix.details else "\n"

        changes = [(fix, change) for fix in report.fixes for change in fix.code_changes]
        if changes:
            md += "\n### Suggested Code Changes\n\n"
            for fix, change in changes:
                location = f"{change.file}:{change.line}" if change.line else change.file
                md += f"**{location}** ({fix.error_code})\n\n"
                md += f"{change.reason}\n\n"
                if change.before:
                    md += f"Before:\n```\n{change.before}\n```\n"
                if change.after:
                    md += f"After:\n```\n{change.after}\n```\n"
                md += "\n"
        md += "\n"

    env = report.environment
    md += "## Environment\n\n"
    md += f"- Base URL: {env.base_url or 'n/a'}\n"
    md += f"- Browser: {env.browser}"
    md += " (headless)\n" if env.headless else "\n"
    md += f"- Python: {env.python_version}\n"
    md += f"- Platform: {env.platform}\n"
    if env.test_materials_used:
        md += f"- Test materials: {', '.join(env.test_materials_used)}\n"

    return md


def render_html(report: TestReport) -> str:
    template = Template(HTML_REPORT_TEMPLATE, autoescape=True)
    return template.render(report=report, icons=STATUS_ICONS, format_duration=format_duration)


def render_console_summary(report: TestReport, console: Optional[Console] = None) -> None:
    """Print a results table and summary panel."""
    console = console or Console()

    table = Table(title="Scenario Results")
    table.add_column("Flow", style="cyan")
    table.add_column("Scenario")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Fixes", justify="right")

    for flow in report.flows:
        for scenario in flow.scenarios:
            style = STATUS_STYLES[scenario.status]
            table.add_row(
                flow.flow,
                scenario.name,
                f"[{style}]{scenario.status.value.upper()}[/{style}]",
                format_duration(scenario.duration_ms),
                str(len(scenario.error_codes)),
                str(scenario.fix_count),
            )
    console.print(table)

    summary = report.summary
    ok = summary.failed == 0 and summary.errors == 0
    console.print(Panel(
        f"[bold]Total:[/bold] {summary.total}  "
        f"[green]Passed:[/green] {summary.passed}  "
        f"[red]Failed:[/red] {summary.failed}  "
        f"[bold red]Errors:[/bold red] {summary.errors}  "
        f"[yellow]Skipped:[/yellow] {summary.skipped}\n"
        f"[bold]Pass rate:[/bold] {summary.pass_rate}%  "
        f"[bold]Duration:[/bold] {format_duration(report.metadata.duration_ms)}",
        title=f"Run {report.metadata.run_id}",
        border_style="green" if ok else "red",
    ))


def save_report(
    report: TestReport,
    output_dir: Path,
    formats: Sequence[str] = ("json", "markdown", "html"),
) -> Dict[str, Path]:
    """
    Save report in multiple formats.

    Args:
        report: Report to save
        output_dir: Directory to save reports
        formats: Any of "json", "markdown", "html"

    Returns:
        Dict mapping format to file path
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = report.metadata.generated_at.strftime("%Y%m%d_%H%M%S")
    renderers = {"json": render_json, "markdown": render_markdown, "html": render_html}

    saved_files: Dict[str, Path] = {}
    for fmt in formats:
        if fmt not in renderers:
            raise ValueError(f"Unknown report format: {fmt}")
        path = output_dir / f"report-{timestamp}.{FORMAT_EXTENSIONS[fmt]}"
        path.write_text(renderers[fmt](report), encoding="utf-8")
        saved_files[fmt] = path

    logger.info(f"Saved test report to {output_dir} in formats: {list(saved_files.keys())}")
    return saved_files


HTML_REPORT_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>E2E Test Report {{ report.metadata.run_id }}</title>
    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            margin: 0;
            padding: 20px;
            background: #f5f5f5;
        }
        .container {
            max-width: 1200px;
            margin: 0 auto;
            background: white;
            padding: 30px;
            border-radius: 8px;
            box-shadow: 0 2px 4px rgba(0,0,0,0.1);
        }
        h1 { color: #333; }
        h2 { color: #666; margin-top: 30px; }
        .summary {
            display: grid;
            grid-template-columns: repeat(auto-fit, minmax(150px, 1fr));
            gap: 20px;
            margin: 20px 0;
        }
        .metric {
            background: #f9f9f9;
            padding: 20px;
            border-radius: 6px;
            text-align: center;
        }
        .metric-value { font-size: 2em; font-weight: bold; color: #333; }
        .metric-label { color: #666; margin-top: 5px; }
        .pass { color: #4caf50; }
        .fail { color: #f44336; }
        .error { color: #b71c1c; }
        .skip { color: #ff9800; }
        table { width: 100%; border-collapse: collapse; margin: 20px 0; }
        th, td { padding: 12px; text-align: left; border-bottom: 1px solid #e0e0e0; vertical-align: top; }
        th { background: #f5f5f5; font-weight: 600; }
        .severity-high { color: #f44336; font-weight: bold; }
        .severity-medium { color: #ff9800; }
        .severity-low { color: #2196f3; }
        .detail { color: #666; font-size: 0.9em; }
        pre {
            background: #f5f5f5;
            padding: 10px;
            border-radius: 4px;
            font-size: 0.9em;
            overflow-x: auto;
        }
    </style>
</head>
<body>
    <div class="container">
        <h1>E2E Test Report</h1>
        <p class="detail">Run {{ report.metadata.run_id }} &middot; {{ report.metadata.generated_at.isoformat() }} &middot; {{ format_duration(report.metadata.duration_ms) }}</p>

        <div class="summary">
            <div class="metric"><div class="metric-value">{{ report.summary.total }}</div><div class="metric-label">Total</div></div>
            <div class="metric"><div class="metric-value pass">{{ report.summary.passed }}</div><div class="metric-label">Passed</div></div>
            <div class="metric"><div class="metric-value fail">{{ report.summary.failed }}</div><div class="metric-label">Failed</div></div>
            <div class="metric"><div class="metric-value error">{{ report.summary.errors }}</div><div class="metric-label">Errors</div></div>
            <div class="metric"><div class="metric-value skip">{{ report.summary.skipped }}</div><div class="metric-label">Skipped</div></div>
            <div class="metric"><div class="metric-value">{{ report.summary.pass_rate }}%</div><div class="metric-label">Pass Rate</div></div>
        </div>

        <h2>Results by Flow</h2>
        {% for flow in report.flows %}
        <h3>{{ flow.flow }} ({{ flow.passed }}/{{ flow.total }} passed)</h3>
        <table>
            <tr><th>Status</th><th>Scenario</th><th>Duration</th><th>Details</th></tr>
            {% for scenario in flow.scenarios %}
            <tr>
                <td class="{{ scenario.status.value }}">{{ icons[scenario.status] }} {{ scenario.status.value|upper }}</td>
                <td>{{ scenario.name }}<div class="detail">{{ scenario.description }}</div></td>
                <td>{{ format_duration(scenario.duration_ms) }}</td>
                <td>
                    {% if scenario.error_message %}<div>{{ scenario.error_message }}</div>{% endif %}
                    {% for step in scenario.failed_steps %}
                    <div class="detail">Step {{ step.step_id }} ({{ step.action.value }}) {{ step.status.value }}: {{ step.error_message or '' }}</div>
                    {% endfor %}
                    {% for message in scenario.failed_comparisons %}
                    <div class="detail">{{ message }}</div>
                    {% endfor %}
                    {% for error in scenario.teardown_errors %}
                    <div class="detail">Teardown: {{ error }}</div>
                    {% endfor %}
                    {% for screenshot in scenario.screenshots %}
                    <div class="detail"><a href="{{ screenshot }}">{{ screenshot }}</a></div>
                    {% endfor %}
                </td>
            </tr>
            {% endfor %}
        </table>
        {% endfor %}

        {% if report.errors %}
        <h2>Detected Errors</h2>
        <table>
            <tr><th>Code</th><th>Severity</th><th>Count</th><th>Scenarios</th><th>Message</th></tr>
            {% for error in report.errors %}
            <tr>
                <td>{{ error.code }}</td>
                <td class="severity-{{ error.severity.value }}">{{ error.severity.value|upper }}</td>
                <td>{{ error.count }}</td>
                <td>{{ error.scenarios|join(', ') }}</td>
                <td>{{ error.message }}</td>
            </tr>
            {% endfor %}
        </table>
        {% endif %}

        {% if report.fixes %}
        <h2>Auto-Fix Attempts</h2>
        <table>
            <tr><th>Result</th><th>Scenario</th><th>Error</th><th>Strategy</th><th>Action</th><th>Attempts</th></tr>
            {% for fix in report.fixes %}
            <tr>
                <td class="{{ 'pass' if fix.success else 'fail' }}">{{ '✓' if fix.success else '✗' }}</td>
                <td>{{ fix.scenario }}</td>
                <td>{{ fix.error_code }}</td>
                <td>{{ fix.strategy.value }}</td>
                <td>{{ fix.action }}<div class="detail">{{ fix.details or '' }}</div></td>
                <td>{{ fix.attempts }}</td>
            </tr>
            {% for change in fix.code_changes %}
            <tr>
                <td></td>
                <td colspan="5">
                    <strong>{{ change.file }}{% if change.line %}:{{ change.line }}{% endif %}</strong>
                    <div class="detail">{{ change.reason }}</div>
                    {% if change.before %}<pre>{{ change.before }}</pre>{% endif %}
                    {% if change.after %}<pre>{{ change.after }}</pre>{% endif %}
                </td>
            </tr>
            {% endfor %}
            {% endfor %}
        </table>
        {% endif %}

        <h2>Environment</h2>
        <table>
            <tr><td>Base URL</td><td>{{ report.environment.base_url or 'n/a' }}</td></tr>
            <tr><td>Browser</td><td>{{ report.environment.browser }}{% if report.environment.headless %} (headless){% endif %}</td></tr>
            <tr><td>Python</td><td>{{ report.environment.python_version }}</td></tr>
            <tr><td>Platform</td><td>{{ report.environment.platform }}</td></tr>
            {% if report.environment.test_materials_used %}
            <tr><td>Test materials</td><td>{{ report.environment.test_materials_used|join(', ') }}</td></tr>
            {% endif %}
        </table>
    </div>
</body>
</html>
"""
