"""
healrun command line entry point.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console

from healrun import __version__
from healrun.browser.driver import PlaywrightSessionFactory
from healrun.config.settings import get_settings
from healrun.core.types import TestReport
from healrun.error_handling.exceptions import ScenarioValidationError
from healrun.monitoring.logger import get_logger, setup_logging
from healrun.monitoring.reporter import render_console_summary, save_report
from healrun.orchestration.orchestrator import ScenarioOrchestrator
from healrun.scenarios.loader import load_scenarios

console = Console()
logger = get_logger("healrun.main")


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        prog="healrun",
        description=f"healrun - declarative E2E scenarios with automatic remediation v{__version__}",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run every scenario under ./scenarios
  healrun --scenarios scenarios

  # Run two flows against a staging deployment, visible browser
  healrun --flow auth --flow upload --base-url https://staging.example.com --headed

  # Only smoke-tagged scenarios, JSON report only
  healrun --tag smoke --format json
        """,
    )

    parser.add_argument(
        "-s", "--scenarios",
        type=Path,
        help="Directory containing *.scenario.json files (default: settings.scenarios_dir)",
    )
    parser.add_argument(
        "-f", "--flow",
        action="append",
        help="Only run this flow (repeatable; order is kept in the report)",
    )
    parser.add_argument(
        "-t", "--tag",
        action="append",
        help="Only run scenarios carrying this tag (repeatable)",
    )
    parser.add_argument(
        "-u", "--base-url",
        help="Base URL of the application under test",
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window",
    )
    parser.add_argument(
        "-c", "--concurrency",
        type=int,
        help="Maximum scenarios running at once",
    )
    parser.add_argument(
        "--no-auto-fix",
        action="store_true",
        help="Disable automatic remediation",
    )
    parser.add_argument(
        "--format",
        action="append",
        choices=["json", "markdown", "html"],
        help="Report format (repeatable, default: json and markdown)",
    )
    parser.add_argument(
        "-o", "--output",
        type=Path,
        help="Output directory for reports (default: settings.reports_dir)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"healrun {__version__}",
    )

    return parser


async def run(parsed_args: argparse.Namespace) -> int:
    """Load scenarios, run them and write reports. Returns the exit code."""
    settings = get_settings()

    if parsed_args.base_url:
        settings.base_url = parsed_args.base_url.rstrip("/")
    if parsed_args.headed:
        settings.browser_headless = False
    if parsed_args.concurrency:
        settings.max_concurrent_scenarios = max(1, parsed_args.concurrency)
    if parsed_args.no_auto_fix:
        settings.auto_fix_enabled = False
    if parsed_args.flow:
        settings.test_flows = parsed_args.flow
    if parsed_args.log_level:
        settings.log_level = parsed_args.log_level

    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        sanitize_logs=settings.sanitize_logs,
    )
    settings.create_directories()

    scenarios_dir = parsed_args.scenarios or settings.scenarios_dir
    try:
        scenarios = load_scenarios(scenarios_dir, flows=settings.test_flows)
    except ScenarioValidationError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        for rule in e.failed_rules:
            console.print(f"  [dim]{rule}[/dim]")
        return 2

    if not scenarios:
        console.print(f"[yellow]No scenarios found in {scenarios_dir}[/yellow]")
        return 1

    console.print(
        f"\n[cyan]Running {len(scenarios)} scenario(s) against[/cyan] {settings.base_url}"
    )

    async with PlaywrightSessionFactory(settings) as factory:
        orchestrator = ScenarioOrchestrator(factory, settings)
        report: TestReport = await orchestrator.run_all(scenarios, tags=parsed_args.tag)

    output_dir = parsed_args.output or settings.reports_dir
    saved = save_report(report, output_dir, parsed_args.format or ["json", "markdown"])

    render_console_summary(report, console)
    for fmt, path in saved.items():
        console.print(f"[dim]{fmt} report:[/dim] {path}")

    failed = report.summary.failed + report.summary.errors
    return 0 if failed == 0 else 1


def main(args: Optional[List[str]] = None) -> int:
    """
    Main entry point for healrun.

    Args:
        args: Command line arguments

    Returns:
        Exit code (0 when no scenario failed or errored)
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)
    try:
        return asyncio.run(run(parsed_args))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        return 130
    except Exception as e:
        logger.exception("Fatal error")
        console.print(f"[red]Fatal error: {e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
