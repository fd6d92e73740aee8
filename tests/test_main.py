"""Tests for main.py CLI interface."""

import json
from unittest.mock import patch

import pytest

from conftest import FakeDriver, FakeSessionFactory
from healrun.main import create_parser, main


class FakePlaywrightFactory:
    """Stands in for the browser-backed factory."""

    def __init__(self, settings):
        self.settings = settings

    async def __aenter__(self):
        return FakeSessionFactory(lambda: FakeDriver())

    async def __aexit__(self, *exc_info):
        return None


def write_scenarios(directory, scenarios):
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "smoke.scenario.json").write_text(json.dumps(scenarios), encoding="utf-8")


class TestCLIParser:
    """Test command line parser."""

    def test_repeatable_options(self):
        args = create_parser().parse_args([
            "--flow", "auth", "--flow", "courses",
            "--tag", "smoke",
            "--format", "json", "--format", "html",
            "--headed", "--no-auto-fix", "-c", "3",
        ])

        assert args.flow == ["auth", "courses"]
        assert args.tag == ["smoke"]
        assert args.format == ["json", "html"]
        assert args.headed is True
        assert args.no_auto_fix is True
        assert args.concurrency == 3

    def test_defaults(self):
        args = create_parser().parse_args([])

        assert args.scenarios is None
        assert args.flow is None
        assert args.headed is False

    def test_unknown_format_rejected(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["--format", "pdf"])


class TestMain:
    """End-to-end CLI runs against a scripted browser."""

    @pytest.fixture
    def run_main(self, settings):
        def _run(args):
            with patch("healrun.main.get_settings", return_value=settings), \
                    patch("healrun.main.setup_logging"), \
                    patch("healrun.main.PlaywrightSessionFactory", FakePlaywrightFactory):
                return main(args)
        return _run

    def test_passing_run_writes_reports(self, run_main, settings, tmp_path):
        scenarios_dir = tmp_path / "scenarios"
        write_scenarios(scenarios_dir, [{
            "name": "home loads",
            "steps": [{"id": "open", "action": "navigate", "value": "/"}],
            "expected": [{"type": "navigation", "assertion": {"urlContains": "app.test"}}],
        }])
        output = tmp_path / "out"

        code = run_main(["--scenarios", str(scenarios_dir), "--output", str(output), "--no-auto-fix"])

        assert code == 0
        assert settings.auto_fix_enabled is False
        assert sorted(p.suffix for p in output.iterdir()) == [".json", ".md"]

    def test_failing_run_exit_code(self, run_main, tmp_path):
        scenarios_dir = tmp_path / "scenarios"
        write_scenarios(scenarios_dir, [{
            "name": "home redirects",
            "steps": [{"id": "open", "action": "navigate", "value": "/"}],
            "expected": [{"type": "navigation", "assertion": {"urlContains": "/dashboard"}}],
        }])

        assert run_main(["--scenarios", str(scenarios_dir), "--output", str(tmp_path / "out")]) == 1

    def test_invalid_scenarios(self, run_main, tmp_path):
        scenarios_dir = tmp_path / "scenarios"
        write_scenarios(scenarios_dir, [{"name": "broken", "steps": [{"id": "x", "action": "fly"}]}])

        assert run_main(["--scenarios", str(scenarios_dir)]) == 2

    def test_no_scenarios(self, run_main, tmp_path):
        (tmp_path / "empty").mkdir()

        assert run_main(["--scenarios", str(tmp_path / "empty")]) == 1
