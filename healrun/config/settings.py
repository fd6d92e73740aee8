"""Configuration management for healrun."""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="HEALRUN_",
        case_sensitive=False,
        extra="ignore",
    )

    # Target application
    base_url: str = Field(
        default="http://localhost:3000", description="Base URL of the application under test"
    )
    test_email: str = Field(default="", description="Login e-mail for the test account")
    test_password: str = Field(default="", description="Login password for the test account")

    # Login flow used by scenarios with setup.login
    login_path: str = Field(default="/login", description="Path of the login page")
    login_email_field: str = Field(default="email", description="Descriptor of the e-mail input")
    login_password_field: str = Field(
        default="password", description="Descriptor of the password input"
    )
    login_submit: str = Field(default="Sign in", description="Descriptor of the submit button")
    login_success_url: Optional[str] = Field(
        default="/dashboard", description="URL fragment reached after a successful login"
    )

    # Timeouts (ms)
    navigation_timeout_ms: int = Field(
        default=30000, ge=1000, description="Timeout for navigation steps"
    )
    action_timeout_ms: int = Field(
        default=10000, ge=500, description="Timeout for click/type style steps"
    )
    upload_timeout_ms: int = Field(
        default=60000, ge=1000, description="Timeout for upload steps"
    )
    ai_processing_timeout_ms: int = Field(
        default=180000, ge=1000, description="Timeout for waitFor steps"
    )
    poll_interval_ms: int = Field(
        default=500, ge=10, description="Polling interval for waitFor steps"
    )

    # Auto-fix policy
    auto_fix_enabled: bool = Field(default=True, description="Attempt automatic remediation")
    suggest_code_fixes: bool = Field(
        default=True, description="Emit advisory code-change suggestions"
    )
    retry_max_attempts: int = Field(
        default=3, ge=1, le=10, description="Maximum retries per error"
    )
    retry_backoff_ms: int = Field(default=1000, ge=0, description="Initial retry backoff")
    retry_backoff_multiplier: float = Field(
        default=2.0, ge=1.0, description="Backoff multiplier between retries"
    )
    retry_max_backoff_ms: int = Field(default=30000, ge=0, description="Backoff ceiling")
    rate_limit_wait_ms: int = Field(
        default=10000, ge=0, description="Fixed wait before retrying a throttled call"
    )
    wait_and_retry_max_attempts: int = Field(
        default=1, ge=1, le=5, description="Retries after a fixed wait"
    )

    # Log capture
    console_log_limit: int = Field(default=200, ge=1, description="Console lines per read")
    network_log_limit: int = Field(default=200, ge=1, description="Network lines per read")
    console_log_pattern: Optional[str] = Field(
        default=None, description="Only read console lines matching this pattern"
    )
    network_url_pattern: Optional[str] = Field(
        default=None, description="Only read requests whose URL matches this pattern"
    )

    # Browser
    browser_headless: bool = Field(default=True, description="Run browser in headless mode")
    browser_viewport_width: int = Field(default=1280, ge=320, description="Viewport width")
    browser_viewport_height: int = Field(default=800, ge=240, description="Viewport height")

    # Execution
    max_concurrent_scenarios: int = Field(
        default=1, ge=1, le=16, description="Scenarios run in parallel, one session each"
    )
    screenshot_on_failure: bool = Field(
        default=True, description="Capture a screenshot when a scenario fails"
    )
    test_flows: Annotated[List[str], NoDecode] = Field(
        default_factory=list, description="Flow order for loading and reporting"
    )

    # Storage
    scenarios_dir: Path = Field(default=Path("scenarios"), description="Scenario files")
    test_materials_dir: Path = Field(
        default=Path("test-materials"), description="Files used by upload steps"
    )
    reports_dir: Path = Field(default=Path("reports"), description="Reports output directory")
    screenshots_dir: Path = Field(
        default=Path("reports/screenshots"), description="Screenshots directory"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format (json or text)")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    sanitize_logs: bool = Field(default=True, description="Redact sensitive data in logs")

    @field_validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("log_format")
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v not in ["json", "text"]:
            raise ValueError(f"Invalid log format: {v}")
        return v

    @field_validator("base_url")
    def validate_base_url(cls, v: str) -> str:
        """Require an absolute URL without a trailing slash."""
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid base URL: {v!r}")
        return v.rstrip("/")

    @field_validator("test_flows", mode="before")
    @classmethod
    def coerce_flow_list(cls, raw: Any) -> List[str]:
        """Accept a list or a comma-separated string."""
        if raw is None:
            return []
        if isinstance(raw, str):
            return [item.strip() for item in raw.split(",") if item.strip()]
        if isinstance(raw, (list, tuple)):
            return [str(item).strip() for item in raw if item is not None and str(item).strip()]
        return raw

    def create_directories(self) -> None:
        """Create output directories if they don't exist."""
        for dir_path in [self.reports_dir, self.screenshots_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    # Load .env file if it exists
    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    return Settings()
