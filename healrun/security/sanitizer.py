"""
Data sanitization for sensitive information protection.

Provides patterns and methods to detect and redact sensitive data
in logs and reports, including internal details leaked by the
application under test (stack frames, filesystem paths, credentials).
"""

import hashlib
import logging
import re
from copy import deepcopy
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, List, Optional, Pattern

logger = logging.getLogger(__name__)


class RedactionMethod(Enum):
    """Methods for redacting sensitive data."""
    MASK = auto()          # Replace with asterisks
    HASH = auto()          # Replace with hash
    PARTIAL = auto()       # Show first/last few chars
    PLACEHOLDER = auto()   # Replace with placeholder text


@dataclass
class SensitiveDataPattern:
    """Pattern for identifying sensitive data."""

    name: str
    pattern: Pattern[str]
    redaction_method: RedactionMethod = RedactionMethod.PLACEHOLDER
    placeholder: str = "[REDACTED]"
    partial_chars: int = 4
    description: str = ""
    enabled: bool = True

    def matches(self, text: str) -> List[re.Match]:
        """Find all matches in text."""
        if not self.enabled:
            return []
        return list(self.pattern.finditer(text))


SENSITIVE_KEYS = ("password", "secret", "token", "api_key", "apikey", "authorization", "cookie")


class DataSanitizer:
    """Main sanitizer for protecting sensitive data."""

    def __init__(self):
        """Initialize with default patterns."""
        self.patterns: List[SensitiveDataPattern] = []
        self._setup_default_patterns()

    def _setup_default_patterns(self) -> None:
        """Set up default sensitive data patterns."""
        # Internal details
        self.patterns.extend([
            SensitiveDataPattern(
                name="stack_frame",
                pattern=re.compile(r"\bat\s+[\w.$<>\[\]]+\s+\([^)]*:\d+:\d+\)"),
                placeholder="[STACK]",
                description="JavaScript stack frames"
            ),
            SensitiveDataPattern(
                name="filesystem_path",
                pattern=re.compile(r"(?:/Users/|/home/|/var/www/|[A-Za-z]:\\)[^\s'\"()<>]+"),
                placeholder="[PATH]",
                description="Absolute filesystem paths"
            ),
            SensitiveDataPattern(
                name="connection_string",
                pattern=re.compile(r"\b(?:postgres(?:ql)?|mysql|mongodb(?:\+srv)?|redis)://[^\s'\"]+", re.IGNORECASE),
                placeholder="[CONNECTION]",
                description="Database connection strings"
            ),
        ])

        # Authentication
        self.patterns.extend([
            SensitiveDataPattern(
                name="bearer_token",
                pattern=re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE),
                placeholder="Bearer [TOKEN]",
                description="Bearer authentication tokens"
            ),
            SensitiveDataPattern(
                name="jwt_token",
                pattern=re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+"),
                redaction_method=RedactionMethod.HASH,
                description="JWT tokens"
            ),
            SensitiveDataPattern(
                name="credential_assignment",
                pattern=re.compile(
                    r"\b(password|passwd|pwd|secret|api[_-]?key|access[_-]?token|service[_-]?role[_-]?key)\b(\s*[:=]\s*)[\"']?[^\"'\s,}]+[\"']?",
                    re.IGNORECASE,
                ),
                placeholder="[CREDENTIAL]",
                description="key=value credentials"
            ),
        ])

        # Personal information
        self.patterns.append(
            SensitiveDataPattern(
                name="email",
                pattern=re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
                redaction_method=RedactionMethod.PARTIAL,
                partial_chars=2,
                description="Email addresses"
            )
        )

    def add_pattern(self, pattern: SensitiveDataPattern) -> None:
        """Add a custom pattern."""
        self.patterns.append(pattern)

    def sanitize_string(
        self,
        text: str,
        patterns: Optional[List[SensitiveDataPattern]] = None
    ) -> str:
        """
        Sanitize a string using specified patterns.

        Args:
            text: Text to sanitize
            patterns: Patterns to use (defaults to all enabled patterns)

        Returns:
            Sanitized text
        """
        if not text:
            return text

        patterns = patterns or [p for p in self.patterns if p.enabled]
        result = text

        # Apply patterns one at a time so earlier redactions cannot
        # leave half-replaced spans for later ones.
        for pattern in patterns:
            matches = pattern.matches(result)
            for match in reversed(matches):
                result = self._apply_redaction(result, match, pattern)

        return result

    def _apply_redaction(
        self,
        text: str,
        match: re.Match,
        pattern: SensitiveDataPattern
    ) -> str:
        """Apply redaction based on method."""
        start, end = match.span()
        matched_text = match.group()

        if pattern.redaction_method == RedactionMethod.MASK:
            replacement = "*" * len(matched_text)

        elif pattern.redaction_method == RedactionMethod.HASH:
            hash_val = hashlib.sha256(matched_text.encode()).hexdigest()[:8]
            replacement = f"[HASH:{hash_val}]"

        elif pattern.redaction_method == RedactionMethod.PARTIAL:
            if len(matched_text) > pattern.partial_chars * 2:
                replacement = (
                    matched_text[:pattern.partial_chars] +
                    "*" * (len(matched_text) - pattern.partial_chars * 2) +
                    matched_text[-pattern.partial_chars:]
                )
            else:
                replacement = "*" * len(matched_text)

        else:  # PLACEHOLDER
            replacement = pattern.placeholder

        return text[:start] + replacement + text[end:]

    def sanitize_dict(self, data: Dict[str, Any], max_depth: int = 10) -> Dict[str, Any]:
        """
        Sanitize a dictionary recursively.

        Values under credential-like keys are replaced wholesale; other
        string values are pattern-sanitized.

        Args:
            data: Dictionary to sanitize
            max_depth: Maximum recursion depth

        Returns:
            Sanitized dictionary (copy)
        """
        if max_depth <= 0:
            logger.warning("Max recursion depth reached in sanitize_dict")
            return data

        result = deepcopy(data)

        def _sanitize_value(value: Any, key: Optional[str] = None) -> Any:
            if isinstance(value, str):
                if key and any(k in key.lower() for k in SENSITIVE_KEYS):
                    return "[REDACTED]"
                return self.sanitize_string(value)
            if isinstance(value, dict):
                return self.sanitize_dict(value, max_depth - 1)
            if isinstance(value, list):
                return [_sanitize_value(item) for item in value]
            return value

        for key, value in result.items():
            result[key] = _sanitize_value(value, key)

        return result

    def sanitize_log_record(self, record: logging.LogRecord) -> logging.LogRecord:
        """
        Sanitize a log record.

        Args:
            record: Log record to sanitize

        Returns:
            Sanitized log record
        """
        if hasattr(record, "msg"):
            record.msg = self.sanitize_string(str(record.msg))

        if hasattr(record, "args") and record.args:
            if isinstance(record.args, dict):
                record.args = self.sanitize_dict(record.args)
            else:
                record.args = tuple(
                    self.sanitize_string(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        return record

    def redact_message(self, message: str, max_length: int = 200) -> str:
        """
        Redact a message for display in reports.

        Sensitive spans are replaced and the result is truncated to
        ``max_length`` characters.

        Args:
            message: Raw message
            max_length: Maximum length of the returned text

        Returns:
            Redacted, truncated message
        """
        # Only the first line; the rest is usually a stack trace
        first_line = message.strip().splitlines()[0] if message.strip() else ""
        redacted = self.sanitize_string(first_line)
        if len(redacted) > max_length:
            redacted = redacted[: max(max_length - 3, 0)] + "..."
        return redacted


# Convenience functions
_default_sanitizer = DataSanitizer()


def sanitize_string(text: str) -> str:
    """Sanitize a string using default patterns."""
    return _default_sanitizer.sanitize_string(text)


def sanitize_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Sanitize a dictionary using default patterns."""
    return _default_sanitizer.sanitize_dict(data)


def redact_message(message: str, max_length: int = 200) -> str:
    """Redact a message using default patterns."""
    return _default_sanitizer.redact_message(message, max_length)
