"""Security helpers."""

from healrun.security.sanitizer import DataSanitizer, RedactionMethod, redact_message

__all__ = ["DataSanitizer", "RedactionMethod", "redact_message"]
