"""
Parsing of raw driver console and network output into structured records.

Drivers do not emit a fixed schema, so every parser here is tolerant:
unrecognised console lines become ``log`` messages and network fields are
extracted independently. None of these functions raise on bad input.
"""

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from healrun.core.types import (
    CapturedLogs,
    ConsoleLevel,
    ConsoleMessage,
    NetworkRequest,
    utc_now,
)
from healrun.monitoring.logger import get_logger

logger = get_logger(__name__)

UNKNOWN_URL = "<unknown>"

LEVEL_ALIASES: Dict[str, ConsoleLevel] = {
    "error": ConsoleLevel.ERROR,
    "err": ConsoleLevel.ERROR,
    "warning": ConsoleLevel.WARNING,
    "warn": ConsoleLevel.WARNING,
    "info": ConsoleLevel.INFO,
    "debug": ConsoleLevel.DEBUG,
    "verbose": ConsoleLevel.DEBUG,
    "trace": ConsoleLevel.DEBUG,
    "log": ConsoleLevel.LOG,
}

CONSOLE_LEVEL_PATTERN = re.compile(
    r"^\s*\[(error|err|warning|warn|info|debug|verbose|trace|log)\]\s*", re.IGNORECASE
)
CONSOLE_SOURCE_PATTERN = re.compile(r"\s*\((https?://[^()\s]+:\d+(?::\d+)?)\)\s*$")
STACK_CONTINUATION_PATTERN = re.compile(r"^\s+at\s+\S")

HTTP_METHODS = "GET|POST|PUT|PATCH|DELETE|HEAD|OPTIONS"
METHOD_URL_PATTERN = re.compile(rf"\[?\b({HTTP_METHODS})\b\]?\s+(\S+)", re.IGNORECASE)
ABSOLUTE_URL_PATTERN = re.compile(r"https?://[^\s\"'<>]+")
RELATIVE_URL_PATTERN = re.compile(r"(?<![\w/:.])/[^\s\"'<>]*")
STATUS_PATTERN = re.compile(r"(?<![\d.])([1-5]\d{2})(?![\d.]|\s*ms\b)")
STATUS_TEXT_PATTERN = re.compile(r"^\]?\s*([A-Za-z][A-Za-z '\-]*[A-Za-z])")
DURATION_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*ms\b", re.IGNORECASE)
FAILURE_PATTERN = re.compile(r"net::ERR_\w+|failed|error|timeout|timed out", re.IGNORECASE)

URL_TRAILING_PUNCTUATION = ",;)]}>"


def normalize_level(raw: Any) -> ConsoleLevel:
    """Map a driver-specific level name onto ConsoleLevel, defaulting to log."""
    if not isinstance(raw, str):
        return ConsoleLevel.LOG
    return LEVEL_ALIASES.get(raw.strip().lower(), ConsoleLevel.LOG)


def _parse_json_line(line: str) -> Optional[Dict[str, Any]]:
    stripped = line.strip()
    if not (stripped.startswith("{") and stripped.endswith("}")):
        return None
    try:
        data = json.loads(stripped)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _console_fields_from_text(line: str) -> Tuple[ConsoleLevel, str, Optional[str]]:
    level = ConsoleLevel.LOG
    text = line.strip()

    match = CONSOLE_LEVEL_PATTERN.match(text)
    if match:
        level = normalize_level(match.group(1))
        text = text[match.end():]

    source = None
    source_match = CONSOLE_SOURCE_PATTERN.search(text)
    if source_match and source_match.start() > 0:
        source = source_match.group(1)
        text = text[: source_match.start()]

    return level, text.strip(), source


def _console_fields_from_json(data: Dict[str, Any]) -> Tuple[ConsoleLevel, str, Optional[str]]:
    level = normalize_level(data.get("level") or data.get("type"))
    message = data.get("message", data.get("text", ""))
    source = data.get("source") or data.get("location") or data.get("url")
    if isinstance(source, dict):
        source = source.get("url")
    return level, str(message), str(source) if source else None


def parse_console_messages(
    raw: Optional[str], captured_at: Optional[datetime] = None
) -> List[ConsoleMessage]:
    """
    Parse raw console output into ConsoleMessages.

    One message per non-blank line. Indented ``at ...`` lines following a
    message are appended to it so stack traces stay with their error.

    Args:
        raw: Raw console text from the driver
        captured_at: Timestamp for messages without their own

    Returns:
        Parsed messages in input order
    """
    if not raw:
        return []

    timestamp = captured_at or utc_now()
    entries: List[Dict[str, Any]] = []

    for line in str(raw).splitlines():
        if not line.strip():
            continue

        if entries and STACK_CONTINUATION_PATTERN.match(line):
            entries[-1]["message"] += "\n" + line.strip()
            continue

        data = _parse_json_line(line)
        if data is not None and ("message" in data or "text" in data):
            level, message, source = _console_fields_from_json(data)
        else:
            level, message, source = _console_fields_from_text(line)

        entries.append({
            "level": level,
            "message": message or line.strip(),
            "source": source,
        })

    return [
        ConsoleMessage(timestamp=timestamp, **entry)
        for entry in entries
    ]


def _clean_url(url: str) -> str:
    return url.rstrip(URL_TRAILING_PUNCTUATION)


def _extract_method_and_url(line: str) -> Tuple[str, Optional[str], int]:
    """Return (method, url, end offset of the url) for a network line."""
    match = METHOD_URL_PATTERN.search(line)
    if match:
        url = _clean_url(match.group(2))
        if url.startswith(("http://", "https://", "/")):
            return match.group(1).upper(), url, match.end(2)

    match = ABSOLUTE_URL_PATTERN.search(line)
    if match is None:
        match = RELATIVE_URL_PATTERN.search(line)
    if match:
        return "GET", _clean_url(match.group(0)), match.end()

    return "GET", None, 0


def _body_text(body: Any) -> Optional[str]:
    if body is None or isinstance(body, str):
        return body
    return json.dumps(body, default=str)


def _request_from_json(data: Dict[str, Any], timestamp: datetime) -> Optional[NetworkRequest]:
    url = data.get("url")
    if not url:
        return None

    status = data.get("status")
    try:
        status = int(status) if status not in (None, "", 0) else None
    except (TypeError, ValueError):
        status = None

    duration = data.get("duration")
    try:
        duration = float(duration) if duration is not None else None
    except (TypeError, ValueError):
        duration = None

    error_message = data.get("errorText") or data.get("error") or data.get("failure")
    failed = bool(data.get("failed")) or (status is None and bool(error_message))

    return NetworkRequest(
        url=str(url),
        method=str(data.get("method") or "GET").upper(),
        status=status,
        status_text=str(data.get("statusText") or data.get("status_text") or ""),
        duration=duration,
        failed=failed,
        error_message=str(error_message) if error_message else None,
        request_body=_body_text(data.get("requestBody")),
        response_body=_body_text(data.get("responseBody")),
        timestamp=timestamp,
    )


def parse_network_line(line: str, timestamp: Optional[datetime] = None) -> Optional[NetworkRequest]:
    """
    Parse one network line.

    Method, URL, status, status text, duration and the failure heuristic
    are extracted independently. ``failed`` marks transport failures, so
    it is only set when no HTTP status was found.

    Returns:
        NetworkRequest, or None for lines carrying no request signal
    """
    timestamp = timestamp or utc_now()

    data = _parse_json_line(line)
    if data is not None:
        request = _request_from_json(data, timestamp)
        if request is not None:
            return request

    method, url, url_end = _extract_method_and_url(line)
    if url is None:
        failure = FAILURE_PATTERN.search(line)
        if failure is None:
            return None
        return NetworkRequest(
            url=UNKNOWN_URL,
            method=method,
            failed=True,
            error_message=line.strip(),
            timestamp=timestamp,
        )

    remainder = line[url_end:]

    status = None
    status_text = ""
    status_match = STATUS_PATTERN.search(remainder)
    if status_match:
        status = int(status_match.group(1))
        text_match = STATUS_TEXT_PATTERN.match(remainder[status_match.end():])
        if text_match:
            status_text = text_match.group(1).strip()

    duration = None
    duration_match = DURATION_PATTERN.search(remainder)
    if duration_match:
        duration = float(duration_match.group(1))

    failed = False
    error_message = None
    if status is None:
        failure = FAILURE_PATTERN.search(remainder)
        if failure:
            failed = True
            error_message = remainder.strip(" -=>[]") or failure.group(0)

    return NetworkRequest(
        url=url,
        method=method,
        status=status,
        status_text=status_text,
        duration=duration,
        failed=failed,
        error_message=error_message,
        timestamp=timestamp,
    )


def parse_network_requests(
    raw: Optional[str], captured_at: Optional[datetime] = None
) -> List[NetworkRequest]:
    """
    Parse raw network output into NetworkRequests.

    Args:
        raw: Raw network text from the driver
        captured_at: Timestamp applied to parsed requests

    Returns:
        Parsed requests in input order
    """
    if not raw:
        return []

    timestamp = captured_at or utc_now()
    requests: List[NetworkRequest] = []

    for line in str(raw).splitlines():
        if not line.strip():
            continue
        request = parse_network_line(line, timestamp)
        if request is None:
            logger.debug("Ignoring network line without request data", extra={"line": line[:200]})
            continue
        requests.append(request)

    return requests


def parse_logs(
    console_raw: Optional[str],
    network_raw: Optional[str],
    page_path: str = "",
    captured_at: Optional[datetime] = None,
) -> CapturedLogs:
    """Parse both channels into a single CapturedLogs."""
    timestamp = captured_at or utc_now()
    return CapturedLogs(
        console=parse_console_messages(console_raw, timestamp),
        network=parse_network_requests(network_raw, timestamp),
        timestamp=timestamp,
        page_path=page_path,
    )


# Analysis helpers


def is_failed_request(request: NetworkRequest) -> bool:
    """Transport failure or HTTP status >= 400."""
    return request.failed or (request.status is not None and request.status >= 400)


def get_log_summary(logs: CapturedLogs) -> Dict[str, int]:
    """Count errors, warnings and requests in a capture."""
    return {
        "console_errors": sum(1 for m in logs.console if m.level == ConsoleLevel.ERROR),
        "warnings": sum(1 for m in logs.console if m.level == ConsoleLevel.WARNING),
        "network_errors": sum(1 for r in logs.network if is_failed_request(r)),
        "total_requests": len(logs.network),
        "failed_requests": sum(1 for r in logs.network if r.failed),
    }


def filter_logs_by_endpoint(
    logs: CapturedLogs, endpoint: str, method: Optional[str] = None
) -> List[NetworkRequest]:
    """Requests whose URL contains ``endpoint``, optionally restricted by method."""
    return [
        r for r in logs.network
        if endpoint in r.url and (not method or r.method == method.upper())
    ]


def was_api_call_successful(
    logs: CapturedLogs, endpoint: str, method: Optional[str] = None
) -> bool:
    """True if any matching request completed with a 2xx status."""
    return any(
        not r.failed and r.status is not None and 200 <= r.status < 300
        for r in filter_logs_by_endpoint(logs, endpoint, method)
    )


def get_all_error_messages(logs: CapturedLogs) -> List[str]:
    """Human-readable lines for every console error and failed request."""
    messages = [
        f"[Console] {m.message}"
        for m in logs.console
        if m.level == ConsoleLevel.ERROR
    ]
    for request in logs.network:
        if request.failed:
            messages.append(
                f"[Network] {request.method} {request.url}: {request.error_message or 'failed'}"
            )
        elif request.status is not None and request.status >= 400:
            messages.append(
                f"[Network] {request.method} {request.url}: {request.status} {request.status_text}".rstrip()
            )
    return messages
