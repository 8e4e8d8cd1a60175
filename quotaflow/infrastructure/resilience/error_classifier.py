"""Classifies upstream failures into retry-policy classes.

Everything here is a pure function of an exception's type names, status code,
headers and message, so provider SDK exceptions (openai, groq, httpx) can be
classified without importing those libraries.
"""

import asyncio
import email.utils
import re
import time
from dataclasses import dataclass
from typing import Any, Optional

from quotaflow.core.exceptions import QuotaflowError, UpstreamHttpError
from quotaflow.domain.models.calls import ErrorKind

QUOTA_PATTERN = re.compile(
    r"quota|billing|plan[ _-]?limit|insufficient[ _-]?(credits?|funds|balance)|credit balance|daily limit|payment required",
    re.IGNORECASE,
)
RATE_LIMIT_PATTERN = re.compile(r"\b429\b|too many requests|rate[ _-]?limit", re.IGNORECASE)
TRANSIENT_PATTERN = re.compile(
    r"time[ _-]?out|timed out|econnreset|ecancelled|connection (reset|error|refused|aborted|closed)"
    r"|network|overload|unavailable|temporarily|bad gateway|socket hang up|fetch failed|\b50[0234]\b",
    re.IGNORECASE,
)
RETRY_HINT_PATTERN = re.compile(
    r"retry(?:[ _-]?after|[ _-]?delay|\s+in)\W{0,4}(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|sec|seconds?)?",
    re.IGNORECASE,
)

# Exception class names (anywhere in the MRO) that mean "try again later"
TRANSIENT_TYPE_MARKERS = ("Timeout", "Connect", "Network", "RemoteProtocol", "ReadError", "WriteError")
MALFORMED_RESPONSE_TYPES = (ValueError, TypeError, KeyError, AttributeError, IndexError)


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one failure."""
    kind: ErrorKind
    status_code: Optional[int] = None
    retry_after_s: Optional[float] = None
    reason: str = ""


def parse_retry_after(value: Any, now: Optional[float] = None) -> Optional[float]:
    """Parses a Retry-After style hint into seconds.

    Accepts numbers, numeric strings ("12", "1.5s", "250ms") and HTTP dates.
    Returns None when the value cannot be interpreted.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return max(0.0, float(value))
    text = str(value).strip()
    if not text:
        return None
    match = re.fullmatch(r"(\d+(?:\.\d+)?)\s*(ms|s)?", text, re.IGNORECASE)
    if match:
        amount = float(match.group(1))
        return amount / 1000.0 if (match.group(2) or "").lower() == "ms" else amount
    try:
        parsed = email.utils.parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    current = time.time() if now is None else now
    return max(0.0, parsed.timestamp() - current)


def retry_hint_from_message(message: str) -> Optional[float]:
    """Finds hints like ``"retryDelay": "30s"`` or "retry in 12.5s" in a message."""
    match = RETRY_HINT_PATTERN.search(message or "")
    if not match:
        return None
    amount = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    return amount / 1000.0 if unit.startswith("m") else amount


def classify_response(status_code: Optional[int], message: str = "", retry_after_s: Optional[float] = None) -> Classification:
    """Classifies a failure from its HTTP status and message text.

    Args:
        status_code: HTTP status, if the failure carried one.
        message: Error text (body, exception message).
        retry_after_s: Provider hint already extracted from headers.

    Returns:
        The classification; unknown failures are FATAL.
    """
    text = message or ""

    if status_code == 402 or QUOTA_PATTERN.search(text):
        return Classification(ErrorKind.QUOTA_EXCEEDED, status_code, None, "quota/billing limit")

    if status_code == 429 or RATE_LIMIT_PATTERN.search(text):
        hint = retry_after_s if retry_after_s is not None else retry_hint_from_message(text)
        return Classification(ErrorKind.RATE_LIMITED, status_code, hint, "rate limited")

    if status_code is not None:
        if status_code == 408 or status_code >= 500:
            return Classification(ErrorKind.TRANSIENT, status_code, retry_after_s, f"server error {status_code}")
        if 400 <= status_code < 500:
            return Classification(ErrorKind.FATAL, status_code, None, f"client error {status_code}")

    if TRANSIENT_PATTERN.search(text):
        return Classification(ErrorKind.TRANSIENT, status_code, retry_after_s, "transient failure")

    return Classification(ErrorKind.FATAL, status_code, None, "unrecognised failure")


def extract_status(error: BaseException) -> Optional[int]:
    """Reads an HTTP status from SDK/httpx/own exceptions, if present."""
    for candidate in (
        getattr(error, "status_code", None),
        getattr(error, "status", None),
        getattr(getattr(error, "response", None), "status_code", None),
    ):
        if isinstance(candidate, int) and not isinstance(candidate, bool):
            return candidate
    return None


def extract_retry_after(error: BaseException) -> Optional[float]:
    """Reads a retry-after hint from the exception or its HTTP response headers."""
    explicit = getattr(error, "retry_after_s", None)
    if explicit is not None:
        return parse_retry_after(explicit)
    headers = getattr(getattr(error, "response", None), "headers", None)
    if not headers:
        return None
    try:
        millis = headers.get("retry-after-ms") or headers.get("Retry-After-Ms")
        if millis is not None:
            hint = parse_retry_after(millis)
            return hint / 1000.0 if hint is not None else None
        return parse_retry_after(headers.get("retry-after") or headers.get("Retry-After"))
    except AttributeError:
        return None


def _has_transient_type(error: BaseException) -> bool:
    return any(
        marker in cls.__name__
        for cls in type(error).__mro__
        for marker in TRANSIENT_TYPE_MARKERS
    )


def classify_error(error: BaseException) -> Classification:
    """Classifies an exception raised by an upstream invocation."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return Classification(ErrorKind.TRANSIENT, None, None, "call timed out")

    status = extract_status(error)
    message = str(error)

    if isinstance(error, QuotaflowError) and not isinstance(error, UpstreamHttpError) and status is None:
        return Classification(error.kind, None, None, message)

    if status is not None:
        return classify_response(status, message, extract_retry_after(error))

    if isinstance(error, ConnectionError) or _has_transient_type(error):
        return Classification(ErrorKind.TRANSIENT, None, None, type(error).__name__)

    if isinstance(error, MALFORMED_RESPONSE_TYPES):
        return Classification(ErrorKind.FATAL, None, None, f"malformed response: {type(error).__name__}")

    return classify_response(None, message, extract_retry_after(error))
