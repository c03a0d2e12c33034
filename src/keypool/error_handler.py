import re
from typing import Optional

import httpx
from litellm.exceptions import RateLimitError

from .models import ProbeError, ProbeOutcome, ProbeRateLimited

RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429", "quota exceeded")

_RETRY_AFTER_PATTERN = re.compile(r"retry[- _]?after[:\s]*(\d+)", re.IGNORECASE)


def mask_credential(credential: str) -> str:
    """Returns a log-safe form of a secret showing only its last 6 characters."""
    if not credential:
        return "..."
    if len(credential) <= 6:
        return "..." + credential[-2:]
    return f"...{credential[-6:]}"


def error_message(error: Exception) -> str:
    """The exception text, or its class name when the text is empty."""
    message = str(error).strip()
    return message or type(error).__name__


def is_rate_limit_error(error: Exception) -> bool:
    """
    Checks if the exception signals rate limiting.

    Typed errors (litellm's RateLimitError, an httpx 429) are recognised
    directly; anything else is matched on its message.
    """
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        return True
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def get_retry_after(error: Exception) -> Optional[int]:
    """
    Extracts the 'retry-after' duration in seconds from an exception.

    Tries, in order: a `retry-after: N` style phrase in the message, a numeric
    Retry-After header on an attached response, and a `retry_after` attribute.
    """
    match = _RETRY_AFTER_PATTERN.search(str(error))
    if match:
        return int(match.group(1))

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        try:
            value = headers.get("retry-after")
        except (AttributeError, TypeError):
            value = None
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())

    value = getattr(error, "retry_after", None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)

    return None


def classify_probe_error(error: Exception) -> ProbeOutcome:
    """Converts an exception raised while probing into a ProbeOutcome."""
    if is_rate_limit_error(error):
        return ProbeRateLimited(retry_after_seconds=get_retry_after(error))
    return ProbeError(message=error_message(error))
