"""Rate-limit detection and the backoff ladder.

Providers report quota exhaustion in the agent's output rather than through
an exit code, so detection is a case-insensitive substring match on the raw
text. The ladder is fixed: 1h, 2h, 3h, then no further automatic retries.
"""

from datetime import datetime, timedelta
from typing import Optional

from .models import ErrorCategory


RATE_LIMIT_SIGNATURES = (
    "usage_limit_reached",
    "rate limit",
    "http 429",
    "too many requests",
)

BACKOFF_LADDER = (
    timedelta(hours=1),
    timedelta(hours=2),
    timedelta(hours=3),
)

_BACKOFF_LABELS = ("1 hour", "2 hours", "3 hours")
NO_FURTHER_RETRIES = "no further retries"


def is_rate_limit_error(output: Optional[str]) -> bool:
    """Check agent output for a known rate-limit signature."""
    if not output:
        return False
    haystack = output.lower()
    return any(signature in haystack for signature in RATE_LIMIT_SIGNATURES)


def compute_backoff(attempt: int) -> timedelta:
    """Backoff for the given 0-based attempt.

    Returns:
        The pause length, or a zero timedelta once the ladder is exhausted
        (meaning "stop retrying").
    """
    if 0 <= attempt < len(BACKOFF_LADDER):
        return BACKOFF_LADDER[attempt]
    return timedelta(0)


def backoff_label(attempt: int) -> str:
    if 0 <= attempt < len(_BACKOFF_LABELS):
        return _BACKOFF_LABELS[attempt]
    return NO_FURTHER_RETRIES


def resume_after(attempt: int, now: datetime) -> Optional[datetime]:
    """Absolute resume time, or None when no automatic retry remains."""
    delay = compute_backoff(attempt)
    if delay <= timedelta(0):
        return None
    return now + delay


def backoff_message(attempt: int, now: datetime, context: str = "") -> str:
    """Human-readable description used in gates and blocked reports."""
    until = now + compute_backoff(attempt)
    prefix = f"Rate limit hit{context}."
    return f"{prefix} Backoff: {backoff_label(attempt)}. Resume after {until.isoformat()}."


def pause_expired(until: Optional[datetime], now: datetime) -> bool:
    """True when a stored pause exists and wall-clock time has passed it."""
    return until is not None and now >= until


def classify_error(error_text: Optional[str]) -> ErrorCategory:
    """Classify an agent error message for logging and halting decisions.

    Args:
        error_text: The error message or output to classify

    Returns:
        ErrorCategory indicating what type of error occurred
    """
    if not error_text:
        return ErrorCategory.UNKNOWN

    error_lower = error_text.lower()

    if is_rate_limit_error(error_lower) or "429" in error_lower or "throttl" in error_lower:
        return ErrorCategory.RATE_LIMIT

    if any(phrase in error_lower for phrase in [
        "credit balance",
        "insufficient credits",
        "billing",
        "payment required",
    ]):
        return ErrorCategory.BILLING

    if any(phrase in error_lower for phrase in [
        "authentication",
        "unauthorized",
        "invalid api key",
        "401",
        "403",
    ]):
        return ErrorCategory.AUTH

    if any(phrase in error_lower for phrase in ["timed out", "timeout"]):
        return ErrorCategory.TIMEOUT

    if any(phrase in error_lower for phrase in [
        "connection",
        "network",
        "unreachable",
        "temporarily unavailable",
        "internal server error",
        "service unavailable",
        "502",
        "503",
        "504",
    ]):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN
