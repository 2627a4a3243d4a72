#!/usr/bin/env python3
"""
Utility functions for the aggregator.

This module contains shared helpers used by the scheduler and the command
line: duration tokens, URL validation and small text formatting helpers.
"""

from datetime import datetime, timezone
from typing import Optional
import re

from errors import ConfigurationError


MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE

DURATION_PATTERN = re.compile(r'^(\d+)(ms|s|m|h)$')
UNIT_MULTIPLIERS = {
    'ms': 1,
    's': MS_PER_SECOND,
    'm': MS_PER_MINUTE,
    'h': MS_PER_HOUR,
}


def parse_duration(token: str) -> int:
    """Parse a compact duration token into milliseconds.

    Args:
        token: An integer followed by one of ms, s, m or h (e.g. "30s", "1h")

    Returns:
        The duration in milliseconds

    Raises:
        ConfigurationError: If the token does not match <integer><unit>
    """
    match = DURATION_PATTERN.match(token or '')
    if not match:
        raise ConfigurationError(
            f"Invalid duration format: {token}. Expected format: <number><unit> (e.g., 1s, 1m, 1h)"
        )
    value, unit = match.groups()
    return int(value) * UNIT_MULTIPLIERS[unit]


def format_duration(milliseconds: int) -> str:
    """Format a duration in milliseconds using the largest applicable units.

    Leading zero-valued components are omitted; once a larger unit is shown
    the smaller ones follow even when zero ("1h0m0s").

    Examples:
        90000 -> "1m30s", 3600000 -> "1h0m0s", 500 -> "0s"
    """
    milliseconds = max(0, int(milliseconds))
    hours = milliseconds // MS_PER_HOUR
    minutes = (milliseconds % MS_PER_HOUR) // MS_PER_MINUTE
    seconds = (milliseconds % MS_PER_MINUTE) // MS_PER_SECOND

    if hours > 0:
        return f"{hours}h{minutes}m{seconds}s"
    if minutes > 0:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def format_timestamp(timestamp: Optional[float]) -> str:
    """Return a human-readable UTC timestamp, or "never" for missing values."""
    if timestamp in (None, ""):
        return "never"
    try:
        return datetime.fromtimestamp(float(timestamp), tz=timezone.utc).isoformat()
    except (OSError, OverflowError, ValueError, TypeError):
        return str(timestamp)
