#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Any, Optional


class ConfigurationError(ValueError):
    """Raised for invalid startup configuration (e.g. a malformed duration token)."""


class FetchError(Exception):
    """Raised when a feed cannot be retrieved or fails channel-level validation.

    Attributes:
        url: The feed URL that was being fetched.
        status: HTTP status code when the failure was a non-success response.
    """

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class DuplicateKeyError(Exception):
    """Raised by the store when an insert violates a uniqueness constraint."""

    def __init__(self, table: str, column: str, value: Any = None):
        super().__init__(f"Duplicate {table}.{column}: {value}")
        self.table = table
        self.column = column
        self.value = value


class CommandError(Exception):
    """User-facing command failure; the CLI prints it and exits non-zero."""


__all__ = ["ConfigurationError", "FetchError", "DuplicateKeyError", "CommandError"]
