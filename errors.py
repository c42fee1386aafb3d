#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FetchError(Exception):
    """Raised when a feed's bytes cannot be retrieved.

    Attributes:
        url: The URL that was being fetched.
        status: HTTP status code when the server answered with a non-200 response.
    """

    def __init__(self, url: str, message: str = "Fetch failed", status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class ParseError(Exception):
    """Raised when a feed document cannot be parsed as markup at all."""

    def __init__(self, message: str = "Document could not be parsed"):
        super().__init__(message)


__all__ = ["FetchError", "ParseError"]
