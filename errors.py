#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FeedIngestError(Exception):
    """Base class for errors raised by the scheduler and ingestion pipeline."""


class ValidationError(FeedIngestError):
    """Raised for malformed cron expressions or invalid fetch options."""


class NotFoundError(FeedIngestError):
    """Raised when a referenced subscription does not exist."""

    def __init__(self, subscription_id: int):
        super().__init__(f"Subscription {subscription_id} not found")
        self.subscription_id = subscription_id


class TransportError(FeedIngestError):
    """Raised when a feed cannot be retrieved (timeout, connection error, non-2xx).

    Attributes:
        status: HTTP status code when the server answered, otherwise None.
        retryable: Whether retrying the request may succeed.
    """

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class ParseError(FeedIngestError):
    """Raised when a retrieved payload is not a usable RSS/Atom document."""


class PersistenceError(FeedIngestError):
    """Raised when a storage operation fails."""


__all__ = [
    "FeedIngestError",
    "ValidationError",
    "NotFoundError",
    "TransportError",
    "ParseError",
    "PersistenceError",
]
