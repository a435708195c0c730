#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Per-source and
per-item errors are contained by the fetcher; only StoreError and
VerificationFailure are allowed to stop a run.
"""

from typing import Any, Optional


class IngestError(Exception):
    """Base class for ingestion pipeline errors."""


class SourceFetchError(IngestError):
    """Raised when a feed (or relay) request fails.

    Attributes:
        status: HTTP status returned by the host, if any.
        retryable: Whether the call site may retry within its budget.
        blocking: Whether the failure looks like rate limiting or bot blocking,
                  which makes the source eligible for the relay fallback.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retryable: bool = False,
        blocking: bool = False,
    ):
        super().__init__(message)
        self.status = status
        self.retryable = retryable
        self.blocking = blocking


class RelayError(SourceFetchError):
    """Raised when the relay answers with a non-success response.

    Attributes:
        upstream_status: Status the relay reported for the upstream feed host.
        details: Parsed error body, when the relay returned one.
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        upstream_status: Optional[int] = None,
        retryable: bool = False,
        details: Optional[dict] = None,
    ):
        super().__init__(message, status=status, retryable=retryable, blocking=retryable)
        self.upstream_status = upstream_status
        self.details = details or {}


class ItemProcessingError(IngestError):
    """Raised when a single feed item cannot be normalized."""


class StoreError(IngestError):
    """Raised when the persistent store cannot be read or written."""


class VerificationFailure(IngestError):
    """Raised when exported artifacts fail structural checks."""

    def __init__(self, message: str, report: Any = None):
        super().__init__(message)
        self.report = report


__all__ = [
    "IngestError",
    "SourceFetchError",
    "RelayError",
    "ItemProcessingError",
    "StoreError",
    "VerificationFailure",
]
