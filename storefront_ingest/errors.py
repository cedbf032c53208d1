"""
Exception types raised by the ingestion pipeline.

Handlers map these to HTTP status codes; the scheduled trigger logs and
alerts on anything that escapes a tenant run.
"""

from typing import Optional


class IngestError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(IngestError, ValueError):
    """Bad or missing configuration (domain, token, env vars). Never retried."""


class UpstreamError(IngestError):
    """Error talking to a storefront API."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Rate limiting, 5xx or connection trouble; safe to retry."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class FatalUpstreamError(UpstreamError):
    """Non-retryable HTTP status (4xx other than 429)."""


class MalformedResponseError(UpstreamError):
    """Upstream answered with a non-JSON or unparsable body."""


class StorageError(IngestError):
    """Database failure that survived the storage retry policy."""


class StagingSchemaError(StorageError):
    """The staging table lacks a column the writer cannot do without."""


class ClaimUnavailableError(IngestError):
    """Another invocation currently holds the claim for this store."""

    def __init__(self, domain: str) -> None:
        super().__init__(f"Store {domain} is being ingested by another invocation")
        self.domain = domain


class UnauthorizedError(IngestError):
    """Control endpoint called without a valid admin token."""
