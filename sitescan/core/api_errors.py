"""
Error types for the scan pipeline.

APIError and its subclasses come out of the remote service clients and say
whether a retry could help. PipelineError and its subclasses are what the
pipeline itself raises: only DiscoveryError ends a scan, EnrichmentError is
contained to one site and PersistenceError to one write.
"""

from typing import Any, Dict, Optional


class APIError(Exception):
    """
    A failed call to a remote service.

    Attributes:
        message: What went wrong
        source: Service name ('discovery', 'capacity', 'ownership')
        status_code: HTTP status, when there was a response
        response_data: Decoded body, when there was one
        retryable: Whether another attempt could succeed
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        self.status_code = status_code
        self.response_data = response_data

    def __str__(self) -> str:
        text = f"[{self.source}] {self.message}" if self.source else self.message
        if self.status_code:
            text += f" (HTTP {self.status_code})"
        return text


class RetryableError(APIError):
    """5xx responses, timeouts and dropped connections."""

    retryable = True


class RateLimitError(RetryableError):
    """HTTP 429. retry_after is the wait in seconds before the next attempt."""

    DEFAULT_RETRY_AFTER = 30

    def __init__(self, message: str, source: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(message, source=source, status_code=429)
        self.retry_after = retry_after or self.DEFAULT_RETRY_AFTER


class FatalError(APIError):
    """4xx responses, error payloads and bodies that do not parse."""


def classify_http_error(status_code: int, response_text: str = "", source: Optional[str] = None) -> APIError:
    """Map an HTTP error status to the matching APIError subclass."""
    body = response_text[:200]
    if status_code == 429:
        return RateLimitError(f"Rate limited: {body}", source=source)
    if status_code >= 500:
        return RetryableError(f"Server error: {body}", source=source, status_code=status_code)
    return FatalError(f"Request rejected: {body}", source=source, status_code=status_code)


# =============================================================================
# PIPELINE TAXONOMY
# =============================================================================


class PipelineError(Exception):
    """Base class for scan pipeline errors."""
    pass


class DiscoveryError(PipelineError):
    """
    Discovery failed or returned no usable candidates.

    Aborts the scan: the session moves to `failed` and no sites are enrolled.
    """

    def __init__(self, message: str, query: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.query = query


class EnrichmentError(PipelineError):
    """Capacity analysis for a single site failed. Contained to that site."""

    def __init__(self, message: str, site_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.site_id = site_id


class PersistenceError(PipelineError):
    """
    Storing a single site failed.

    Logged and surfaced as a soft warning; the site stays `completed` in memory.
    """

    def __init__(self, message: str, site_name: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.site_name = site_name


class ScanInProgressError(PipelineError):
    """A scan was requested while another one is still running."""

    def __init__(self, active_scan_id: str):
        super().__init__(f"Scan {active_scan_id} is still running")
        self.active_scan_id = active_scan_id


class InvalidTransitionError(ValueError):
    """A site analysis status change outside pending -> analyzing -> terminal."""
    pass
