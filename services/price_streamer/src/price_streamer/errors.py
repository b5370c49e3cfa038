"""Custom exceptions for the price streamer."""

from typing import Optional


class PriceStreamError(Exception):
    """Base exception for price streamer errors."""
    pass


class UpstreamError(PriceStreamError):
    """Raised when the price source call fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitError(UpstreamError):
    """Raised when the price source answers HTTP 429."""

    def __init__(self, message: str = "Rate limit exceeded", status: int = 429):
        super().__init__(message, status=status)


class AuthError(UpstreamError):
    """Raised when the price source rejects the API key (HTTP 401)."""

    def __init__(self, message: str = "Invalid API key", status: int = 401):
        super().__init__(message, status=status)


class PublishError(PriceStreamError):
    """Raised when the stream store rejects a write/emit."""
    pass


class MalformedRecord(PriceStreamError):
    """Raised when stored data cannot be decoded into a price record."""
    pass


class ConfigurationError(PriceStreamError):
    """Raised when configuration is invalid or incomplete."""
    pass


class PipelineBusyError(PriceStreamError):
    """Raised when a run is requested while another is in flight."""
    pass


def upstream_error_for_status(status: int, message: str) -> UpstreamError:
    """Build the UpstreamError subtype matching an HTTP status."""
    if status == 429:
        return RateLimitError(message)
    if status == 401:
        return AuthError(message)
    return UpstreamError(message, status=status)
