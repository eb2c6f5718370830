"""
Custom exceptions for the Substack Intelligence pipeline.

Every error that crosses a component boundary is one of these; provider
SDK exceptions are translated at the client that calls the provider.
"""

from typing import Any, Dict, Optional


class SubstackIntelError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(SubstackIntelError):
    """Raised when required configuration is missing or invalid."""
    pass


class AuthError(SubstackIntelError):
    """Mailbox or LLM credentials are invalid or expired."""
    pass


class TransientError(SubstackIntelError):
    """Network blip, rate limit or provider 5xx. Safe to retry."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after


class ExtractionError(TransientError):
    """LLM call timed out or was rate limited."""
    pass


class LLMRequestError(SubstackIntelError):
    """LLM provider rejected the request (bad request, not found). Not retried."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class ExtractionParseError(SubstackIntelError):
    """LLM output could not be parsed into candidates."""

    def __init__(self, message: str, raw_output: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.raw_output = raw_output


class DedupConflictError(SubstackIntelError):
    """Company upsert kept conflicting on the normalized name."""
    pass


class StorageError(SubstackIntelError):
    """Database operation failed."""
    pass


class InvalidTransitionError(StorageError):
    """Email status transition is not allowed."""

    def __init__(self, message: str, current: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message, {"current": current, "target": target})
        self.current = current
        self.target = target


class PipelineLockedError(SubstackIntelError):
    """Another pipeline run holds the tenant lock."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ValidationError(SubstackIntelError):
    """Request or data validation errors."""
    pass


class CircuitBreakerError(TransientError):
    """Circuit breaker is open, preventing calls."""
    pass
