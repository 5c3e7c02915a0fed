"""
Exception types raised by the discovery core.

The API layer maps each type to an HTTP status; everything else in the core
either raises one of these or degrades through its return value.
"""

from typing import Optional


class MovieDiscoveryError(Exception):
    """Base class for every error the core raises on purpose."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidInputError(MovieDiscoveryError, ValueError):
    """Caller input is empty or malformed. Never retried."""


class InsufficientInputError(InvalidInputError):
    """The caller's input carries no signal to build a preference from."""


class NotFoundError(MovieDiscoveryError, LookupError):
    """A referenced movie or point does not exist."""


class RemoteServiceError(MovieDiscoveryError):
    """The embedding provider or the vector index failed a call."""

    def __init__(
        self,
        message: str,
        operation: str,
        collection: Optional[str] = None,
        details: Optional[str] = None,
    ):
        super().__init__(message, details=details)
        self.operation = operation
        self.collection = collection


class ConfigurationError(MovieDiscoveryError, RuntimeError):
    """Deployment configuration is missing or inconsistent. Not recoverable per request."""
