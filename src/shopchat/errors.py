"""Error taxonomy shared by the RAG core and the channel adapters."""

from __future__ import annotations


class ShopchatError(Exception):
    """Base class for all shopchat errors."""


class ConfigurationError(ShopchatError):
    """A required key, secret or setting is missing. Not retried."""


class ValidationError(ShopchatError):
    """Input rejected before any side effect (empty text, missing field)."""


class SignatureError(ValidationError):
    """Webhook payload failed origin verification."""


class ExternalServiceError(ShopchatError):
    """An external service answered with a failure or could not be reached."""

    def __init__(self, service: str, message: str, status: int | None = None):
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status = status


class TransientServiceError(ExternalServiceError):
    """Timeout, 5xx or 429 that survived every retry attempt."""


class EmbeddingDimensionError(ShopchatError):
    """Vector length differs from the configured embedding dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"expected embedding of dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class RetrievalError(ShopchatError):
    """The catalog store failed while serving a search."""
