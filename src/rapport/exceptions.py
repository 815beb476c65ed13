"""Custom exception hierarchy for the rapport search layer."""

from __future__ import annotations


class RapportError(Exception):
    """Base exception for all rapport errors."""


class ConsentRequiredError(RapportError):
    """Raised when an AI-backed operation is attempted without the owner's consent."""


class InvalidQueryError(RapportError, ValueError):
    """Raised on caller contract violations (empty query, bad limit or threshold)."""


class EmbeddingUnavailableError(RapportError):
    """Raised when the remote embedding model failed or timed out.

    ``retryable`` is True for network and timeout failures, False for
    malformed responses.
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class InvalidDimensionError(EmbeddingUnavailableError):
    """Raised when a vector's length differs from the deployment's dimensionality."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Invalid embedding dimensions: {actual}, expected {expected}",
            retryable=False,
        )
        self.expected = expected
        self.actual = actual


class StoreUnavailableError(RapportError):
    """Raised on vector store failures (DB connection, timeouts, driver errors)."""

    retryable = True
