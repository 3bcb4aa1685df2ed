# =============================================================================
# Error Taxonomy — Retrieval Core Exceptions
# =============================================================================
#
# Exception hierarchy:
#
#   FinNewsRAGError (base)
#   ├── TransientError                  → retried by RetryPolicy
#   │   ├── EmbeddingRateLimitError     code="rate_limited"
#   │   ├── EmbeddingUnavailableError   code="unavailable"
#   │   └── VectorStoreUnavailableError code="unavailable"
#   ├── EmbeddingInputRejectedError     code="input_rejected"
#   │   └── EmptyInputError
#   ├── EmbeddingPermanentError         code="permanent"
#   └── EmbeddingDimensionMismatchError code="dimension_mismatch"
#
# HANDLING RULES:
# - Transient errors are retried at the point of call. Once retries are
#   exhausted the unit of work (one chunk during ingestion, one query variant
#   during retrieval) is skipped and logged.
# - Input errors are raised before any network call; the caller skips.
# - A dimension mismatch is fatal for the retrieval call: scores computed
#   across embedding spaces are meaningless, not merely incomplete.
# =============================================================================

from __future__ import annotations


class FinNewsRAGError(Exception):
    """
    Base exception for the retrieval core.

    Attributes:
        message: Human-readable error description.
        code: Stable machine-readable error code.
    """

    code = "error"

    def __init__(self, message: str = "A retrieval core error occurred"):
        self.message = message
        super().__init__(message)


class TransientError(FinNewsRAGError):
    """Failure that may succeed if the same call is retried later."""

    code = "unavailable"


class EmbeddingRateLimitError(TransientError):
    """The embedding provider asked us to slow down."""

    code = "rate_limited"


class EmbeddingUnavailableError(TransientError):
    """Network failure, timeout or 5xx from the embedding provider."""


class VectorStoreUnavailableError(TransientError):
    """The vector store connection dropped or could not be opened."""


class EmbeddingInputRejectedError(FinNewsRAGError, ValueError):
    """The provider (or our own validation) rejected the input text."""

    code = "input_rejected"


class EmptyInputError(EmbeddingInputRejectedError):
    """Empty or whitespace-only text; never sent to the provider."""

    def __init__(self, message: str = "Cannot embed empty or whitespace-only text"):
        super().__init__(message)


class EmbeddingPermanentError(FinNewsRAGError):
    """Non-retryable provider failure (auth, permissions, unknown model)."""

    code = "permanent"


class EmbeddingDimensionMismatchError(FinNewsRAGError):
    """
    A query vector's dimensionality differs from the stored vectors.

    Raised instead of silently ranking against an incompatible embedding
    space. Usually means EMBEDDING_MODEL / EMBEDDING_DIMENSIONS changed
    without re-ingesting the corpus.
    """

    code = "dimension_mismatch"

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: store expects {expected}, "
            f"query vector has {actual}"
        )
