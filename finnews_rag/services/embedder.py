# =============================================================================
# Embedding Client — Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
#
# DESIGN DECISION: OpenAI SDK with configurable base_url.
# Most providers expose OpenAI-compatible embedding endpoints, so one client
# covers all of them.
#
# DESIGN DECISION: Errors are translated at this boundary.
# Callers never see SDK exceptions; they see the codes in errors.py:
#   RateLimitError                          → EmbeddingRateLimitError (retry)
#   APIConnectionError / APITimeoutError
#   InternalServerError / other 5xx         → EmbeddingUnavailableError (retry)
#   BadRequestError / UnprocessableEntity   → EmbeddingInputRejectedError
#   anything else from the SDK              → EmbeddingPermanentError
# Retryable errors go through the shared RetryPolicy.
#
# INPUT RULES:
# - Empty / whitespace-only text is rejected before any network call.
# - Text longer than max_input_chars is cut to its first max_input_chars
#   characters. The cut is purely positional, so the same input always yields
#   the same request (and therefore the same vector).
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from functools import lru_cache

import openai
from openai import OpenAI

from finnews_rag.config import settings
from finnews_rag.services.errors import (
    EmbeddingInputRejectedError,
    EmbeddingPermanentError,
    EmbeddingRateLimitError,
    EmbeddingUnavailableError,
    EmptyInputError,
)
from finnews_rag.services.retry import RetryPolicy, default_retry_policy

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """
    Converts text into fixed-dimension vectors via an embeddings API.

    The OpenAI client manages its own HTTP connection pool and is
    thread-safe, so one EmbeddingClient can serve concurrent retrieval
    variants running in worker threads.
    """

    def __init__(
        self,
        client: OpenAI,
        model: str = "text-embedding-3-small",
        dimensions: int | None = 1536,
        batch_size: int = 100,
        max_input_chars: int = 8000,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._dimensions = dimensions
        self._batch_size = batch_size
        self._max_input_chars = max_input_chars
        self._retry = retry_policy or default_retry_policy()

    @property
    def model(self) -> str:
        """Model identifier stored alongside every vector it produces."""
        return self._model

    @property
    def dimensions(self) -> int | None:
        return self._dimensions

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def embed(self, text: str) -> list[float]:
        """
        Embed a single text (query variant or one chunk).

        Raises:
            EmptyInputError: Text is empty or whitespace-only.
            EmbeddingRateLimitError / EmbeddingUnavailableError: Retries
                exhausted on a transient failure.
            EmbeddingInputRejectedError: Provider rejected the input.
            EmbeddingPermanentError: Non-retryable provider failure.
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed many texts, in sub-batches of `batch_size` per API call.

        Returns vectors in the SAME ORDER as the input texts. Every text is
        validated before the first call, so a bad input never costs a
        partial batch.

        Pipeline position: Step 2 of ingestion (chunk → embed → store).
        """
        if not texts:
            return []

        prepared = [self.prepare_input(t) for t in texts]
        vectors: list[list[float]] = []

        for i in range(0, len(prepared), self._batch_size):
            batch = prepared[i : i + self._batch_size]
            logger.debug(
                "Embedding batch %d-%d of %d texts (model=%s)",
                i + 1, i + len(batch), len(prepared), self._model,
            )
            vectors.extend(self._retry.call(self._create, batch))

        return vectors

    def prepare_input(self, text: str) -> str:
        """Validate and deterministically truncate one input text."""
        if not text or not text.strip():
            raise EmptyInputError()
        if len(text) > self._max_input_chars:
            logger.debug(
                "Truncating embedding input from %d to %d characters",
                len(text), self._max_input_chars,
            )
            return text[: self._max_input_chars]
        return text

    # -----------------------------------------------------------------------
    # Internal Helpers
    # -----------------------------------------------------------------------

    def _create(self, batch: list[str]) -> list[list[float]]:
        """One embeddings API call with SDK errors translated."""
        create_kwargs: dict = {"model": self._model, "input": batch}
        if self._dimensions:
            create_kwargs["dimensions"] = self._dimensions

        try:
            response = self._client.embeddings.create(**create_kwargs)
        except openai.RateLimitError as e:
            raise EmbeddingRateLimitError(f"Embedding rate limited: {e}") from e
        except (openai.APIConnectionError, openai.InternalServerError) as e:
            # APITimeoutError subclasses APIConnectionError
            raise EmbeddingUnavailableError(f"Embedding service unavailable: {e}") from e
        except (openai.BadRequestError, openai.UnprocessableEntityError) as e:
            raise EmbeddingInputRejectedError(f"Embedding input rejected: {e}") from e
        except openai.APIStatusError as e:
            if e.status_code >= 500:
                raise EmbeddingUnavailableError(
                    f"Embedding service error ({e.status_code}): {e}"
                ) from e
            raise EmbeddingPermanentError(f"Embedding request failed: {e}") from e
        except openai.OpenAIError as e:
            raise EmbeddingPermanentError(f"Embedding request failed: {e}") from e

        # Sort by index: order mismatches would silently corrupt embeddings
        return [item.embedding for item in sorted(response.data, key=lambda x: x.index)]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------
# API key resolution: OPENAI_API_KEY must be set for the default client.
# Lazy so that importing this module never needs credentials.
# ---------------------------------------------------------------------------


@lru_cache
def get_embedding_client() -> EmbeddingClient:
    """Build (once) the embedding client configured in settings."""
    if not settings.openai_api_key:
        raise ValueError(
            "No API key configured for embeddings. Set OPENAI_API_KEY in .env"
        )

    client_kwargs: dict = {
        "api_key": settings.openai_api_key,
        "timeout": settings.embedding_request_timeout,
        # Retries are owned by RetryPolicy, not the SDK
        "max_retries": 0,
    }
    if settings.embedding_base_url:
        client_kwargs["base_url"] = settings.embedding_base_url

    logger.info(
        "Initialized embedding client (model=%s, base_url=%s)",
        settings.embedding_model,
        settings.embedding_base_url or "https://api.openai.com/v1",
    )
    return EmbeddingClient(
        client=OpenAI(**client_kwargs),
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
        batch_size=settings.embedding_batch_size,
        max_input_chars=settings.embedding_max_input_chars,
    )
