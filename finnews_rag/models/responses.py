# =============================================================================
# Retrieval Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data going OUT of the retrieval core.
# They are the contract with the consumer that builds the language-model
# prompt:
# 1. `context` carries the (title, text, timestamp, score) tuples
# 2. `success` / `message` / `degraded` report what went wrong, if anything
# 3. `variants` is a per-query trace for debugging relevance problems
#
# DESIGN DECISION: Separate response models from DB models
# Stored chunks carry 1536-dimensional embeddings and bookkeeping columns
# (content_hash, embedding_model). None of that belongs in a prompt, so the
# response exposes exactly what the consumer needs.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, Field


class ContextItem(BaseModel):
    """One retrieved passage, ready to be pasted into a prompt."""

    title: str
    text: str
    timestamp: datetime | None = Field(
        default=None,
        description="Publication time of the source article",
    )
    score: float = Field(description="Cosine similarity to the matching query")

    # Provenance, for debugging and citation
    chunk_id: str
    document_id: str
    variant_type: str

    def as_tuple(self) -> tuple[str, str, datetime | None, float]:
        """The (title, text, timestamp, score) tuple form."""
        return (self.title, self.text, self.timestamp, self.score)


class VariantTrace(BaseModel):
    """What happened to a single query variant during retrieval."""

    query: str
    variant_type: str
    limit: int
    configured_threshold: float
    effective_threshold: float | None = Field(
        default=None,
        description="Threshold actually used; lower than configured when relaxed",
    )
    probe_max_similarity: float | None = None
    result_count: int = 0
    error: str | None = Field(
        default=None,
        description="Error code when the variant was skipped (e.g. 'unavailable', 'timeout')",
    )


class RetrievalResponse(BaseModel):
    """
    Result of `retrieve_context()`.

    `success` is False only when nothing could be retrieved because of a
    failure; an empty but healthy corpus is a success with no context.
    """

    success: bool
    message: str
    stock_code: str
    degraded: bool = Field(
        default=False,
        description="True when at least one query variant failed or timed out",
    )
    context: list[ContextItem] = Field(default_factory=list)
    variants: list[VariantTrace] = Field(default_factory=list)

    @property
    def context_tuples(self) -> list[tuple[str, str, datetime | None, float]]:
        return [item.as_tuple() for item in self.context]
