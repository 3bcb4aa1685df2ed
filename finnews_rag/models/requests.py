# =============================================================================
# Retrieval Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the retrieval core from
# its consumer (the analysis service that owns the language-model call).
#
# DESIGN DECISION: Typed records instead of free-form dicts.
# Stock metadata used to travel as a loose dict with optional keys. A model
# gives the query expander one place to normalise blank strings to "absent",
# and catches misspelt keys at the boundary instead of silently producing
# fewer query variants.
# =============================================================================

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StockMetadata(BaseModel):
    """
    Descriptive data about a listed company, all of it optional.

    Each populated field unlocks extra query variants in the expander.

    Example:
        {
            "company_name": "Acme Corp",
            "sector": "Technology",
            "industry": "Semiconductors",
            "business_summary": "Designs chips for cloud computing and AI"
        }
    """

    company_name: str | None = Field(
        default=None,
        description="Display name, e.g. 'Acme Corp'",
    )
    sector: str | None = Field(default=None, examples=["Technology"])
    industry: str | None = Field(default=None, examples=["Semiconductors"])
    business_summary: str | None = Field(
        default=None,
        description="Free-text business description scanned for domain keywords",
    )

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("company_name", "sector", "industry", "business_summary")
    @classmethod
    def blank_as_missing(cls, value: str | None) -> str | None:
        # Scraped metadata often carries "" or whitespace for unknown fields
        if value is None:
            return None
        value = value.strip()
        return value or None


class RetrievalRequest(BaseModel):
    """
    A request for news context about one stock.

    Example:
        {
            "stock_code": "ACME",
            "metadata": {"company_name": "Acme Corp"},
            "published_before": "2024-07-01T00:00:00Z"
        }
    """

    stock_code: str = Field(
        ...,
        min_length=1,
        max_length=32,
        description="Ticker or exchange code of the stock",
        examples=["ACME", "005930"],
    )
    metadata: StockMetadata | None = None

    # Maximum number of merged candidates; None uses RETRIEVAL_OVERALL_CAP
    overall_cap: int | None = Field(default=None, ge=1, le=500)

    # Date window applied before ranking (before is exclusive, after inclusive)
    published_before: datetime | None = None
    published_after: datetime | None = None

    # Overall deadline in seconds; variants still running are dropped
    timeout: float | None = Field(default=None, gt=0)

    @field_validator("stock_code")
    @classmethod
    def strip_stock_code(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("stock_code must not be blank")
        return value
