# =============================================================================
# Query Expander — Diversified Search Queries for One Stock
# =============================================================================
#
# A single query ("ACME") matches only the articles that mention the ticker.
# News about a company is spread across its ticker, its name, its industry
# and the products it sells, so retrieval fans out into several query
# variants, each with its own result budget and similarity threshold.
#
# EXPANSION RULES (priority order, earlier = more specific):
#   1. stock_code        "ACME"                      limit 15, threshold 0.50
#   2. company_name      "Acme Corp"                 limit 12, threshold 0.40
#   3. company_keyword   "Acme Corp earnings", ...   limit  8, threshold 0.30
#   4. industry          "Semiconductors industry"   limit  8, threshold 0.25
#   5. sector            "Technology sector"         limit  8, threshold 0.25
#   6. business_keyword  up to 2 dictionary terms    limit  6, threshold 0.25
#   7. analysis_keyword  "ACME analysis", ...        limit  5, threshold 0.30
#
# DESIGN DECISION: Looser thresholds for broader variants.
# A ticker match is highly specific, so it must score well to count.
# "Semiconductors industry" is deliberately broad: relevant articles score
# lower against it, and a strict cutoff would discard all of them.
#
# Expansion is pure and deterministic: same input, same variants, same order.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from finnews_rag.models.requests import StockMetadata

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VariantBudget:
    """Result-count budget and similarity threshold for one variant type."""

    limit: int
    threshold: float


@dataclass(frozen=True)
class QueryVariant:
    """One search query derived from a stock. Never persisted."""

    query: str
    variant_type: str
    limit: int
    threshold: float
    priority: int  # position in expansion order, 0 = first


# ---------------------------------------------------------------------------
# Reference Configuration
# ---------------------------------------------------------------------------
# Tuned on a news corpus embedded with text-embedding-3-small. Other
# embedding models produce differently distributed scores; pass `budgets`
# to QueryExpander rather than editing these.
# ---------------------------------------------------------------------------

DEFAULT_VARIANT_BUDGETS: dict[str, VariantBudget] = {
    "stock_code": VariantBudget(limit=15, threshold=0.5),
    "company_name": VariantBudget(limit=12, threshold=0.4),
    "company_keyword": VariantBudget(limit=8, threshold=0.3),
    "industry": VariantBudget(limit=8, threshold=0.25),
    "sector": VariantBudget(limit=8, threshold=0.25),
    "business_keyword": VariantBudget(limit=6, threshold=0.25),
    "analysis_keyword": VariantBudget(limit=5, threshold=0.3),
}

COMPANY_KEYWORDS: tuple[str, ...] = ("earnings", "outlook", "investment", "share price")

ANALYSIS_KEYWORDS: tuple[str, ...] = ("analysis", "report")

# Matched as case-insensitive substrings of the business summary, so very
# short terms ("AI", "IT") are left out: they occur inside ordinary words.
BUSINESS_TERMS: tuple[str, ...] = (
    "semiconductor", "memory", "display", "smartphone", "electronics",
    "software", "hardware", "biotech", "pharmaceutical", "chemical",
    "petroleum", "automotive", "shipbuilding", "construction", "financial",
    "banking", "securities", "insurance", "telecom", "gaming",
    "entertainment", "retail", "food", "beverage", "apparel", "cosmetics",
    "airline", "logistics", "energy", "artificial intelligence", "big data",
    "cloud", "5g", "blockchain", "technology",
)

MAX_BUSINESS_KEYWORDS = 2


def extract_business_keywords(
    business_summary: str | None,
    terms: Sequence[str] = BUSINESS_TERMS,
) -> list[str]:
    """
    Dictionary terms found in a business summary, in dictionary order.

    Matching is case-insensitive substring containment. Returns every match;
    the expander keeps only the first MAX_BUSINESS_KEYWORDS.
    """
    if not business_summary:
        return []
    summary = business_summary.lower()
    return [term for term in terms if term.lower() in summary]


class QueryExpander:
    """
    Turns a stock identifier (plus optional metadata) into query variants.

    Usage:
        expander = QueryExpander()
        variants = expander.expand("ACME", StockMetadata(company_name="Acme Corp"))
    """

    def __init__(
        self,
        budgets: Mapping[str, VariantBudget] | None = None,
        business_terms: Sequence[str] = BUSINESS_TERMS,
    ) -> None:
        self._budgets = {**DEFAULT_VARIANT_BUDGETS, **(budgets or {})}
        self._business_terms = tuple(business_terms)

    def expand(
        self,
        stock_code: str,
        metadata: StockMetadata | None = None,
    ) -> list[QueryVariant]:
        """
        Build the ordered list of query variants for a stock.

        Raises:
            ValueError: If stock_code is blank.
        """
        stock_code = (stock_code or "").strip()
        if not stock_code:
            raise ValueError("stock_code must not be blank")

        planned: list[tuple[str, str]] = [(stock_code, "stock_code")]

        if metadata is not None:
            if metadata.company_name:
                planned.append((metadata.company_name, "company_name"))
                planned.extend(
                    (f"{metadata.company_name} {keyword}", "company_keyword")
                    for keyword in COMPANY_KEYWORDS
                )
            if metadata.industry:
                planned.append((f"{metadata.industry} industry", "industry"))
            if metadata.sector:
                planned.append((f"{metadata.sector} sector", "sector"))

            keywords = extract_business_keywords(
                metadata.business_summary, self._business_terms,
            )
            planned.extend(
                (keyword, "business_keyword")
                for keyword in keywords[:MAX_BUSINESS_KEYWORDS]
            )

        planned.extend(
            (f"{stock_code} {keyword}", "analysis_keyword")
            for keyword in ANALYSIS_KEYWORDS
        )

        variants = []
        for priority, (query, variant_type) in enumerate(planned):
            budget = self._budgets[variant_type]
            variants.append(QueryVariant(
                query=query,
                variant_type=variant_type,
                limit=budget.limit,
                threshold=budget.threshold,
                priority=priority,
            ))

        logger.debug(
            "Expanded %s into %d query variants: %s",
            stock_code, len(variants), [v.query for v in variants],
        )
        return variants
