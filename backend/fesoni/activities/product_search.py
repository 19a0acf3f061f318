"""Style-driven product search: fan out catalog queries, score, shape for budget.

Pipeline:
1. Build weighted keyword queries from the style attributes
2. Run them against the catalog concurrently
3. Deduplicate by (title, price) and score each product
4. Budget shaping (within-budget first, plus a slice of over-budget picks)
5. Optional cheaper/pricier alternatives per product
6. Rank: score first, price breaks near-ties
"""

from __future__ import annotations

import asyncio
import functools
import math
from dataclasses import dataclass

import structlog

from fesoni.activities.scoring import enrich
from fesoni.models.contracts import (
    BudgetAnalysis,
    Product,
    ScoredProduct,
    SearchResult,
    StyleAttributes,
)
from fesoni.utils.catalog import CatalogClient

log = structlog.get_logger("product_search")

MAX_QUERIES = 8
OVER_BUDGET_SHARE = 0.3
SCORE_TIE_BAND = 0.1
ALTERNATIVE_SEARCH_RESULTS = 6
MAX_ALTERNATIVES = 3
ALTERNATIVE_MIN_PRICE_GAP = 5.0
_DETAIL_FIELDS = ("brand", "rating", "reviews", "delivery_message", "retail_price", "image")


@dataclass(frozen=True)
class SearchQuery:
    keywords: tuple[str, ...]
    weight: float


def build_search_queries(attributes: StyleAttributes) -> list[SearchQuery]:
    """Weighted keyword queries, highest weight first, at most MAX_QUERIES."""
    queries: list[SearchQuery] = []

    for aesthetic in attributes.aesthetics:
        queries.append(SearchQuery((aesthetic, "style", "fashion"), 1.0))
        for keyword in attributes.keywords:
            queries.append(SearchQuery((aesthetic, keyword), 0.9))

    for color in attributes.colors[:2]:
        queries.append(SearchQuery((color, "clothing", "fashion"), 0.7))

    for texture in attributes.textures:
        queries.append(SearchQuery((texture, "fabric", "clothing"), 0.6))

    for mood in attributes.mood:
        queries.append(SearchQuery((mood, "style", "outfit"), 0.8))

    for keyword in attributes.keywords:
        queries.append(SearchQuery((keyword,), 1.2))

    # sorted() is stable, so equal weights keep insertion order
    return sorted(queries, key=lambda q: q.weight, reverse=True)[:MAX_QUERIES]


def deduplicate_products(products: list[Product]) -> list[Product]:
    seen: set[tuple[str, float]] = set()
    unique: list[Product] = []
    for product in products:
        key = (product.title.lower(), product.price)
        if key in seen:
            continue
        seen.add(key)
        unique.append(product)
    return unique


def _by_score(p: ScoredProduct) -> float:
    return -p.similarity_score


def optimize_for_budget(
    products: list[ScoredProduct],
    budget: float | None,
) -> list[ScoredProduct]:
    """Within-budget products first, then the best OVER_BUDGET_SHARE of the rest."""
    if not budget:
        return products
    within = sorted((p for p in products if p.price <= budget), key=_by_score)
    over = sorted((p for p in products if p.price > budget), key=_by_score)
    return within + over[: math.floor(len(products) * OVER_BUDGET_SHARE)]


def _compare(a: ScoredProduct, b: ScoredProduct) -> int:
    if abs(a.similarity_score - b.similarity_score) > SCORE_TIE_BAND:
        return -1 if a.similarity_score > b.similarity_score else 1
    if a.price == b.price:
        return 0
    return -1 if a.price < b.price else 1


def rank_products(products: list[ScoredProduct]) -> list[ScoredProduct]:
    """Score descending; within SCORE_TIE_BAND the cheaper product wins."""
    return sorted(products, key=functools.cmp_to_key(_compare))


def analyze_budget_fit(products: list[ScoredProduct], budget: float) -> BudgetAnalysis | None:
    if not products:
        return None
    within = sum(1 for p in products if p.price <= budget)
    prices = sorted(p.price for p in products)
    average = sum(prices) / len(prices)
    recommended = prices[math.floor(len(prices) * 0.75)]
    return BudgetAnalysis(
        within_budget=within,
        over_budget=len(products) - within,
        average_price=round(average, 2),
        recommended_budget=round(recommended, 2),
    )


def describe_strategy(attributes: StyleAttributes) -> str:
    parts: list[str] = []
    if attributes.aesthetics:
        n = len(attributes.aesthetics)
        parts.append(f"{n} aesthetic{'s' if n > 1 else ''}")
    if attributes.colors:
        n = len(attributes.colors)
        parts.append(f"{n} color{'s' if n > 1 else ''}")
    if attributes.budget:
        parts.append(f"${attributes.budget:g} budget")
    searched = ", ".join(parts) if parts else "general style"
    return f"Searched using {searched} with {len(attributes.keywords)} specific keywords"


async def find_alternatives(
    catalog: CatalogClient,
    product: ScoredProduct,
    attributes: StyleAttributes,
) -> ScoredProduct:
    """Attach up to three differently-priced alternatives; failures are ignored."""
    keywords = [product.category or "fashion", *attributes.aesthetics[:1], "alternative", "similar"]
    try:
        candidates = await catalog.search_products(keywords, ALTERNATIVE_SEARCH_RESULTS)
    except Exception as exc:
        log.warning("alternatives_failed", product_id=product.product_id, error=str(exc)[:200])
        return product

    alternatives = [
        alt
        for alt in candidates
        if alt.product_id != product.product_id
        and abs(alt.price - product.price) > ALTERNATIVE_MIN_PRICE_GAP
    ][:MAX_ALTERNATIVES]
    return product.model_copy(update={"alternative_products": alternatives})


async def fill_product_details(catalog: CatalogClient, product: ScoredProduct) -> ScoredProduct:
    """Complete a product from the catalog's detail lookup.

    Keyword search leaves brand and delivery details thin. Title, price and
    scoring fields are kept; a failed lookup returns the product unchanged.
    """
    details = await catalog.get_product_details(product.product_id)
    if details is None:
        return product
    update = {f: getattr(details, f) for f in _DETAIL_FIELDS if getattr(details, f)}
    return product.model_copy(update=update)


async def search_by_style(
    catalog: CatalogClient,
    attributes: StyleAttributes,
    max_results: int = 20,
    *,
    with_alternatives: bool = True,
) -> SearchResult:
    """Full style search: query fan-out, scoring, budget shaping and ranking."""
    queries = build_search_queries(attributes)
    if not queries:
        log.info("style_search_no_queries")
        return SearchResult(search_strategy=describe_strategy(attributes))

    per_query = math.ceil(max_results / len(queries))
    log.info("style_search_start", queries=len(queries), per_query=per_query)

    results = await asyncio.gather(
        *(catalog.search_products(list(q.keywords), per_query) for q in queries),
        return_exceptions=True,
    )
    found: list[Product] = []
    for result in results:
        if isinstance(result, BaseException):
            log.warning("style_search_query_failed", error=str(result)[:200])
            continue
        found.extend(result)

    unique = deduplicate_products(found)
    scored = [enrich(p, attributes) for p in unique]
    shaped = optimize_for_budget(scored, attributes.budget)

    if with_alternatives and shaped:
        shaped = list(
            await asyncio.gather(*(find_alternatives(catalog, p, attributes) for p in shaped))
        )

    final = rank_products(shaped)[:max_results]
    budget_analysis = (
        analyze_budget_fit(final, attributes.budget) if attributes.budget else None
    )

    log.info(
        "style_search_complete",
        total_found=len(unique),
        returned=len(final),
        with_alternatives=with_alternatives,
    )
    return SearchResult(
        products=final,
        total_found=len(unique),
        search_strategy=describe_strategy(attributes),
        budget_analysis=budget_analysis,
    )
