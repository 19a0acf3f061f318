"""Budget breakdown and budget-driven product substitution."""

from __future__ import annotations

from fesoni.models.contracts import (
    BudgetAllocation,
    BudgetBreakdown,
    Product,
    ScoredProduct,
)

INVESTMENT_CATEGORIES = frozenset({"Outerwear", "Bags", "Shoes"})
TREND_CATEGORIES = frozenset({"Accessories", "Jewelry"})
INVESTMENT_SHARE = 40.0
TREND_SHARE = 20.0

OPTIMIZED_SCORE_FACTOR = 0.8
SWAPPED_SCORE_FACTOR = 0.9


def recommendation_for(category: str, amount: float, total: float):
    percentage = amount / total * 100 if total else 0.0
    if category in INVESTMENT_CATEGORIES:
        return "splurge" if percentage > INVESTMENT_SHARE else "balanced"
    if category in TREND_CATEGORIES:
        return "save" if percentage > TREND_SHARE else "balanced"
    return "balanced"


def budget_breakdown(products: list[ScoredProduct]) -> BudgetBreakdown:
    total = sum(p.price for p in products)
    original = sum(p.retail_price or p.price for p in products)

    per_category: dict[str, float] = {}
    for p in products:
        category = p.category or "Fashion"
        per_category[category] = per_category.get(category, 0.0) + p.price

    allocation = [
        BudgetAllocation(
            category=category,
            amount=round(amount, 2),
            percentage=round(amount / total * 100, 1) if total else 0.0,
            recommendation=recommendation_for(category, amount, total),
        )
        for category, amount in per_category.items()
    ]
    return BudgetBreakdown(
        total_cost=round(total, 2),
        original_total=round(original, 2),
        savings=round(original - total, 2),
        allocation=allocation,
    )


def _substitute(
    original: ScoredProduct,
    alternative: Product,
    score_factor: float,
    tier,
) -> ScoredProduct:
    return ScoredProduct(
        **alternative.model_dump(),
        similarity_score=original.similarity_score * score_factor,
        price_tier=tier,
        style_match_reasons=original.style_match_reasons,
        alternative_products=original.alternative_products,
    )


def optimize_for_budget(products: list[ScoredProduct], target: float) -> list[ScoredProduct]:
    """Fit a selection under `target`.

    Most expensive products are considered first. A product that no longer
    fits is replaced by its first affordable alternative, or dropped when it
    has none. A selection already within target is returned unchanged.
    """
    if sum(p.price for p in products) <= target:
        return list(products)

    remaining = target
    optimized: list[ScoredProduct] = []
    for product in sorted(products, key=lambda p: p.price, reverse=True):
        if product.price <= remaining:
            optimized.append(product)
            remaining -= product.price
            continue
        alternative = next(
            (alt for alt in product.alternative_products if alt.price <= remaining), None
        )
        if alternative is not None:
            optimized.append(
                _substitute(product, alternative, OPTIMIZED_SCORE_FACTOR, "budget")
            )
            remaining -= alternative.price
    return optimized


def swap_product(
    products: list[ScoredProduct],
    product_id: str,
    alternative_index: int,
) -> list[ScoredProduct]:
    """Replace one product by one of its alternatives.

    Raises LookupError if the product or the alternative does not exist.
    """
    for i, product in enumerate(products):
        if product.product_id != product_id:
            continue
        if not 0 <= alternative_index < len(product.alternative_products):
            raise LookupError(f"product {product_id} has no alternative {alternative_index}")
        alternative = product.alternative_products[alternative_index]
        tier = "budget" if alternative.price < product.price else "premium"
        swapped = list(products)
        swapped[i] = _substitute(product, alternative, SWAPPED_SCORE_FACTOR, tier)
        return swapped
    raise LookupError(f"product {product_id} not found")
