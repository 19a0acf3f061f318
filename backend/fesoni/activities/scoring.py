"""Keyword-overlap similarity between a catalog product and style attributes.

A heuristic, not a calibrated model. Weight is split across four groups of
style terms; each group contributes the fraction of its terms found
(case-insensitive substring) in the product's title and category.
"""

from __future__ import annotations

from fesoni.models.contracts import PriceTier, Product, ScoredProduct, StyleAttributes

AESTHETIC_WEIGHT = 0.40
KEYWORD_WEIGHT = 0.30
COLOR_WEIGHT = 0.15
MOOD_WEIGHT = 0.15

MAX_TERM_REASONS = 3
HIGH_RATING = 4.0

BUDGET_TIER_CEILING = 50.0
MID_TIER_CEILING = 150.0


def _product_text(product: Product) -> str:
    return f"{product.title} {product.category or ''}".lower()


def _matches(terms: list[str], text: str) -> list[str]:
    return [t for t in terms if t.strip() and t.strip().lower() in text]


def _group_score(terms: list[str], text: str, weight: float) -> float:
    return len(_matches(terms, text)) / max(len(terms), 1) * weight


def score_product(product: Product, attributes: StyleAttributes) -> tuple[float, list[str]]:
    """Return (score in [0, 1], human-readable match reasons)."""
    text = _product_text(product)

    score = (
        _group_score(attributes.aesthetics, text, AESTHETIC_WEIGHT)
        + _group_score(attributes.keywords, text, KEYWORD_WEIGHT)
        + _group_score(attributes.colors, text, COLOR_WEIGHT)
        + _group_score(attributes.mood, text, MOOD_WEIGHT)
    )
    score = min(max(score, 0.0), 1.0)

    return score, match_reasons(product, attributes, text)


def match_reasons(
    product: Product,
    attributes: StyleAttributes,
    text: str | None = None,
) -> list[str]:
    """First three matched terms as phrases, then prime/rating bonuses."""
    text = text if text is not None else _product_text(product)

    reasons = [f"Matches {t} aesthetic" for t in _matches(attributes.aesthetics, text)]
    reasons += [f"Features {t} color" for t in _matches(attributes.colors, text)]
    reasons += [f"Captures {t} vibe" for t in _matches(attributes.mood, text)]
    reasons = reasons[:MAX_TERM_REASONS]

    if product.prime:
        reasons.append("Prime eligible for fast delivery")
    if product.rating >= HIGH_RATING:
        reasons.append(f"Highly rated ({product.rating:g}/5 stars)")
    return reasons


def price_tier(price: float) -> PriceTier:
    if price < BUDGET_TIER_CEILING:
        return "budget"
    if price < MID_TIER_CEILING:
        return "mid"
    return "premium"


def enrich(product: Product, attributes: StyleAttributes) -> ScoredProduct:
    """Build a ScoredProduct; the input product is left untouched."""
    score, reasons = score_product(product, attributes)
    return ScoredProduct(
        **product.model_dump(),
        similarity_score=score,
        price_tier=price_tier(product.price),
        style_match_reasons=reasons,
    )
