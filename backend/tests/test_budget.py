"""Tests for budget breakdown and budget-driven substitution."""

import pytest

from fesoni.activities.budget import budget_breakdown, optimize_for_budget, swap_product
from fesoni.models.contracts import Product, ScoredProduct


def _scored(pid, price, *, category=None, retail=None, alternatives=(), score=0.5):
    return ScoredProduct(
        product_id=pid,
        title=pid,
        price=price,
        retail_price=retail,
        category=category,
        similarity_score=score,
        price_tier="mid",
        alternative_products=list(alternatives),
    )


class TestBudgetBreakdown:
    def test_totals_and_savings(self):
        breakdown = budget_breakdown(
            [_scored("a", 40, retail=60), _scored("b", 10)]
        )
        assert breakdown.total_cost == 50
        assert breakdown.original_total == 70
        assert breakdown.savings == 20

    def test_allocation_recommendations(self):
        products = [
            _scored("coat", 60, category="Outerwear"),
            _scored("ring", 25, category="Jewelry"),
            _scored("tee", 15),
        ]
        allocation = {a.category: a for a in budget_breakdown(products).allocation}
        assert allocation["Outerwear"].percentage == 60.0
        assert allocation["Outerwear"].recommendation == "splurge"
        assert allocation["Jewelry"].recommendation == "save"
        assert allocation["Fashion"].recommendation == "balanced"

    def test_empty(self):
        breakdown = budget_breakdown([])
        assert breakdown.total_cost == 0
        assert breakdown.allocation == []


class TestOptimizeForBudget:
    def test_within_target_unchanged(self):
        products = [_scored("a", 10), _scored("b", 20)]
        assert optimize_for_budget(products, 50) == products

    def test_substitutes_affordable_alternative(self):
        cheaper = Product(product_id="alt", title="Alt Coat", price=30)
        products = [
            _scored("coat", 120, alternatives=[cheaper], score=0.9),
            _scored("tee", 20),
        ]
        result = optimize_for_budget(products, 60)

        assert [p.product_id for p in result] == ["alt", "tee"]
        assert result[0].similarity_score == pytest.approx(0.72)
        assert result[0].price_tier == "budget"
        assert sum(p.price for p in result) <= 60

    def test_drops_product_without_alternative(self):
        products = [_scored("coat", 120), _scored("tee", 20)]
        assert [p.product_id for p in optimize_for_budget(products, 60)] == ["tee"]


class TestSwapProduct:
    def test_swap_to_cheaper(self):
        alt = Product(product_id="alt", title="Alt", price=10)
        products = [_scored("a", 50, alternatives=[alt], score=1.0), _scored("b", 5)]

        swapped = swap_product(products, "a", 0)

        assert swapped[0].product_id == "alt"
        assert swapped[0].similarity_score == pytest.approx(0.9)
        assert swapped[0].price_tier == "budget"
        assert swapped[0].alternative_products == [alt]
        assert products[0].product_id == "a"

    def test_swap_to_pricier_is_premium(self):
        alt = Product(product_id="alt", title="Alt", price=90)
        swapped = swap_product([_scored("a", 50, alternatives=[alt])], "a", 0)
        assert swapped[0].price_tier == "premium"

    def test_unknown_product_or_index(self):
        products = [_scored("a", 50)]
        with pytest.raises(LookupError):
            swap_product(products, "missing", 0)
        with pytest.raises(LookupError):
            swap_product(products, "a", 3)
