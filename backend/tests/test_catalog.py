"""Tests for the RapidAPI catalog client.

Uses httpx.MockTransport, so no network or API key is needed.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from fesoni.utils.catalog import (
    CatalogClient,
    format_detailed_product,
    format_search_product,
    parse_rating,
)

_SEARCH_BODY = {
    "responseStatus": "PRODUCT_FOUND_RESPONSE",
    "searchProductDetails": [
        {
            "asin": "B0TOTE",
            "productDescription": "Minimalist Canvas Tote Bag",
            "dpUrl": "/dp/B0TOTE",
            "imgUrl": "https://img.example/tote.jpg",
            "price": 24.99,
            "retailPrice": 34.99,
            "productRating": "4.6 out of 5 stars",
            "countReview": 1520,
            "prime": True,
            "deliveryMessage": "FREE delivery Tue",
        },
        {
            "asin": "B0BELT",
            "productDescription": "Leather Belt",
            "price": None,
            "productRating": None,
        },
    ],
}


def _client(handler) -> CatalogClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CatalogClient("test-key", "catalog.example", http)


class TestParsing:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("4.5 out of 5 stars", 4.5), (4, 4.0), ("no rating", 0.0), (None, 0.0), (9, 5.0)],
    )
    def test_parse_rating(self, raw, expected):
        assert parse_rating(raw) == expected

    def test_format_search_product(self):
        product = format_search_product(_SEARCH_BODY["searchProductDetails"][0])
        assert product.product_id == "B0TOTE"
        assert product.url == "https://amazon.com/dp/B0TOTE"
        assert product.retail_price == 34.99
        assert product.rating == 4.6
        assert product.reviews == 1520
        assert product.prime is True

    def test_missing_fields_default(self):
        product = format_search_product({"asin": "X", "productDescription": "Thing"})
        assert product.price == 0.0
        assert product.retail_price is None
        assert product.url == ""

    def test_format_detailed_product(self):
        product = format_detailed_product(
            {
                "asin": "B0X",
                "productTitle": "Wool Coat",
                "mainImage": {"imageUrl": "https://img.example/coat.jpg"},
                "price": "129.00",
                "brand": "Acme",
            }
        )
        assert product.url == "https://amazon.com/dp/B0X/"
        assert product.price == 129.0
        assert product.brand == "Acme"


class TestSearchProducts:
    @pytest.mark.asyncio
    async def test_returns_products(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_SEARCH_BODY)

        products = await _client(handler).search_products(["minimalist", "tote"], 5)

        assert [p.product_id for p in products] == ["B0TOTE", "B0BELT"]
        request = seen[0]
        assert request.url.path == "/amz/amazon-search-by-keyword-asin"
        assert request.url.params["keyword"] == "minimalist tote"
        assert request.url.params["sortBy"] == "relevanceblender"
        assert request.headers["x-rapidapi-key"] == "test-key"

    @pytest.mark.asyncio
    async def test_respects_max_results(self):
        client = _client(lambda r: httpx.Response(200, json=_SEARCH_BODY))
        assert len(await client.search_products(["tote"], 1)) == 1

    @pytest.mark.asyncio
    async def test_network_error_returns_empty(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        assert await _client(handler).search_products(["tote"]) == []

    @pytest.mark.asyncio
    async def test_not_found_status_returns_empty(self):
        client = _client(lambda r: httpx.Response(200, json={"responseStatus": "NOT_FOUND"}))
        assert await client.search_products(["tote"]) == []

    @pytest.mark.asyncio
    async def test_invalid_json_returns_empty(self):
        client = _client(lambda r: httpx.Response(200, text="<html>oops</html>"))
        assert await client.search_products(["tote"]) == []

    @pytest.mark.asyncio
    async def test_retries_once_on_429(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(429)
            return httpx.Response(200, json=_SEARCH_BODY)

        with patch("fesoni.utils.catalog.asyncio.sleep", new_callable=AsyncMock):
            products = await _client(handler).search_products(["tote"])
        assert calls["n"] == 2
        assert len(products) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_retry(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(503)

        with patch("fesoni.utils.catalog.asyncio.sleep", new_callable=AsyncMock):
            assert await _client(handler).search_products(["tote"]) == []
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_blank_keywords_skip_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert await _client(handler).search_products(["", "  "]) == []


class TestGetProductDetails:
    @pytest.mark.asyncio
    async def test_lookup(self):
        body = {"responseStatus": "PRODUCT_FOUND_RESPONSE", "asin": "B0X", "productTitle": "Coat"}
        client = _client(lambda r: httpx.Response(200, json=body))
        product = await client.get_product_details("B0X")
        assert product is not None
        assert product.title == "Coat"

    @pytest.mark.asyncio
    async def test_error_returns_none(self):
        client = _client(lambda r: httpx.Response(404))
        assert await client.get_product_details("B0X") is None
