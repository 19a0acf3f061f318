"""Amazon product catalog client (RapidAPI).

Search failures never surface as errors: every failure path logs and
returns an empty list (or None for a detail lookup), so a chat turn can
always continue with a style-only answer.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx
import structlog

from fesoni.config import settings
from fesoni.models.contracts import Product

log = structlog.get_logger("catalog")

CATALOG_MAX_RETRIES = 1
CATALOG_RETRY_DELAY = 1.0
CATALOG_TIMEOUT = 15.0
FOUND = "PRODUCT_FOUND_RESPONSE"

_RATING_RE = re.compile(r"(\d+\.?\d*)")


def parse_rating(raw: Any) -> float:
    """Pull the numeric rating out of strings like '4.5 out of 5 stars'."""
    if isinstance(raw, (int, float)):
        return min(max(float(raw), 0.0), 5.0)
    if not isinstance(raw, str):
        return 0.0
    match = _RATING_RE.search(raw)
    if not match:
        return 0.0
    return min(float(match.group(1)), 5.0)


def _number(raw: Any) -> float:
    try:
        return max(float(raw or 0), 0.0)
    except (TypeError, ValueError):
        return 0.0


def format_search_product(detail: dict[str, Any]) -> Product:
    dp_url = detail.get("dpUrl") or ""
    retail = _number(detail.get("retailPrice"))
    return Product(
        product_id=detail.get("asin") or "",
        title=detail.get("productDescription") or "",
        url=f"https://amazon.com{dp_url}" if dp_url else "",
        image=detail.get("imgUrl") or "",
        price=_number(detail.get("price")),
        retail_price=retail or None,
        rating=parse_rating(detail.get("productRating")),
        reviews=int(_number(detail.get("countReview"))),
        prime=bool(detail.get("prime")),
        delivery_message=detail.get("deliveryMessage") or "",
    )


def format_detailed_product(data: dict[str, Any]) -> Product:
    asin = data.get("asin") or ""
    main_image = data.get("mainImage") or {}
    retail = _number(data.get("retailPrice"))
    return Product(
        product_id=asin,
        title=data.get("productTitle") or "",
        url=f"https://amazon.com/dp/{asin}/",
        image=main_image.get("imageUrl") or "",
        price=_number(data.get("price")),
        retail_price=retail or None,
        rating=parse_rating(data.get("productRating")),
        reviews=int(_number(data.get("countReview"))),
        prime=bool(data.get("prime")),
        delivery_message=data.get("priceShippingInformation") or "",
        brand=data.get("brand"),
    )


class CatalogClient:
    """Keyword search and product lookup against the RapidAPI Amazon host."""

    def __init__(
        self,
        api_key: str,
        host: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._host = host
        self._base_url = f"https://{host}"
        self._http = http_client or httpx.AsyncClient()

    @classmethod
    def from_settings(cls, http_client: httpx.AsyncClient | None = None) -> CatalogClient:
        return cls(settings.rapidapi_key, settings.rapidapi_host, http_client)

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "x-rapidapi-host": self._host,
            "x-rapidapi-key": self._api_key,
            "Content-Type": "application/json",
        }

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get(self, path: str, params: dict[str, str]) -> dict[str, Any] | None:
        """GET with one retry on throttling/5xx. None on any failure."""
        for attempt in range(1 + CATALOG_MAX_RETRIES):
            try:
                resp = await self._http.get(
                    f"{self._base_url}{path}",
                    params=params,
                    headers=self._headers,
                    timeout=CATALOG_TIMEOUT,
                )
            except httpx.TimeoutException:
                if attempt < CATALOG_MAX_RETRIES:
                    log.warning("catalog_timeout", path=path, attempt=attempt + 1)
                    await asyncio.sleep(CATALOG_RETRY_DELAY)
                    continue
                log.warning("catalog_timeout_final", path=path)
                return None
            except httpx.RequestError as exc:
                log.warning("catalog_request_error", path=path, error=type(exc).__name__)
                return None

            if resp.status_code == 200:
                try:
                    data = resp.json()
                except ValueError:
                    log.warning("catalog_invalid_json", path=path)
                    return None
                return data if isinstance(data, dict) else None

            if resp.status_code in (429, 500, 502, 503) and attempt < CATALOG_MAX_RETRIES:
                log.warning(
                    "catalog_retrying",
                    status=resp.status_code,
                    path=path,
                    attempt=attempt + 1,
                )
                await asyncio.sleep(CATALOG_RETRY_DELAY)
                continue

            log.warning("catalog_request_failed", status=resp.status_code, path=path)
            return None

        return None

    async def search_products(self, keywords: list[str], max_results: int = 12) -> list[Product]:
        """Search by keyword list. Returns [] on any failure."""
        query = " ".join(k.strip() for k in keywords if k and k.strip())
        if not query or max_results <= 0:
            return []

        try:
            data = await self._get(
                "/amz/amazon-search-by-keyword-asin",
                {
                    "domainCode": "com",
                    "keyword": query,
                    "page": "1",
                    "excludeSponsored": "false",
                    "sortBy": "relevanceblender",
                    "withCache": "true",
                },
            )
            if not data or data.get("responseStatus") != FOUND:
                return []
            details = data.get("searchProductDetails") or []
            products = [
                format_search_product(d) for d in details[:max_results] if isinstance(d, dict)
            ]
        except Exception as exc:
            log.warning("catalog_search_failed", query=query[:80], error=str(exc)[:200])
            return []

        log.info("catalog_search_complete", query=query[:80], count=len(products))
        return products

    async def get_product_details(self, asin: str) -> Product | None:
        """Look up one product by ASIN. None on any failure."""
        try:
            data = await self._get(
                "/amz/amazon-lookup-product",
                {"url": f"https://www.amazon.com/dp/{asin}/"},
            )
            if not data or data.get("responseStatus") != FOUND:
                return None
            return format_detailed_product(data)
        except Exception as exc:
            log.warning("catalog_details_failed", asin=asin, error=str(exc)[:200])
            return None
