"""Inspiration image intake: validation, normalization and URL download.

Images go to the vision model as base64 JPEG, so everything is decoded
with Pillow, flattened to RGB and re-encoded at a bounded size first.
"""

from __future__ import annotations

import base64
import io
from typing import TYPE_CHECKING

import structlog
from PIL import Image

if TYPE_CHECKING:
    import httpx

logger = structlog.get_logger()

MAX_IMAGE_BYTES = 20 * 1024 * 1024  # 20 MB
MAX_DIMENSION = 2048
JPEG_QUALITY = 90
FETCH_TIMEOUT = 30.0


class InvalidImageError(ValueError):
    """The uploaded or downloaded bytes are not a usable image."""


def normalize_image(data: bytes) -> bytes:
    """Decode, downscale and re-encode an image as RGB JPEG."""
    if not data:
        raise InvalidImageError("Image is empty")
    if len(data) > MAX_IMAGE_BYTES:
        raise InvalidImageError(
            f"Image is too large ({len(data) // (1024 * 1024)} MB). Maximum is 20 MB."
        )

    try:
        img = Image.open(io.BytesIO(data))
        img.load()  # full decode catches truncated files
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        logger.warning("image_decode_failed", error=str(exc))
        raise InvalidImageError("Could not open image. Please upload a valid JPEG or PNG.") from exc

    if img.mode != "RGB":
        img = img.convert("RGB")
    if max(img.size) > MAX_DIMENSION:
        img.thumbnail((MAX_DIMENSION, MAX_DIMENSION), Image.LANCZOS)

    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()


def to_base64_jpeg(data: bytes) -> str:
    """Normalize an image and return its base64 JPEG encoding."""
    return base64.b64encode(normalize_image(data)).decode("ascii")


async def fetch_image_bytes(client: httpx.AsyncClient, url: str) -> bytes:
    """Download an image, checking its content type and the 20 MB cap while streaming."""
    import httpx

    limit_mb = MAX_IMAGE_BYTES // (1024 * 1024)
    try:
        async with client.stream(
            "GET", url, timeout=FETCH_TIMEOUT, follow_redirects=True
        ) as response:
            if response.status_code >= 400:
                raise InvalidImageError(
                    f"HTTP {response.status_code} downloading image: {url[:100]}"
                )

            content_type = response.headers.get("content-type", "")
            if content_type and not content_type.startswith("image/"):
                raise InvalidImageError(f"Expected image content-type, got: {content_type}")

            declared = response.headers.get("content-length", "")
            if declared.isdigit() and int(declared) > MAX_IMAGE_BYTES:
                raise InvalidImageError(f"Image exceeds {limit_mb} MB limit: {url[:100]}")

            chunks: list[bytes] = []
            total = 0
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > MAX_IMAGE_BYTES:
                    logger.warning("image_download_too_large", url=url[:100], read=total)
                    raise InvalidImageError(f"Image exceeds {limit_mb} MB limit: {url[:100]}")
                chunks.append(chunk)
    except httpx.TimeoutException as exc:
        raise InvalidImageError(f"Timeout downloading image: {url[:100]}") from exc
    except httpx.RequestError as exc:
        raise InvalidImageError(
            f"Network error downloading image: {url[:100]}: {type(exc).__name__}"
        ) from exc

    return b"".join(chunks)
