"""Health check endpoint.

Reports which external services have credentials configured. The check is
local only (no remote calls) and always returns 200 so load balancers
keep routing.
"""

from __future__ import annotations

from pathlib import Path

import structlog
from fastapi import APIRouter

from fesoni.config import settings

logger = structlog.get_logger()

router = APIRouter(tags=["health"])

VERSION = "0.1.0"


def _configured(*values: str) -> str:
    return "configured" if all(values) else "missing"


def _template_state() -> str:
    if Path(settings.style_template_path).is_file():
        return "file"
    if settings.style_template_base64:
        return "settings"
    return "missing"


@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint: confirms the API process is alive."""
    template = _template_state()
    if template == "missing":
        logger.debug("health_template_missing", path=settings.style_template_path)
    return {
        "status": "ok",
        "version": VERSION,
        "environment": settings.environment,
        "style_analyzer": _configured(settings.anthropic_api_key),
        "catalog": _configured(settings.rapidapi_key),
        "document_service": _configured(settings.foxit_client_id, settings.foxit_client_secret),
        "style_template": template,
    }
