"""Style analysis: turn a user message or inspiration image into StyleAttributes.

Both paths ask Claude for a JSON object (prompts/style_analysis.txt and
prompts/vision_analysis.txt). The reply may be fenced or wrapped in prose;
anything that cannot be parsed falls back to empty attributes and a
generic clarifying question. Analysis never raises.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

import anthropic
import structlog

from fesoni.config import settings
from fesoni.models.contracts import ChatMessage, StyleAnalysis, StyleAttributes
from fesoni.utils.llm_json import extract_json

log = structlog.get_logger("style_analysis")

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"

ANALYSIS_MAX_TOKENS = 1000
VISION_MAX_TOKENS = 1500
REPLY_MAX_TOKENS = 1000
ANALYSIS_TEMPERATURE = 0.7
VISION_TEMPERATURE = 0.3

CLARIFYING_QUESTION = "Could you tell me more about your style preferences?"
FALLBACK_CATEGORIES = ["clothing", "accessories"]
IMAGE_FALLBACK_DESCRIPTION = (
    "Unable to fully analyze image. Please try uploading a clearer image with better lighting."
)
VISION_USER_TEXT = (
    "Please analyze this fashion image and extract detailed style information including "
    "aesthetics, colors, textures, silhouettes, and mood. Provide confidence scores and "
    "generate search keywords for finding similar products."
)

_prompt_cache: dict[str, str] = {}

_PRICE_RE = re.compile(r"\d[\d,]*(?:\.\d+)?")


def load_prompt(name: str) -> str:
    """Load a prompt template from PROMPTS_DIR (cached after first read)."""
    if name not in _prompt_cache:
        _prompt_cache[name] = (PROMPTS_DIR / f"{name}.txt").read_text()
    return _prompt_cache[name]


def fallback_analysis(description: str = "") -> StyleAnalysis:
    return StyleAnalysis(
        attributes=StyleAttributes(),
        follow_up_questions=[CLARIFYING_QUESTION],
        recommended_categories=list(FALLBACK_CATEGORIES),
        description=description,
    )


def parse_budget(raw: Any) -> float | None:
    """Budget ceiling from a number or text like 'under $80' or '$50-$120'."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw) if raw > 0 else None
    if not isinstance(raw, str):
        return None
    amounts = [float(m.replace(",", "")) for m in _PRICE_RE.findall(raw)]
    amounts = [a for a in amounts if a > 0]
    return max(amounts) if amounts else None


def _strings(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    return [s.strip() for s in raw if isinstance(s, str) and s.strip()]


def _names(raw: Any) -> list[str]:
    """Names from [{name, confidence}, ...], highest confidence first."""
    if not isinstance(raw, list):
        return []
    entries: list[tuple[float, str]] = []
    for entry in raw:
        if isinstance(entry, dict) and isinstance(entry.get("name"), str) and entry["name"].strip():
            confidence = entry.get("confidence")
            weight = float(confidence) if isinstance(confidence, (int, float)) else 0.0
            entries.append((weight, entry["name"].strip()))
        elif isinstance(entry, str) and entry.strip():
            entries.append((0.0, entry.strip()))
    entries.sort(key=lambda e: e[0], reverse=True)
    return [name for _, name in entries]


def build_text_analysis(data: dict[str, Any]) -> StyleAnalysis:
    """Map the text-analysis JSON onto StyleAnalysis.

    Explicit search keywords are the specific items the user asked for,
    or the recommended categories when no item was named.
    """
    style = data.get("styleAnalysis")
    style = style if isinstance(style, dict) else {}
    specific_items = _strings(style.get("specificItems"))
    categories = _strings(data.get("recommendedCategories"))
    lifestyle = style.get("lifestyle")

    attributes = StyleAttributes(
        aesthetics=_strings(style.get("aesthetics")),
        colors=_strings(style.get("colors")),
        mood=_strings(style.get("mood")),
        keywords=specific_items or categories,
        product_types=_strings(style.get("productTypes")),
        lifestyle=lifestyle.strip() if isinstance(lifestyle, str) else "",
        budget=parse_budget(style.get("budget")),
    )
    return StyleAnalysis(
        attributes=attributes,
        follow_up_questions=_strings(data.get("followUpQuestions")),
        recommended_categories=categories,
    )


def build_vision_analysis(data: dict[str, Any]) -> StyleAnalysis:
    overall = data.get("overallStyle")
    description = data.get("description")
    attributes = StyleAttributes(
        aesthetics=_names(data.get("aesthetics")),
        colors=_names(data.get("colors")),
        textures=_names(data.get("textures")),
        silhouettes=_names(data.get("silhouettes")),
        mood=_names(data.get("mood")),
        keywords=_strings(data.get("searchKeywords")),
    )
    return StyleAnalysis(
        attributes=attributes,
        overall_style=overall if isinstance(overall, str) and overall else "Contemporary Style",
        description=(
            description
            if isinstance(description, str) and description
            else "Style analysis completed"
        ),
    )


def _response_text(response: Any) -> str:
    text = ""
    for block in response.content:
        if hasattr(block, "text"):
            text += block.text
    return text


class StyleAnalyzer:
    """Claude-backed style extraction and conversational replies."""

    def __init__(self, client: anthropic.AsyncAnthropic, model: str | None = None) -> None:
        self._client = client
        self._model = model or settings.anthropic_model

    @classmethod
    def from_settings(cls) -> StyleAnalyzer:
        return cls(anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key))

    async def _complete(
        self,
        operation: str,
        *,
        system: str,
        messages: list[dict[str, Any]],
        max_tokens: int,
        temperature: float,
    ) -> str:
        response = await self._client.messages.create(
            model=self._model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=messages,  # type: ignore[arg-type]
        )
        log.info(
            "style_llm_tokens",
            operation=operation,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            model=self._model,
        )
        return _response_text(response)

    async def analyze_text(self, user_input: str) -> StyleAnalysis:
        """Extract style attributes from a chat message. Never raises."""
        try:
            text = await self._complete(
                "text_analysis",
                system=load_prompt("style_analysis"),
                messages=[{"role": "user", "content": user_input}],
                max_tokens=ANALYSIS_MAX_TOKENS,
                temperature=ANALYSIS_TEMPERATURE,
            )
        except anthropic.APIError as e:
            log.warning("style_analysis_api_error", error=str(e)[:200])
            return fallback_analysis()

        data = extract_json(text)
        if data is None:
            log.warning("style_analysis_unparseable", preview=text[:120])
            return fallback_analysis()
        return build_text_analysis(data)

    async def analyze_image(
        self, image_base64: str, media_type: str = "image/jpeg"
    ) -> StyleAnalysis:
        """Extract style attributes from an inspiration image. Never raises."""
        messages = [
            {
                "role": "user",
                "content": [
                    {
                        "type": "image",
                        "source": {
                            "type": "base64",
                            "media_type": media_type,
                            "data": image_base64,
                        },
                    },
                    {"type": "text", "text": VISION_USER_TEXT},
                ],
            }
        ]
        try:
            text = await self._complete(
                "vision_analysis",
                system=load_prompt("vision_analysis"),
                messages=messages,
                max_tokens=VISION_MAX_TOKENS,
                temperature=VISION_TEMPERATURE,
            )
        except anthropic.APIError as e:
            log.warning("vision_analysis_api_error", error=str(e)[:200])
            return fallback_analysis(IMAGE_FALLBACK_DESCRIPTION)

        data = extract_json(text)
        if data is None:
            log.warning("vision_analysis_unparseable", preview=text[:120])
            return fallback_analysis(IMAGE_FALLBACK_DESCRIPTION)
        return build_vision_analysis(data)

    async def reply(
        self,
        analysis: StyleAnalysis,
        product_count: int,
        history: list[ChatMessage],
        user_message: str,
    ) -> str:
        """Conversational answer for the turn. Raises anthropic.APIError on failure."""
        system = load_prompt("assistant_reply").format(
            style_analysis=json.dumps(analysis.model_dump(), indent=2),
            product_count=product_count,
        )
        messages: list[dict[str, Any]] = [
            {"role": m.role, "content": m.content} for m in history if m.content
        ]
        messages.append({"role": "user", "content": user_message})

        text = await self._complete(
            "assistant_reply",
            system=system,
            messages=_merge_consecutive_roles(messages),
            max_tokens=REPLY_MAX_TOKENS,
            temperature=ANALYSIS_TEMPERATURE,
        )
        return text.strip() or "Sorry, I could not generate a response."


def _merge_consecutive_roles(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """The Messages API rejects two turns in a row from the same role."""
    merged: list[dict[str, Any]] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            merged[-1] = {
                "role": msg["role"],
                "content": f"{merged[-1]['content']}\n\n{msg['content']}",
            }
        else:
            merged.append(dict(msg))
    while merged and merged[0]["role"] != "user":
        merged.pop(0)
    return merged
