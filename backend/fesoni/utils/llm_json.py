"""Parse JSON objects out of free-form model replies."""

from __future__ import annotations

import json
from typing import Any


def strip_code_fence(text: str) -> str:
    """Remove a leading ```/```json fence and its closing fence.

    Handles both multiline (```json\\n...\\n```) and single-line (```{...}```) forms.
    """
    text = text.strip()
    if not text.startswith("```"):
        return text
    text = text.removeprefix("```")
    for lang in ("json", "JSON"):
        text = text.removeprefix(lang)
    text = text.lstrip("\n")
    if "```" in text:
        text = text.rsplit("```", 1)[0]
    return text.strip()


def _first_object(text: str) -> str | None:
    """Return the outermost balanced {...} substring, string-literal aware."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_json(text: str) -> dict[str, Any] | None:
    """Parse the JSON object in a model reply.

    Accepts pure JSON, fenced JSON, or JSON surrounded by prose. Returns
    None when no object can be parsed; callers decide the fallback.
    """
    text = strip_code_fence(text)
    if not text:
        return None

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        candidate = _first_object(text)
        if candidate is None:
            return None
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            return None

    return data if isinstance(data, dict) else None
