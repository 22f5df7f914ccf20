"""Robust JSON extraction from LLM responses.

Arbiter and synthesizer replies are supposed to be a bare JSON object, but
models routinely wrap them in markdown fences or add a sentence before the
payload. Strategies, in order:
- Pure JSON
- ```json fenced blocks
- Untyped ``` fenced blocks
- First balanced {...} object embedded in text
"""

import json
import re
from typing import Any

from utils.logging import get_logger

logger = get_logger(__name__)

_JSON_FENCE = re.compile(r"```json\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```\s*\n?(.*?)\n?```", re.DOTALL)


def _try_loads(text: str) -> Any | None:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


def _find_balanced_object(text: str) -> str | None:
    """Return the first brace-balanced {...} span, honouring string literals."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
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
        start = text.find("{", start + 1)
    return None


def extract_json_from_response(response: str, context: str = "arbiter") -> Any | None:
    """Extract JSON from an LLM response using multiple strategies.

    Args:
        response: The raw LLM response text
        context: Context identifier for logging (e.g., "dedup_batch")

    Returns:
        Parsed JSON data (dict or list), or None if parsing fails
    """
    if not response:
        return None

    text = response.strip()

    result = _try_loads(text)

    if result is None:
        match = _JSON_FENCE.search(text)
        if match:
            result = _try_loads(match.group(1).strip())
            if result is None:
                logger.debug(f"Failed to parse ```json block for {context}")

    if result is None:
        match = _ANY_FENCE.search(text)
        if match:
            result = _try_loads(match.group(1).strip())

    if result is None:
        candidate = _find_balanced_object(text)
        if candidate:
            result = _try_loads(candidate)

    if result is None:
        logger.warning(
            f"Failed to extract JSON from {context} response. "
            f"Response length: {len(text)}, "
            f"First 200 chars: {text[:200]!r}"
        )
    return result


def extract_json_object(response: str, context: str = "arbiter") -> dict | None:
    """Like extract_json_from_response but only accepts a JSON object."""
    result = extract_json_from_response(response, context=context)
    if result is not None and not isinstance(result, dict):
        logger.warning(
            f"Expected JSON object for {context}, got {type(result).__name__}"
        )
        return None
    return result
