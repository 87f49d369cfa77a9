"""
JSON repair for model output.

Model responses arrive wrapped in markdown fences, with invalid escape
sequences, or cut off mid-structure when the output token limit is hit.
repair() fixes what it can in a single pass; parse_or_fallback() never raises.
"""

import json
import logging
import re
from typing import Any, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

EMPTY_ARRAY = "[]"

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")
# A legal escape pair (kept), a \xNN escape (rewritten) or a lone backslash (doubled).
# Pairs are consumed left to right, so "\\x41" stays an escaped backslash.
_ESCAPE = re.compile(r'\\(u[0-9A-Fa-f]{4}|["\\/bfnrt])|\\x([0-9A-Fa-f]{2})|\\')

_CLOSERS = {"{": "}", "[": "]"}


def strip_fences(text: str) -> str:
    """Remove a leading ```json / ``` fence and a trailing ``` fence."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
        cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def fix_escapes(text: str) -> str:
    """
    Normalize escape sequences JSON does not allow.

    \\xNN becomes \\u00NN; a backslash that does not start a legal escape
    (including \\u without four hex digits) is doubled.
    """

    def substitute(match: "re.Match[str]") -> str:
        if match.group(1):
            return match.group(0)
        if match.group(2):
            return "\\u00" + match.group(2)
        return "\\\\"

    return _ESCAPE.sub(substitute, text)


def close_truncated(text: str) -> str:
    """
    Close an unterminated string and every open object/array.

    Brackets inside string literals are ignored. A closer pops the stack only
    when it matches the innermost open structure.
    """
    in_string = False
    escaped = False
    stack: List[str] = []

    for char in text:
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == '"':
            in_string = not in_string
        elif not in_string:
            if char in _CLOSERS:
                stack.append(_CLOSERS[char])
            elif char in ("}", "]"):
                if stack and stack[-1] == char:
                    stack.pop()

    if in_string:
        if escaped:
            # Truncated right after a backslash; drop it so the quote closes
            text = text[:-1]
        text += '"'

    while stack:
        text += stack.pop()

    return text


def repair(text: Optional[str]) -> str:
    """
    Best-effort repair of model output into parseable JSON text.

    Args:
        text: Raw model output (may be None)

    Returns:
        Repaired JSON text; "[]" for empty input
    """
    if text is None or not text.strip():
        return EMPTY_ARRAY

    cleaned = strip_fences(text)
    if not cleaned:
        return EMPTY_ARRAY

    cleaned = fix_escapes(cleaned)
    return close_truncated(cleaned)


def parse_or_fallback(text: Optional[str], fallback: T) -> Any:
    """
    Repair and parse model output, returning fallback on failure.

    Parse errors are logged with 20 characters of context around the
    reported offset.
    """
    cleaned = repair(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        start = max(0, e.pos - 20)
        end = min(len(cleaned), e.pos + 20)
        logger.error(f"JSON parse error: {e.msg} at position {e.pos}")
        logger.error(f"Error context: ...{cleaned[start:end]}...")
        return fallback


def parse_records(text: Optional[str]) -> List[Any]:
    """
    Parse model output expected to be a JSON array of records.

    A single top-level object is wrapped in a list; any other JSON value
    (or unrecoverable text) gives an empty list.
    """
    parsed = parse_or_fallback(text, [])
    if isinstance(parsed, dict):
        return [parsed]
    if isinstance(parsed, list):
        return parsed
    return []
