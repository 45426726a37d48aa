"""Recovery of JSON array literals from free-form LLM output.

Model output is only probabilistically well-formed, so arrays are located in
layers: a strict greedy ``[{ ... }]`` match first, then the first bracketed
block that decodes as a JSON array, then nothing. Callers validate the
elements themselves.
"""

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```[a-zA-Z]*[ \t]*\n?")
_GREEDY_OBJECT_ARRAY = re.compile(r"\[\s*\{[\s\S]*\}\s*\]")

_decoder = json.JSONDecoder()


def strip_code_fences(text: str) -> str:
    """Remove markdown code-fence markers (```json, ```), keeping their content."""
    return _CODE_FENCE.sub("", text).strip()


def _strict_object_array(text: str) -> list[Any] | None:
    match = _GREEDY_OBJECT_ARRAY.search(text)
    if not match:
        return None
    try:
        value = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.debug(f"Greedy array match did not decode: {e}")
        return None
    return value if isinstance(value, list) else None


def _first_bracketed_block(text: str, require_objects: bool) -> list[Any] | None:
    start = text.find("[")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, list) and (
            not require_objects or any(isinstance(item, dict) for item in value)
        ):
            return value
        start = text.find("[", start + 1)
    return None


def find_json_array(text: str, require_objects: bool = True) -> list[Any] | None:
    """Find the first JSON array in ``text``.

    Args:
        text: Raw model output, possibly wrapped in code fences or prose
        require_objects: Only accept arrays containing at least one object

    Returns:
        The decoded list, or None if no layer produced one
    """
    if not text:
        return None

    cleaned = strip_code_fences(text)

    if require_objects:
        value = _strict_object_array(cleaned)
        if value is not None:
            return value
        logger.debug("Strict array match failed, trying first bracketed block")

    return _first_bracketed_block(cleaned, require_objects)


def parse_array_literal(text: str) -> list[Any] | None:
    """Parse ``text`` as exactly one JSON array literal, or return None."""
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return value if isinstance(value, list) else None
