"""Robust parsing of tool-call arguments returned by providers.

Models occasionally wrap arguments in markdown fences, append trailing
prose, or emit an empty string for tools without parameters. Parsing
never raises; callers get ``None`` when nothing usable was found.
"""

import json
import re
from typing import Any, Dict, Optional

from loguru import logger

_FENCE_RE = re.compile(
    r"```(?:json)?\s*([\s\S]*?)```", flags=re.IGNORECASE
)


def _first_balanced_object(text: str) -> Optional[Dict[str, Any]]:
    """Decode the first ``{...}`` substring that parses as an object."""
    for i, ch in enumerate(text):
        if ch != "{":
            continue
        depth = 0
        in_string = False
        escape = False
        for j in range(i, len(text)):
            c = text[j]
            if escape:
                escape = False
                continue
            if c == "\\":
                escape = True
                continue
            if c == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if c == "{":
                depth += 1
            elif c == "}":
                depth -= 1
                if depth == 0:
                    try:
                        obj = json.loads(text[i : j + 1])
                    except json.JSONDecodeError:
                        break
                    if isinstance(obj, dict):
                        return obj
                    break
    return None


def parse_tool_arguments(raw: Any) -> Optional[Dict[str, Any]]:
    """
    Parse a tool-call ``arguments`` payload into a dictionary.

    Args:
        raw: The payload as sent by the provider, usually a JSON string,
            sometimes already a dict.

    Returns:
        The arguments dictionary, ``{}`` for an empty payload, or
        ``None`` if the payload cannot be interpreted as an object.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        logger.error(
            f"Expected string for tool arguments, got {type(raw)}"
        )
        return None
    if not raw.strip():
        return {}

    cleaned = _FENCE_RE.sub(r"\1", raw)
    if cleaned.strip() != raw.strip():
        logger.debug("Stripped markdown code fences from tool arguments")

    try:
        obj = json.loads(cleaned)
        return obj if isinstance(obj, dict) else None
    except json.JSONDecodeError:
        pass

    # Valid object followed by extra data
    try:
        obj, _ = json.JSONDecoder().raw_decode(cleaned.strip())
        if isinstance(obj, dict):
            logger.debug("Parsed tool arguments using raw_decode")
            return obj
    except json.JSONDecodeError:
        pass

    obj = _first_balanced_object(cleaned)
    if obj is None:
        logger.warning(
            f"Failed to parse tool arguments. Content snippet: {raw[:200]}..."
        )
    return obj
