"""
JSON utility functions for model function-call payloads.

Function-call arguments usually arrive as a mapping, but some transports hand
them over as a JSON string that may be wrapped in markdown fences or carry
comments and trailing commas.
"""

import json
import re
import unicodedata
from typing import Any

_CODE_FENCE = re.compile(r"^\s*```(?:json|JSON)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_LINE_COMMENT = re.compile(r'("(?:[^"\\]|\\.)*")|//[^\n]*')
_BLOCK_COMMENT = re.compile(r'("(?:[^"\\]|\\.)*")|/\*.*?\*/', re.DOTALL)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if present."""
    match = _CODE_FENCE.match(text)
    return match.group(1) if match else text


def _keep_string_literal(match: re.Match) -> str:
    return match.group(1) or ""


def _strip_comments(text: str) -> str:
    # String literals are matched first so "http://..." survives
    text = _BLOCK_COMMENT.sub(_keep_string_literal, text)
    return _LINE_COMMENT.sub(_keep_string_literal, text)


def try_parse_or_repair_json(json_str: str) -> dict[str, Any]:
    """
    Attempt to parse JSON string, applying repair strategies if initial parsing fails.

    Args:
        json_str: The JSON string to parse

    Returns:
        Parsed JSON data as dictionary

    Raises:
        json.JSONDecodeError: If JSON cannot be parsed even after repair attempts
        ValueError: If the payload parses but is not a JSON object
    """
    try:
        parsed = json.loads(json_str)
    except json.JSONDecodeError:
        repaired_json = strip_code_fences(json_str.strip())

        # Strategy 1: Remove // and /* */ comments
        repaired_json = _strip_comments(repaired_json)

        # Strategy 2: Remove trailing commas before closing brackets
        repaired_json = _TRAILING_COMMA.sub(r"\1", repaired_json)

        # Strategy 3: Normalize unicode quotes and invisible characters
        repaired_json = unicodedata.normalize('NFKC', repaired_json)
        repaired_json = repaired_json.replace("\u201c", "\"").replace("\u201d", "\"")
        repaired_json = repaired_json.replace("\ufeff", "")

        # Strategy 4: Fix missing commas between object elements
        # Pattern: "value"\n    "key" -> "value",\n    "key"
        repaired_json = re.sub(
            r'("(?:[^"\\]|\\.)*"|\d|true|false|null|[}\]])\s*\n\s*("(?:[^"\\]|\\.)*"\s*:)',
            r'\1,\n    \2',
            repaired_json
        )

        # Truncate leading prose and anything after the last }
        first_brace = repaired_json.find('{')
        last_brace = repaired_json.rfind('}')
        if first_brace != -1 and last_brace != -1:
            repaired_json = repaired_json[first_brace:last_brace + 1]

        parsed = json.loads(repaired_json)  # may raise; let it propagate for caller handling

    if not isinstance(parsed, dict):
        raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
    return parsed
