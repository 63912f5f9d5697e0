"""Helpers for extracting JSON objects from model responses"""

import json
import re
from typing import Any

from airouter.utils.logger import get_logger

logger = get_logger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?```\s*$", re.DOTALL)


def clean_llm_json(content: str) -> str:
    """Strip markdown fences and surrounding prose from a JSON model response

    Args:
        content: Raw model response content

    Returns:
        Candidate JSON string ready for parsing

    Examples:
        >>> clean_llm_json('```json\\n{"key": "value"}\\n```')
        '{"key": "value"}'
        >>> clean_llm_json('Sure! {"key": "value"} Hope that helps.')
        '{"key": "value"}'
    """
    if not content:
        return content

    cleaned = content.strip()

    match = _CODE_FENCE.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
        logger.debug("Removed markdown code block from JSON response")

    # Keep only the outermost object
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        if start > 0 or end < len(cleaned) - 1:
            logger.debug(
                f"Trimmed {start} leading and {len(cleaned) - end - 1} trailing chars around JSON"
            )
        cleaned = cleaned[start : end + 1]

    # Trailing commas before } or ] are invalid JSON
    cleaned = re.sub(r",(\s*[}\]])", r"\1", cleaned)

    return cleaned.strip()


def parse_llm_json(content: str) -> dict[str, Any]:
    """Parse a JSON object from a model response

    Args:
        content: Raw model response content

    Returns:
        Parsed JSON object

    Raises:
        ValueError: If no JSON object can be recovered from the content
    """
    if not content or not content.strip():
        raise ValueError("Empty model response")

    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        try:
            data = json.loads(clean_llm_json(content))
        except json.JSONDecodeError as e:
            raise ValueError(f"Model response is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data
