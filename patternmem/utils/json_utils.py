"""
JSON utilities for reading structured LLM responses.
"""

import json
from typing import Any, Dict, Optional


def strip_code_fences(response: str) -> str:
    """Remove markdown code block markers around an LLM response.

    Args:
        response: Raw LLM response

    Returns:
        Response text without the surrounding fences
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_object(response: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse an LLM response that should contain a single JSON object.

    Text before the first ``{`` or after the last ``}`` is ignored, which
    tolerates models that add a sentence around the object.

    Args:
        response: Raw LLM response, possibly fenced

    Returns:
        The decoded object, or None when the response is empty, not JSON,
        or not an object
    """
    if not response or not response.strip():
        return None

    cleaned = strip_code_fences(response)
    start, end = cleaned.find('{'), cleaned.rfind('}')
    if start == -1 or end < start:
        return None

    try:
        parsed = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError:
        return None

    return parsed if isinstance(parsed, dict) else None
