"""
JSON utilities for recovering structured objects from LLM responses.
"""

import json
from typing import Any, Dict


class StructuredResponseParseError(Exception):
    """Raised when no JSON object can be recovered from an LLM response."""
    pass


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_structured_response(response: str) -> Dict[str, Any]:
    """Parse a single JSON object out of an LLM response.

    Code fences are stripped first. Then the substring between the first
    ``{`` and the last ``}`` is parsed, which drops any prose the model put
    around the object.

    Args:
        response: Raw LLM response

    Returns:
        The parsed JSON object

    Raises:
        StructuredResponseParseError: If no JSON object can be parsed
    """
    if not response or not response.strip():
        raise StructuredResponseParseError('Empty response')

    cleaned = clean_json_response(response)
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start == -1 or end <= start:
        raise StructuredResponseParseError('No JSON object found in response')

    try:
        parsed = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise StructuredResponseParseError(f'Invalid JSON in response: {e}')

    if not isinstance(parsed, dict):
        raise StructuredResponseParseError(f'Expected JSON object, got {type(parsed).__name__}')

    return parsed
