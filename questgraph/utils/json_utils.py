"""
JSON utilities for cleaning LLM responses.
"""

import json
from typing import Any, Optional


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = (response or '').strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_response(response: str) -> Optional[Any]:
    """Parse an LLM JSON reply, returning None when it is not valid JSON."""
    try:
        return json.loads(clean_json_response(response))
    except (json.JSONDecodeError, TypeError):
        return None
