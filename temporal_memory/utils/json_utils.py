"""
JSON utilities for parsing structured LLM responses.
"""

import json
import re
from typing import Any

_FENCE_PATTERN = re.compile(r'```(?:json)?\s*(.*?)```', re.DOTALL)


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_response(response: str) -> Any:
    """Parse the JSON payload of an LLM response.

    Tries the cleaned response first, then a fenced block anywhere in the
    text, then the outermost ``{...}`` or ``[...]`` span.

    Args:
        response: Raw LLM response

    Returns:
        Decoded JSON value

    Raises:
        json.JSONDecodeError: If no candidate decodes
    """
    cleaned = clean_json_response(response)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        first_error = e

    match = _FENCE_PATTERN.search(response)
    if match:
        try:
            return json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            pass

    for opener, closer in (('{', '}'), ('[', ']')):
        start, end = cleaned.find(opener), cleaned.rfind(closer)
        if 0 <= start < end:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                continue

    raise first_error
