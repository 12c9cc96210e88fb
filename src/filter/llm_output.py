"""LLM output parsing utilities.

Extracts and validates JSON objects from free-form model output. Models
routinely wrap JSON in Markdown fences, add prose around it or leave
trailing commas; all three are tolerated here.
"""

import json
import re
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from src.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_CODE_BLOCK = re.compile(r"```(?:json)?\s*([\[\{].*?[\]\}])\s*```", re.DOTALL)
_TRAILING_COMMA = re.compile(r",\s*([\]\}])")


def _loads(candidate: str, expect_array: bool) -> dict | list | None:
    for text in (candidate, _TRAILING_COMMA.sub(r"\1", candidate)):
        try:
            result = json.loads(text)
        except json.JSONDecodeError:
            continue
        if expect_array and isinstance(result, list):
            return result
        if not expect_array and isinstance(result, dict):
            return result
    return None


def extract_json(text: str, expect_array: bool = False) -> dict | list | None:
    """Extract JSON from LLM response text.

    Handles common LLM output patterns:
    1. Direct JSON (try first)
    2. Markdown code blocks (```json ... ```)
    3. Raw JSON with surrounding text (greedy match)

    Each candidate is retried with trailing commas removed.

    Args:
        text: LLM response text
        expect_array: If True, expect JSON array; if False, expect object

    Returns:
        Parsed JSON dict/list, or None if extraction fails

    Examples:
        >>> extract_json('{"key": "value"}')
        {'key': 'value'}
        >>> extract_json('```json\\n{"a": [1, 2,],}\\n```')
        {'a': [1, 2]}
    """
    if not text:
        return None

    text = text.strip()

    result = _loads(text, expect_array)
    if result is not None:
        return result

    match = _CODE_BLOCK.search(text)
    if match:
        result = _loads(match.group(1), expect_array)
        if result is not None:
            return result

    pattern = r"\[.*\]" if expect_array else r"\{.*\}"
    match = re.search(pattern, text, re.DOTALL)
    if match:
        return _loads(match.group(), expect_array)

    return None


def validate_with_schema(
    data: dict | list | None,
    schema_class: type[T],
) -> T | None:
    """Validate parsed JSON against a Pydantic schema.

    Returns:
        Validated model instance, or None if validation fails
    """
    if data is None:
        return None

    try:
        return schema_class.model_validate(data)
    except ValidationError as e:
        logger.warning(
            "Schema validation failed",
            schema=schema_class.__name__,
            errors=str(e),
        )
        return None


def parse_llm_json(text: str, schema_class: type[T]) -> T | None:
    """extract_json + validate_with_schema in one step."""
    return validate_with_schema(extract_json(text), schema_class)
