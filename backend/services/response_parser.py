"""Structured parsing of model output into machine state."""
import json
import logging
import re
from typing import Any, Dict

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"```(?:json)?", re.IGNORECASE)


class InvalidResponseError(Exception):
    """Raised when model output is not a JSON object."""

    def __init__(self, message: str, raw_response: str):
        self.raw_response = raw_response
        super().__init__(message)


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fences some models wrap JSON in."""
    return _CODE_FENCE.sub("", text).strip()


def parse_structured_response(text: str) -> Dict[str, Any]:
    """
    Parse the raw model text into a structured object.

    Args:
        text: Raw response returned by the inference provider

    Returns:
        The parsed JSON object

    Raises:
        InvalidResponseError: If the text is not a JSON object
    """
    cleaned = strip_code_fences(text or "")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse LLM response as JSON: {e}")
        raise InvalidResponseError("The LLM did not return valid JSON", text) from e

    if not isinstance(parsed, dict):
        logger.error(f"LLM response is JSON but not an object: {type(parsed).__name__}")
        raise InvalidResponseError("The LLM response must be a JSON object", text)

    # Lone surrogate escapes parse fine but cannot be hashed as UTF-8
    try:
        text.encode("utf-8")
        serialize_machine_state(parsed).encode("utf-8")
    except UnicodeEncodeError as e:
        logger.error(f"LLM response contains text that cannot be encoded as UTF-8: {e}")
        raise InvalidResponseError("The LLM response contains invalid Unicode", text) from e

    return parsed


def serialize_machine_state(state: Dict[str, Any]) -> str:
    """Canonical JSON for a machine state: sorted keys, compact, UTF-8 kept."""
    return json.dumps(state, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
