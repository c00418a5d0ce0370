"""Locate and validate the JSON object inside a vision model reply."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..errors import ExtractionError
from ..schemas import ExtractionResult

_DECODER = json.JSONDecoder()


def find_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the first well-formed JSON object embedded in ``text``.

    Models often wrap the object in prose or markdown fences, so every ``{``
    is tried as a starting point until one decodes to a dict.
    """
    start = text.find("{")
    while start != -1:
        try:
            value, _end = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def parse_extraction_reply(content: Optional[str]) -> ExtractionResult:
    """Turn raw reply text into a cleaned :class:`ExtractionResult`."""
    if not content or not content.strip():
        raise ExtractionError("No response from vision service")

    payload = find_json_object(content)
    if payload is None:
        raise ExtractionError("Could not parse JSON from response")

    try:
        return ExtractionResult.model_validate(payload)
    except ValidationError as exc:
        raise ExtractionError(f"Extraction payload failed validation: {exc}") from exc


__all__ = ["find_json_object", "parse_extraction_reply"]
