"""
JSON extraction from model responses.

The model sometimes writes prose before its JSON answer. The first
top-level {...} block is located by brace matching (ignoring braces inside
strings) and parsed.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class ModelResponseError(Exception):
    """Model output could not be parsed or is missing required fields."""


@dataclass
class JsonParseResult:
    """Success/failure result of parse_model_json."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def unwrap(self) -> Dict[str, Any]:
        """Return data or raise ModelResponseError."""
        if not self.success or self.data is None:
            raise ModelResponseError(self.error or "Unparseable model response")
        return self.data


def extract_json_block(text: str) -> Optional[str]:
    """Return the first balanced top-level {...} block, or None."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False

        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue

            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]

        # Unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    return None


def parse_model_json(text: Optional[str]) -> JsonParseResult:
    """Extract and parse the JSON object in a model response."""
    if not text or not text.strip():
        return JsonParseResult(success=False, error="Empty model response")

    block = extract_json_block(text)
    if block is None:
        return JsonParseResult(success=False, error="No JSON object found in model response")

    try:
        data = json.loads(block)
    except json.JSONDecodeError as e:
        logger.debug(f"JSON decode failed: {e}")
        return JsonParseResult(success=False, error=f"Invalid JSON: {e}")

    if not isinstance(data, dict):
        return JsonParseResult(success=False, error="Model JSON is not an object")

    return JsonParseResult(success=True, data=data)


def require_fields(data: Dict[str, Any], fields: Iterable[str]) -> None:
    missing = [name for name in fields if name not in data or data[name] is None]
    if missing:
        raise ModelResponseError(f"Model response missing required fields: {', '.join(missing)}")
