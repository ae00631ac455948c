"""Parsing of JSON-mode model output into typed models."""

import json
import logging
from dataclasses import dataclass
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


@dataclass
class ParseResult(Generic[T]):
    """Either a parsed model (ok=True) or the reason parsing failed."""

    ok: bool
    value: T | None = None
    error: str | None = None


def _strip_fences(content: str) -> str:
    """Remove markdown code fences some models wrap around JSON."""
    content = content.strip()
    if content.startswith("```"):
        content = content.split("```")[1]
        if content.startswith("json"):
            content = content[4:]
    return content.strip()


def parse_model_output(content: str, model: type[T]) -> ParseResult[T]:
    """Parse raw model text as a JSON object and validate it against `model`."""
    try:
        data = json.loads(_strip_fences(content or ""))
    except json.JSONDecodeError as e:
        return ParseResult(ok=False, error=f"invalid JSON: {e}")

    if not isinstance(data, dict):
        return ParseResult(ok=False, error=f"expected JSON object, got {type(data).__name__}")

    try:
        return ParseResult(ok=True, value=model.model_validate(data))
    except ValidationError as e:
        return ParseResult(ok=False, error=f"schema mismatch: {e.error_count()} errors")
