"""Helpers to load and validate the content request JSON schema."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from jsonschema import Draft202012Validator, FormatChecker
from jsonschema.exceptions import ValidationError
from pydantic import ValidationError as ModelValidationError

from .errors import InputValidationError
from .models import ContentRequest


def default_schema_path() -> Path:
    """Return the path to the packaged content request schema."""
    return Path(__file__).resolve().parent / "schemas" / "content_request.json"


@lru_cache(maxsize=4)
def load_schema(path: Optional[Path | str] = None) -> Dict[str, Any]:
    """Load and cache the request schema as a dictionary."""
    schema_path = Path(path) if path else default_schema_path()
    return json.loads(schema_path.read_text(encoding="utf-8"))


def format_errors(errors: Iterable[ValidationError]) -> str:
    """Turn jsonschema errors into a concise human-readable string."""
    parts = []
    for err in errors:
        location = ".".join(str(piece) for piece in err.absolute_path) or "<root>"
        parts.append(f"{location}: {err.message}")
    return "; ".join(parts)


def validate_request_payload(
    payload: Dict[str, Any], schema: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Validate a raw request payload against the request schema.

    Raises InputValidationError (a ValueError) with a readable message.
    """
    if not isinstance(payload, dict):
        raise InputValidationError("Request payload must be a JSON object.")
    schema_dict = schema or load_schema()
    validator = Draft202012Validator(schema_dict, format_checker=FormatChecker())
    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.absolute_path))
    if errors:
        message = format_errors(errors)
        raise InputValidationError(
            f"Schema validation failed: {message}", details=[e.message for e in errors]
        )
    return payload


def parse_request(payload: ContentRequest | Dict[str, Any]) -> ContentRequest:
    """Schema-check a dict and build a ContentRequest; models pass through."""
    if isinstance(payload, ContentRequest):
        return payload
    validate_request_payload(payload)
    try:
        return ContentRequest.model_validate(payload)
    except ModelValidationError as exc:
        details = [err["msg"] for err in exc.errors()]
        raise InputValidationError(
            f"Invalid content request: {'; '.join(details)}", details=details
        ) from exc
