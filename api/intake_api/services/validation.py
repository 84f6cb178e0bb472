from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from intake_api.schemas.applications import ApplyToPostRequest
from intake_api.services.errors import FieldViolation, IntakeValidationError


def decode_application_body(body: bytes) -> Any:
    """Decode a raw request body. An empty body decodes to None."""
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except ValueError as exc:
        raise IntakeValidationError([FieldViolation(field="body", message="Invalid JSON")]) from exc


def validate_application(payload: Any) -> ApplyToPostRequest:
    """Parse an untyped request body into a typed application draft.

    Pure: performs no I/O. Every violated constraint is collected, not just the first.
    """
    try:
        return ApplyToPostRequest.model_validate(payload)
    except ValidationError as exc:
        raise IntakeValidationError(_violations_from(exc)) from exc


def _violations_from(exc: ValidationError) -> list[FieldViolation]:
    violations: list[FieldViolation] = []
    for error in exc.errors(include_url=False):
        field = ".".join(str(part) for part in error["loc"]) or "body"
        violations.append(FieldViolation(field=field, message=_clean_message(error["msg"])))
    return violations


def _clean_message(message: str) -> str:
    # pydantic prefixes custom validator messages with "Value error, "
    prefix = "Value error, "
    if message.startswith(prefix):
        return message[len(prefix) :]
    return message
