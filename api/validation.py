"""
api/validation.py -- Schema validation behind the sanitization pipeline.

Three layers, each usable on its own:

  validate(data, model)                     -> ValidationResult
      Never raises for shape problems. Every failure becomes one FieldError
      (dotted path + message); a failed password-strength check contributes
      one FieldError per failed rule.

  sanitize_and_validate(data, model, rules) -> model instance
      Runs core.sanitize.sanitize() first, then validate(), and raises
      ValidationFailed with the aggregated message on failure.

  validated_body(model, rules) / validated_query(model, rules)
      FastAPI dependency factories that read the request body (invalid JSON
      is treated as {}) or query string and run sanitize_and_validate().

Route handlers receive only sanitized, validated models.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar

from fastapi import Request
from pydantic import BaseModel, ValidationError

from auth.errors import FieldError, ValidationFailed
from core.sanitize import ABSENT, DEFAULT_RULES, SanitizationRules, sanitize

M = TypeVar("M", bound=BaseModel)


@dataclass
class ValidationResult(Generic[M]):
    payload: Optional[M] = None
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.payload is not None and not self.errors


def _format_path(loc: tuple) -> str:
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path = f"{path}.{part}" if path else str(part)
    return path


def _message(error: dict) -> str:
    if error["type"] == "missing":
        return "Field required"
    msg = error["msg"]
    # pydantic prefixes messages of ValueErrors raised in validators.
    if msg.startswith("Value error, "):
        return msg[len("Value error, ") :]
    return msg


def field_errors(exc: ValidationError) -> list[FieldError]:
    """Flatten a pydantic ValidationError into FieldErrors, in pydantic's order."""
    errors: list[FieldError] = []
    for error in exc.errors():
        path = _format_path(error["loc"])
        if error["type"] == "password_strength":
            for failure in error.get("ctx", {}).get("failures", []):
                errors.append(FieldError(path, failure))
            continue
        errors.append(FieldError(path, _message(error)))
    return errors


def validate(data: Any, model: type[M]) -> ValidationResult[M]:
    """Validate data against model without raising for shape problems."""
    if not isinstance(data, dict):
        return ValidationResult(errors=[FieldError("", "Expected a JSON object")])
    try:
        return ValidationResult(payload=model.model_validate(data))
    except ValidationError as exc:
        return ValidationResult(errors=field_errors(exc))


def sanitize_and_validate(data: Any, model: type[M], rules: SanitizationRules = DEFAULT_RULES) -> M:
    """Sanitize data, validate it, and return the model or raise ValidationFailed."""
    cleaned = sanitize(data, rules).value
    if cleaned is ABSENT:
        # Every key was an injection attempt; the validator reports what is missing.
        cleaned = {}
    result = validate(cleaned, model)
    if not result.ok:
        raise ValidationFailed(result.errors)
    return result.payload


def validated_body(model: type[M], rules: SanitizationRules = DEFAULT_RULES) -> Callable[..., Any]:
    """Return a dependency that yields a sanitized, validated request body.

    Use as a FastAPI dependency:
        @router.post("/auth/login")
        def login(request: Request, body: LoginRequest = Depends(validated_body(LoginRequest, CREDENTIAL_RULES))): ...
    """

    async def dependency(request: Request) -> M:
        raw = await request.body()
        try:
            data = json.loads(raw) if raw else {}
        except ValueError:
            data = {}
        return sanitize_and_validate(data, model, rules)

    dependency.__name__ = f"validated_{model.__name__}"
    return dependency


def validated_query(model: type[M], rules: SanitizationRules = DEFAULT_RULES) -> Callable[..., Any]:
    """Return a dependency that validates the query string against model."""

    def dependency(request: Request) -> M:
        return sanitize_and_validate(dict(request.query_params), model, rules)

    dependency.__name__ = f"validated_query_{model.__name__}"
    return dependency
