"""Shared request validation helpers for settlement routers."""

from __future__ import annotations

import json
from typing import Any

from task_settlement_service.core.exceptions import ServiceError


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def parse_optional_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse a JSON body that may be empty."""
    if raw_body.strip() == b"":
        return {}
    return parse_json_body(raw_body)


def extract_reason(data: dict[str, Any]) -> str | None:
    """Extract the optional free-text reason of a status change."""
    reason = data.get("reason")
    if reason is None:
        return None
    if not isinstance(reason, str):
        raise ServiceError(
            "INVALID_PAYLOAD",
            "Field 'reason' must be a string",
            400,
            {},
        )
    return reason or None


def extract_bearer_token(authorization: str | None, *, required: bool) -> str | None:
    """Extract the bearer token from the Authorization header."""
    if authorization is None:
        if required:
            raise ServiceError(
                "UNAUTHORIZED",
                "Missing Authorization header",
                401,
                {},
            )
        return None

    if not authorization.startswith("Bearer "):
        raise ServiceError(
            "UNAUTHORIZED",
            "Authorization header must use Bearer scheme",
            401,
            {},
        )

    token = authorization[len("Bearer ") :]
    if not token:
        raise ServiceError(
            "UNAUTHORIZED",
            "Bearer token must not be empty",
            401,
            {},
        )

    return token


def require_token(authorization: str | None) -> str:
    """Extract a mandatory bearer token."""
    token = extract_bearer_token(authorization, required=True)
    if token is None:
        msg = "Bearer token missing after required extraction"
        raise RuntimeError(msg)
    return token


def parse_int_param(raw: str | None, field_name: str, *, minimum: int) -> int | None:
    """Parse an optional integer query parameter with a lower bound."""
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ServiceError(
            "INVALID_PAYLOAD", f"{field_name} must be an integer", 400, {}
        ) from exc
    if value < minimum:
        raise ServiceError("INVALID_PAYLOAD", f"{field_name} must be >= {minimum}", 400, {})
    return value
