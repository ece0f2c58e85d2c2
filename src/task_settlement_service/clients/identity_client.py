"""Async HTTP client for the Identity provider."""

from __future__ import annotations

from typing import Any

import httpx

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger


class IdentityClient:
    """
    Client for resolving bearer tokens into user identities.

    The settlement engine never inspects tokens itself. Every token is
    handed to the Identity provider, which answers with the user it
    belongs to.
    """

    def __init__(
        self,
        base_url: str,
        authenticate_path: str,
        timeout_seconds: int,
    ) -> None:
        self._base_url = base_url
        self._authenticate_path = authenticate_path
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
        )

    async def authenticate(self, token: str) -> dict[str, Any]:
        """
        Resolve a bearer token to the user it identifies.

        Returns:
            dict with keys: user_id (str), plus any profile fields the provider returns

        Raises:
            ServiceError: UNAUTHORIZED (401) if the provider rejects the token
            ServiceError: IDENTITY_SERVICE_UNAVAILABLE (502) on connection/timeout/unexpected errors
        """
        logger = get_logger(__name__)

        try:
            response = await self._client.post(
                self._authenticate_path,
                json={"token": token},
            )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning(
                "Identity service connection failed",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Cannot connect to Identity service",
                status_code=502,
                details={},
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "Identity service HTTP error",
                extra={"error": str(exc), "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity service request failed",
                status_code=502,
                details={},
            ) from exc

        if response.status_code in (401, 403):
            raise ServiceError(
                error="UNAUTHORIZED",
                message="Authentication token was rejected",
                status_code=401,
                details={},
            )

        if response.status_code != 200:
            logger.warning(
                "Identity service unexpected status",
                extra={"status_code": response.status_code, "base_url": self._base_url},
            )
            raise ServiceError(
                error="IDENTITY_SERVICE_UNAVAILABLE",
                message="Identity service returned unexpected status",
                status_code=502,
                details={},
            )

        result: dict[str, Any] = response.json()
        if not isinstance(result.get("user_id"), str) or not result["user_id"]:
            raise ServiceError(
                error="UNAUTHORIZED",
                message="Authentication token does not identify a user",
                status_code=401,
                details={},
            )

        return result

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
