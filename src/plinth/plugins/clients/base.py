# src/plinth/plugins/clients/base.py
"""Base class for provider clients.

A provider client performs exactly one attempt per call. Retry, timeout
and admission belong to ResilientCallExecutor; the client's job is to
turn every failure into a classified ProviderCallError at the point of
origin:

- httpx timeout            -> CallTimeoutError
- other httpx transport    -> TransportError
- non-2xx status           -> error_for_status() (429, 5xx, 4xx, other)
- undecodable success body -> UnexpectedError
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Self

import httpx
import structlog

from plinth.contracts import (
    CallTimeoutError,
    TransportError,
    UnexpectedError,
    error_for_status,
)
from plinth.engine.executor import current_attempt

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# Provider error bodies can be large HTML pages
_MAX_ERROR_TEXT = 500


def _request_id() -> str:
    attempt = current_attempt()
    if attempt is not None:
        return attempt.request_id
    return uuid.uuid4().hex


class ProviderClient:
    """Shared httpx plumbing for provider clients.

    Subclasses set ``provider`` and build their request/response shapes on
    top of _post_json().

    The httpx.AsyncClient is either injected (and then owned by the caller)
    or created here and closed by aclose().
    """

    provider: str = "external"

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def _post_json(
        self,
        url: str,
        payload: dict[str, Any],
        *,
        headers: dict[str, str] | None = None,
    ) -> tuple[Any, str, float]:
        """POST JSON and return (decoded body, request id, latency ms).

        Raises:
            ProviderCallError: Classified failure (see module docstring)
        """
        request_id = _request_id()
        request_headers = {REQUEST_ID_HEADER: request_id}
        if headers:
            request_headers.update(headers)

        start = time.perf_counter()
        try:
            response = await self._client.post(url, json=payload, headers=request_headers, timeout=self._timeout)
        except httpx.TimeoutException as e:
            raise CallTimeoutError(
                f"{self.provider} request timed out",
                provider=self.provider,
                provider_message=str(e) or type(e).__name__,
                request_id=request_id,
            ) from e
        except httpx.TransportError as e:
            raise TransportError(
                f"Failed to reach {self.provider} provider",
                provider=self.provider,
                provider_message=str(e) or type(e).__name__,
                request_id=request_id,
            ) from e
        latency_ms = (time.perf_counter() - start) * 1000

        if not response.is_success:
            provider_message = self._error_message(response)
            raise error_for_status(
                response.status_code,
                f"{self.provider} returned HTTP {response.status_code}",
                provider=self.provider,
                provider_message=provider_message,
                request_id=request_id,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise UnexpectedError(
                f"{self.provider} returned a non-JSON response",
                provider=self.provider,
                status_code=response.status_code,
                provider_message=response.text[:_MAX_ERROR_TEXT],
                request_id=request_id,
            ) from e

        logger.debug(
            "Provider call succeeded",
            provider=self.provider,
            status_code=response.status_code,
            latency_ms=round(latency_ms, 1),
        )
        return body, request_id, latency_ms

    @staticmethod
    def _error_message(response: httpx.Response) -> str | None:
        """Best-effort message from an error body ({"error": {"message"}}, {"detail"} or text)."""
        try:
            body = response.json()
        except ValueError:
            text = response.text.strip()
            return text[:_MAX_ERROR_TEXT] or None

        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return error["message"]
            if isinstance(error, str):
                return error
            for key in ("detail", "message"):
                if isinstance(body.get(key), str):
                    return body[key]
        return str(body)[:_MAX_ERROR_TEXT]

    async def aclose(self) -> None:
        """Close the underlying httpx client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
