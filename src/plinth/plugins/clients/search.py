# src/plinth/plugins/clients/search.py
"""Web search client (Tavily-compatible search endpoint)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from plinth.contracts import ConfigurationError, UnexpectedError
from plinth.core.config import SearchSettings
from plinth.plugins.clients.base import ProviderClient

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SearchRequest:
    query: str
    max_results: int | None = None
    include_answer: bool = False
    include_raw_content: bool = False
    include_images: bool = False
    search_depth: Literal["basic", "advanced"] | None = None

    def __post_init__(self) -> None:
        if not self.query.strip():
            raise ValueError("SearchRequest.query must be non-empty")


@dataclass(frozen=True)
class SearchResult:
    url: str
    title: str | None = None
    content: str | None = None
    raw_content: str | None = None
    score: float | None = None
    published_date: str | None = None


@dataclass(frozen=True)
class SearchResponse:
    query: str
    results: tuple[SearchResult, ...]
    request_id: str
    latency_ms: float
    answer: str | None = None


# Provider response shape, validated at the boundary


class _RawResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str
    title: str | None = None
    content: str | None = None
    raw_content: str | None = None
    score: float | None = None
    published_date: str | None = None


class _RawResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query: str | None = None
    results: list[_RawResult] = []
    answer: str | None = None


class SearchClient(ProviderClient):
    """Single-attempt web search client."""

    provider = "search"

    def __init__(
        self,
        settings: SearchSettings,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout=settings.timeout_seconds or timeout, http_client=http_client)
        self._settings = settings

    async def search(self, request: SearchRequest) -> SearchResponse:
        """Perform one search call.

        Raises:
            ConfigurationError: No API key configured (never retried)
            ProviderCallError: Classified transport/HTTP failure
            UnexpectedError: Success response that does not match the result shape
        """
        api_key = self._settings.resolve_api_key()
        if not api_key:
            raise ConfigurationError(
                f"Missing API key: set {self._settings.api_key_env} or search.api_key",
                provider=self.provider,
            )

        body = {
            "api_key": api_key,
            "query": request.query,
            "max_results": request.max_results or self._settings.max_results,
            "include_answer": request.include_answer,
            "include_raw_content": request.include_raw_content,
            "include_images": request.include_images,
            "search_depth": request.search_depth or self._settings.search_depth,
        }
        data, request_id, latency_ms = await self._post_json(self._settings.endpoint, body)

        try:
            parsed = _RawResponse.model_validate(data)
        except ValidationError as e:
            raise UnexpectedError(
                "Search response did not match the expected shape",
                provider=self.provider,
                provider_message=str(e),
                request_id=request_id,
            ) from e

        results = tuple(SearchResult(**raw.model_dump()) for raw in parsed.results)
        logger.debug("Search returned results", result_count=len(results))
        return SearchResponse(
            query=parsed.query or request.query,
            results=results,
            request_id=request_id,
            latency_ms=latency_ms,
            answer=parsed.answer,
        )
