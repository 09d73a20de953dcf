# src/plinth/plugins/clients/gateway.py
"""ProviderGateway: the process-owned entry point for outbound calls.

Constructed once at bootstrap from PlinthSettings and passed by
reference to step implementations. Owns the executor, the admission
registry and one client per provider, so nothing about provider access
lives in module-level state.
"""

from __future__ import annotations

from typing import Self

import httpx

from plinth.core.admission import AdmissionRegistry
from plinth.core.config import PlinthSettings
from plinth.engine.executor import CallStats, ResilientCallExecutor
from plinth.plugins.clients.generation import (
    GenerationClient,
    GenerationRequest,
    GenerationResponse,
)
from plinth.plugins.clients.search import SearchClient, SearchRequest, SearchResponse


class ProviderGateway:
    """Routes provider calls through the resilient executor.

    Example:
        async with ProviderGateway.from_settings(settings) as gateway:
            stats = CallStats()
            response = await gateway.generate(request, stats=stats)
            orchestrator.record_telemetry(run_id, "analysis", stats)
    """

    def __init__(
        self,
        settings: PlinthSettings,
        *,
        executor: ResilientCallExecutor | None = None,
        registry: AdmissionRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._executor = executor or ResilientCallExecutor.from_settings(settings.retry)
        self._registry = registry or AdmissionRegistry.from_settings(settings)
        self._generation = GenerationClient(
            settings.generation,
            timeout=settings.retry.timeout_seconds,
            http_client=http_client,
        )
        self._search = SearchClient(
            settings.search,
            timeout=settings.retry.timeout_seconds,
            http_client=http_client,
        )

    @classmethod
    def from_settings(cls, settings: PlinthSettings) -> Self:
        return cls(settings)

    @property
    def executor(self) -> ResilientCallExecutor:
        return self._executor

    @property
    def registry(self) -> AdmissionRegistry:
        return self._registry

    async def generate(
        self,
        request: GenerationRequest,
        *,
        stats: CallStats | None = None,
        request_id: str | None = None,
    ) -> GenerationResponse:
        """Generate text with retry, timeout and admission control."""
        provider = self._settings.generation
        response = await self._executor.execute(
            lambda: self._generation.generate(request),
            timeout=provider.timeout_seconds,
            max_retries=provider.max_retries,
            provider=GenerationClient.provider,
            limiter=self._registry.get_limiter(GenerationClient.provider),
            request_id=request_id,
            stats=stats,
        )
        if stats is not None:
            stats.record_usage(response.usage)
        return response

    async def search(
        self,
        request: SearchRequest,
        *,
        stats: CallStats | None = None,
        request_id: str | None = None,
    ) -> SearchResponse:
        """Search the web with retry, timeout and admission control."""
        provider = self._settings.search
        return await self._executor.execute(
            lambda: self._search.search(request),
            timeout=provider.timeout_seconds,
            max_retries=provider.max_retries,
            provider=SearchClient.provider,
            limiter=self._registry.get_limiter(SearchClient.provider),
            request_id=request_id,
            stats=stats,
        )

    async def aclose(self) -> None:
        await self._generation.aclose()
        await self._search.aclose()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
