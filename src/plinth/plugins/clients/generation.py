# src/plinth/plugins/clients/generation.py
"""Text generation client (OpenAI-compatible chat completions)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
import structlog

from plinth.contracts import ConfigurationError, UnexpectedError
from plinth.core.config import GenerationSettings
from plinth.plugins.clients.base import ProviderClient

logger = structlog.get_logger(__name__)

JSON_MODE_INSTRUCTION = (
    "You are a strict JSON API. Respond with valid JSON only, with no explanation, "
    "comments, or surrounding text. Do not use code fences."
)


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["system", "user", "assistant"]
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class GenerationRequest:
    """Normalized generation request.

    Unset model/temperature/max_tokens fall back to GenerationSettings.
    json_mode prepends a strict-JSON system instruction and asks the
    provider for a JSON object response.
    """

    messages: tuple[ChatMessage, ...]
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    json_mode: bool = False

    def __post_init__(self) -> None:
        if not self.messages:
            raise ValueError("GenerationRequest needs at least one message")


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class GenerationResponse:
    """Normalized generation response.

    Attributes:
        text: Generated text (rich content parts are joined)
        model: Model reported by the provider (may differ from requested)
        usage: Token counts, None if the provider did not report them
        request_id: Request id sent with the call
        latency_ms: Round-trip time of the successful attempt
        finish_reason: Provider finish reason, if any
    """

    text: str
    model: str
    request_id: str
    latency_ms: float
    usage: TokenUsage | None = None
    finish_reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part["text"] for part in content if isinstance(part, dict) and isinstance(part.get("text"), str))
    return ""


class GenerationClient(ProviderClient):
    """Single-attempt chat completion client.

    Example:
        client = GenerationClient(settings.generation)
        response = await executor.execute(
            lambda: client.generate(GenerationRequest(messages=(ChatMessage("user", "Hi"),))),
            provider=client.provider,
        )
    """

    provider = "generation"

    def __init__(
        self,
        settings: GenerationSettings,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(timeout=settings.timeout_seconds or timeout, http_client=http_client)
        self._settings = settings

    @property
    def endpoint(self) -> str:
        return f"{self._settings.base_url.rstrip('/')}/chat/completions"

    def _build_body(self, request: GenerationRequest) -> dict[str, Any]:
        messages = [message.to_dict() for message in request.messages]
        if request.json_mode:
            messages.insert(0, {"role": "system", "content": JSON_MODE_INSTRUCTION})

        body: dict[str, Any] = {
            "model": request.model or self._settings.model,
            "messages": messages,
            "temperature": self._settings.temperature if request.temperature is None else request.temperature,
        }
        max_tokens = request.max_tokens or self._settings.max_tokens
        if max_tokens is not None:
            body["max_tokens"] = max_tokens
        if request.json_mode:
            body["response_format"] = {"type": "json_object"}
        return body

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Perform one chat completion call.

        Raises:
            ConfigurationError: No API key configured (never retried)
            ProviderCallError: Classified transport/HTTP failure
            UnexpectedError: Success response without a usable choice
        """
        api_key = self._settings.resolve_api_key()
        if not api_key:
            raise ConfigurationError(
                f"Missing API key: set {self._settings.api_key_env} or generation.api_key",
                provider=self.provider,
            )

        data, request_id, latency_ms = await self._post_json(
            self.endpoint,
            self._build_body(request),
            headers={"Authorization": f"Bearer {api_key}"},
        )

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices or not isinstance(choices[0], dict):
            raise UnexpectedError(
                "Generation response contained no choices",
                provider=self.provider,
                request_id=request_id,
            )
        first = choices[0]
        message = first.get("message") or {}
        text = _content_text(message.get("content") if isinstance(message, dict) else None)

        usage: TokenUsage | None = None
        raw_usage = data.get("usage")
        if isinstance(raw_usage, dict):
            usage = TokenUsage(
                input_tokens=int(raw_usage.get("prompt_tokens") or 0),
                output_tokens=int(raw_usage.get("completion_tokens") or 0),
            )

        return GenerationResponse(
            text=text,
            model=str(data.get("model") or request.model or self._settings.model),
            request_id=request_id,
            latency_ms=latency_ms,
            usage=usage,
            finish_reason=first.get("finish_reason"),
            raw=data,
        )
