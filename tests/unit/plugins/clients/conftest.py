"""Fixtures for provider client tests."""

from __future__ import annotations

import pytest

from plinth.core.config import GenerationSettings, SearchSettings

GENERATION_URL = "https://llm.test/v1/chat/completions"
SEARCH_URL = "https://search.test/search"


@pytest.fixture
def generation_settings() -> GenerationSettings:
    return GenerationSettings(api_key="sk-test", base_url="https://llm.test/v1", model="test-model")


@pytest.fixture
def search_settings() -> SearchSettings:
    return SearchSettings(api_key="tv-test", endpoint=SEARCH_URL, max_results=5)


def chat_completion(text: str = "hello", *, model: str = "test-model") -> dict:
    return {
        "id": "chatcmpl-1",
        "model": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
    }
