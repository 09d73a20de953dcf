"""Provider clients: single-attempt adapters plus the gateway that runs them."""

from plinth.plugins.clients.base import REQUEST_ID_HEADER, ProviderClient
from plinth.plugins.clients.gateway import ProviderGateway
from plinth.plugins.clients.generation import (
    ChatMessage,
    GenerationClient,
    GenerationRequest,
    GenerationResponse,
    TokenUsage,
)
from plinth.plugins.clients.search import (
    SearchClient,
    SearchRequest,
    SearchResponse,
    SearchResult,
)

__all__ = [
    "REQUEST_ID_HEADER",
    "ChatMessage",
    "GenerationClient",
    "GenerationRequest",
    "GenerationResponse",
    "ProviderClient",
    "ProviderGateway",
    "SearchClient",
    "SearchRequest",
    "SearchResponse",
    "SearchResult",
    "TokenUsage",
]
