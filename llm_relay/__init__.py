"""Resilient client-side gateway for remote LLM APIs."""

from llm_relay.core.config import Settings
from llm_relay.gateway.client import GatewayClient
from llm_relay.gateway.errors import (
    CancellationError,
    ClientError,
    StreamParseError,
    TransportError,
    ValidationError,
)
from llm_relay.gateway.middleware import Middleware
from llm_relay.gateway.types import (
    AudioTranscriptionRequest,
    ChatMessage,
    ChatRequest,
    ClientResponse,
    EmbeddingRequest,
    ImageRequest,
    ModelPricing,
    StreamEvent,
)

__version__ = "0.1.0"

__all__ = [
    "AudioTranscriptionRequest",
    "CancellationError",
    "ChatMessage",
    "ChatRequest",
    "ClientError",
    "ClientResponse",
    "EmbeddingRequest",
    "GatewayClient",
    "ImageRequest",
    "Middleware",
    "ModelPricing",
    "Settings",
    "StreamEvent",
    "StreamParseError",
    "TransportError",
    "ValidationError",
]
