"""Core types and DTOs for the gateway pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, ClassVar, Literal, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from llm_relay.gateway.errors import ClientError, ValidationError


# ---------------------------------------------------------------------------
# Requests — tagged variants, validated at the pipeline boundary
# ---------------------------------------------------------------------------


class ChatMessage(BaseModel):
    """One message of a chat conversation."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str | list[dict[str, Any]]
    name: str | None = None


class BaseRequest(BaseModel):
    """Common behaviour of every request kind.

    Subclasses declare the HTTP method and endpoint path; ``payload()``
    renders the JSON body sent to the provider.
    """

    model_config = ConfigDict(extra="forbid")

    method: ClassVar[str] = "POST"
    path: ClassVar[str] = "/"

    kind: str
    model: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @property
    def streaming(self) -> bool:
        return False

    @property
    def cacheable(self) -> bool:
        return not self.streaming

    def with_default_model(self, default_model: str) -> BaseRequest:
        if self.model:
            return self
        return self.model_copy(update={"model": default_model})

    def payload(self) -> dict[str, Any] | None:
        body = self.model_dump(exclude={"kind", "extra"}, exclude_none=True)
        body.update(self.extra)
        return body


class ChatRequest(BaseRequest):
    path: ClassVar[str] = "/chat/completions"

    kind: Literal["chat"] = "chat"
    messages: list[ChatMessage] = Field(min_length=1)
    stream: bool = False
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    top_p: float | None = Field(default=None, ge=0, le=1)
    stop: str | list[str] | None = None

    @property
    def streaming(self) -> bool:
        return self.stream


class EmbeddingRequest(BaseRequest):
    path: ClassVar[str] = "/embeddings"

    kind: Literal["embedding"] = "embedding"
    input: str | list[str]

    @field_validator("input")
    @classmethod
    def _non_empty_input(cls, value: str | list[str]) -> str | list[str]:
        if not value:
            raise ValueError("input must not be empty")
        return value


class ImageRequest(BaseRequest):
    path: ClassVar[str] = "/images/generations"

    kind: Literal["image"] = "image"
    prompt: str = Field(min_length=1)
    n: int = Field(default=1, ge=1, le=10)
    size: str | None = Field(default=None, pattern=r"^\d+x\d+$")


class AudioTranscriptionRequest(BaseRequest):
    path: ClassVar[str] = "/audio/transcriptions"

    kind: Literal["audio"] = "audio"
    file: str = Field(min_length=1)  # URL or base64-encoded audio
    language: str | None = None


class ModelListRequest(BaseRequest):
    method: ClassVar[str] = "GET"
    path: ClassVar[str] = "/models"

    kind: Literal["models"] = "models"

    def with_default_model(self, default_model: str) -> BaseRequest:
        return self

    def payload(self) -> dict[str, Any] | None:
        return None


GatewayRequest = Annotated[
    Union[ChatRequest, EmbeddingRequest, ImageRequest, AudioTranscriptionRequest, ModelListRequest],
    Field(discriminator="kind"),
]

_REQUEST_ADAPTER: TypeAdapter = TypeAdapter(GatewayRequest)


def parse_request(request: BaseRequest | dict[str, Any]) -> BaseRequest:
    """Validate caller input into a typed request.

    Dicts are parsed by their ``kind`` tag; typed requests are re-validated
    so mutations made after construction are caught too.
    """
    if isinstance(request, BaseRequest):
        request = request.model_dump()
    if not isinstance(request, dict):
        raise ValidationError(f"Unsupported request type: {type(request).__name__}")
    try:
        return _REQUEST_ADAPTER.validate_python(request)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid {request.get('kind', 'unknown')} request",
            data=e.errors(include_url=False),
        ) from e


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, usage: dict[str, Any]) -> TokenUsage:
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = int(usage.get("total_tokens") or prompt + completion)
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


@dataclass
class ClientResponse:
    """Unified response DTO, the same shape for every request kind."""

    kind: str
    data: Any = None
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    cached: bool = False
    latency_ms: int = 0
    dispatch_id: str = ""

    @property
    def model(self) -> str:
        if isinstance(self.data, dict):
            return self.data.get("model", "") or ""
        return ""

    @property
    def usage(self) -> TokenUsage | None:
        if isinstance(self.data, dict) and isinstance(self.data.get("usage"), dict):
            return TokenUsage.from_dict(self.data["usage"])
        return None

    @property
    def choices(self) -> list[dict[str, Any]]:
        if isinstance(self.data, dict):
            return self.data.get("choices") or []
        return []

    @property
    def text(self) -> str:
        """Content of the first chat choice, empty for other kinds."""
        if not self.choices:
            return ""
        message = self.choices[0].get("message") or {}
        return message.get("content") or ""


@dataclass
class StreamEvent:
    """One decoded record of a streamed chat completion."""

    id: str = ""
    model_id: str = ""
    delta_content: str = ""
    finish_reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> StreamEvent:
        """Build an event from one decoded record.

        Missing fields default to empty. Fields present with the wrong shape
        raise ValueError so the decoder can skip the record.
        """
        choices = data.get("choices") or [{}]
        if not isinstance(choices, list) or not isinstance(choices[0], dict):
            raise ValueError("choices must be a list of objects")
        choice = choices[0]

        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise ValueError("delta must be an object")
        content = delta.get("content") or ""
        if not isinstance(content, str):
            raise ValueError("delta content must be a string")

        finish_reason = choice.get("finish_reason")
        return cls(
            id=str(data.get("id") or ""),
            model_id=str(data.get("model") or ""),
            delta_content=content,
            finish_reason=str(finish_reason) if finish_reason is not None else None,
            raw=data,
        )


@dataclass
class BatchResult:
    """Outcome of one batch slot: exactly one of response or error is set."""

    index: int
    response: ClientResponse | None = None
    error: ClientError | Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Pricing & cost
# ---------------------------------------------------------------------------


@dataclass
class ModelPricing:
    """Price strings as published by the provider, e.g. "$0.002/1K"."""

    prompt: str | None = None
    completion: str | None = None


@dataclass
class ModelInfo:
    id: str
    name: str = ""
    context_length: int = 0
    pricing: ModelPricing = field(default_factory=ModelPricing)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelInfo:
        pricing = data.get("pricing") or {}
        return cls(
            id=data["id"],
            name=data.get("name", "") or "",
            context_length=int(data.get("context_length") or 0),
            pricing=ModelPricing(
                prompt=pricing.get("prompt"),
                completion=pricing.get("completion"),
            ),
        )


@dataclass
class CostEstimate:
    prompt_cost: float = 0.0
    completion_cost: float = 0.0
    total_cost: float = 0.0
    currency: str = "USD"
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    def to_dict(self) -> dict:
        return {
            "prompt_cost": self.prompt_cost,
            "completion_cost": self.completion_cost,
            "total_cost": self.total_cost,
            "currency": self.currency,
            "token_usage": {
                "prompt_tokens": self.token_usage.prompt_tokens,
                "completion_tokens": self.token_usage.completion_tokens,
                "total_tokens": self.token_usage.total_tokens,
            },
        }
