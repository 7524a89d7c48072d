"""Shapes of the responses handed to us by the LLM client.

The client itself lives outside Folio. Whatever it returns is adapted into
an ``LLMResponse`` before ``AgentContextService.record_generation`` sees it.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _add_optional(left: int | None, right: int | None) -> int | None:
    if left is None and right is None:
        return None
    return (left or 0) + (right or 0)


class TokenUsage(BaseModel):
    """Token accounting for one or more generations."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    cached_tokens: int | None = Field(default=None, ge=0)
    reasoning_tokens: int | None = Field(default=None, ge=0)
    duration_ms: int | None = Field(default=None, ge=0)
    provider_details: dict[str, Any] = Field(default_factory=dict)

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        if not isinstance(other, TokenUsage):
            return NotImplemented
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
            cached_tokens=_add_optional(self.cached_tokens, other.cached_tokens),
            reasoning_tokens=_add_optional(self.reasoning_tokens, other.reasoning_tokens),
            duration_ms=_add_optional(self.duration_ms, other.duration_ms),
        )


class ResponseMessage(BaseModel):
    """The assistant message carried by a response."""

    role: str = "assistant"
    content: str | None = None
    name: str | None = None


class LLMResponse(BaseModel):
    """A completed LLM generation as reported by the client."""

    id: str | None = Field(default=None, description="Provider-side response id")
    model: str | None = None
    finish_reason: str | None = None
    message: ResponseMessage | None = None
    usage: TokenUsage | None = None
    raw_request: dict[str, Any] | None = None
    raw_response: dict[str, Any] | None = None
