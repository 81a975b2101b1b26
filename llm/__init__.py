"""
LLM Provider Boundary

Vendor-neutral request/response types plus the LLMProvider protocol the agent
talks to. Concrete clients live next to this module:

- llm.litellm_provider.LiteLLMProvider: OpenAI, OpenRouter, DeepSeek, Gemini,
  Groq and anything else LiteLLM routes
- llm.anthropic_provider.AnthropicProvider: native Anthropic Messages API

Providers never raise for API problems. A failed call comes back as an
LLMResponse whose ``error`` is set; callers treat a non-empty error as
authoritative and ignore any partial content.

Usage:
    from llm import create_provider, LLMRequest, LLMMessage

    provider = create_provider(config.llm)
    response = await provider.complete(LLMRequest(messages=[LLMMessage("user", "hi")]))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Protocol, TypeVar, runtime_checkable

from messages import ToolCall

if TYPE_CHECKING:
    from config import LLMConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NoLLMProviderError(Exception):
    """Raised when the configured LLM provider cannot be constructed."""
    pass


# =============================================================================
# Request / Response Types
# =============================================================================

@dataclass
class LLMMessage:
    """One conversation turn sent to the model."""
    role: str  # system, user, assistant, tool
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None


@dataclass
class ToolDefinition:
    """A tool offered to the model."""
    name: str
    description: str
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})

    @classmethod
    def from_schema(cls, schema: dict) -> "ToolDefinition":
        return cls(
            name=schema["name"],
            description=schema.get("description", ""),
            parameters=schema.get("input_schema") or {"type": "object", "properties": {}},
        )


@dataclass
class LLMRequest:
    messages: list[LLMMessage]
    tools: list[ToolDefinition] | None = None
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LLMResponse:
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    error: str | None = None
    usage: LLMUsage | None = None
    finish_reason: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@runtime_checkable
class LLMProvider(Protocol):
    """Turns a conversation plus tool definitions into a completion."""

    name: str

    async def complete(self, request: LLMRequest) -> LLMResponse:
        ...


# =============================================================================
# Retry Helpers
# =============================================================================

def is_transient_error(exc: Exception) -> bool:
    """Check if an exception is a transient LLM API error worth retrying.

    Covers 5xx responses, 429 rate limits, timeouts and connection-level
    failures that are likely to resolve on their own.
    """
    exc_type = type(exc).__name__

    if "ServiceUnavailable" in exc_type or "InternalServerError" in exc_type:
        return True
    if "RateLimit" in exc_type:
        return True
    if "Timeout" in exc_type:
        return True
    if "APIConnectionError" in exc_type or "ConnectionError" in exc_type:
        return True

    # Fall back to inspecting the string representation for status codes
    exc_str = str(exc).lower()
    if "503" in exc_str or "service unavailable" in exc_str:
        return True
    if "429" in exc_str or "rate limit" in exc_str:
        return True
    if "connection refused" in exc_str or "connection reset" in exc_str:
        return True

    return False


async def call_with_retries(
    call: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 2.0,
    label: str = "LLM",
) -> T:
    """Await ``call()``, retrying transient failures with exponential backoff."""
    for attempt in range(max_retries + 1):
        try:
            return await call()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt < max_retries and is_transient_error(e):
                delay = base_delay * (2 ** attempt)
                logger.warning(
                    "Transient %s error (attempt %d/%d), retrying in %.1fs: %s",
                    label, attempt + 1, max_retries + 1, delay, e,
                )
                await asyncio.sleep(delay)
            else:
                raise
    raise RuntimeError("unreachable")


# =============================================================================
# Factory
# =============================================================================

def create_provider(config: "LLMConfig") -> LLMProvider:
    """Build the provider named by ``config.provider``."""
    provider = (config.provider or "").lower()
    if not provider:
        raise NoLLMProviderError("llm.provider is not configured")

    if provider == "anthropic":
        from llm.anthropic_provider import AnthropicProvider
        return AnthropicProvider(config)

    from llm.litellm_provider import LiteLLMProvider
    return LiteLLMProvider(config)


__all__ = [
    "LLMMessage",
    "ToolDefinition",
    "LLMRequest",
    "LLMResponse",
    "LLMUsage",
    "LLMProvider",
    "NoLLMProviderError",
    "create_provider",
    "call_with_retries",
    "is_transient_error",
]
