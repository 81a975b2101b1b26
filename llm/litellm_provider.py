"""
LiteLLM-backed provider.

Translates LLMRequest into the OpenAI chat-completions shape LiteLLM speaks
and maps the reply (text, tool calls, usage) back into an LLMResponse.
The configured provider name selects the LiteLLM model route, e.g.
provider "openrouter" + model "anthropic/claude-3.5-sonnet" becomes
"openrouter/anthropic/claude-3.5-sonnet".
"""

import json
import logging
import time
import uuid

import litellm

from llm import LLMMessage, LLMRequest, LLMResponse, LLMUsage, ToolDefinition, call_with_retries
from messages import ToolCall

logger = logging.getLogger(__name__)

litellm.suppress_debug_info = True

# Providers whose models LiteLLM recognises without a route prefix
_UNPREFIXED = {"openai", "litellm"}


def _parse_json_safe(json_str) -> dict:
    """Parse tool arguments, returning an empty dict on bad JSON."""
    if isinstance(json_str, dict):
        return json_str
    try:
        parsed = json.loads(json_str) if json_str else {}
    except (json.JSONDecodeError, TypeError):
        logger.warning("Model returned unparseable tool arguments: %.200s", json_str)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def route_model(provider: str, model: str) -> str:
    provider = (provider or "").lower()
    if provider in _UNPREFIXED:
        return model
    prefix = f"{provider}/"
    return model if model.startswith(prefix) else prefix + model


class LiteLLMProvider:
    """LLMProvider for every vendor LiteLLM supports."""

    def __init__(self, config):
        self.config = config
        self.name = config.provider
        self.model = route_model(config.provider, config.model)

    # -------------------------------------------------------------------------
    # Conversion
    # -------------------------------------------------------------------------

    def _convert_tools(self, tools: list[ToolDefinition] | None) -> list[dict] | None:
        if not tools:
            return None
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in tools
        ]

    def _convert_messages(self, messages: list[LLMMessage]) -> list[dict]:
        result = []
        for msg in messages:
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                })
            elif msg.role == "assistant" and msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.call_id,
                            "type": "function",
                            "function": {
                                "name": tc.tool_name,
                                "arguments": json.dumps(tc.parameters),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                result.append({"role": msg.role, "content": msg.content})
        return result

    def _convert_response(self, response) -> LLMResponse:
        choice = response.choices[0] if response.choices else None
        if choice is None:
            return LLMResponse(error="Model returned no choices")

        message = choice.message
        tool_calls = []
        for tc in getattr(message, "tool_calls", None) or []:
            tool_calls.append(ToolCall(
                tool_name=tc.function.name,
                parameters=_parse_json_safe(tc.function.arguments),
                call_id=tc.id or f"call_{uuid.uuid4().hex[:12]}",
            ))

        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls or None,
            usage=LLMUsage(
                input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            ),
            finish_reason=choice.finish_reason,
        )

    # -------------------------------------------------------------------------
    # LLMProvider
    # -------------------------------------------------------------------------

    async def complete(self, request: LLMRequest) -> LLMResponse:
        call_kwargs = {
            "model": request.model and route_model(self.config.provider, request.model) or self.model,
            "messages": self._convert_messages(request.messages),
            "max_tokens": request.max_tokens or self.config.max_tokens,
            "temperature": self.config.temperature if request.temperature is None else request.temperature,
            "timeout": self.config.timeout_seconds,
        }
        tools = self._convert_tools(request.tools)
        if tools:
            call_kwargs["tools"] = tools
        if self.config.api_key:
            call_kwargs["api_key"] = self.config.api_key
        if self.config.base_url:
            call_kwargs["api_base"] = self.config.base_url

        start_time = time.time()
        try:
            response = await call_with_retries(
                lambda: litellm.acompletion(**call_kwargs),
                max_retries=self.config.max_retries,
                label=self.name,
            )
            result = self._convert_response(response)
        except Exception as e:
            logger.error("LLM call to %s failed: %s", call_kwargs["model"], e)
            return LLMResponse(error=f"{type(e).__name__}: {e}")

        logger.debug(
            "LLM %s finished in %dms (%s in / %s out tokens, %d tool calls)",
            call_kwargs["model"],
            int((time.time() - start_time) * 1000),
            result.usage.input_tokens,
            result.usage.output_tokens,
            len(result.tool_calls or []),
        )
        return result
