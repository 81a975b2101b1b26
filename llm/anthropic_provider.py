"""
Anthropic Messages API provider.

The system prompt travels outside the message list, tool calls are
``tool_use`` content blocks, and tool results are ``tool_result`` blocks on a
user turn. Consecutive turns with the same role are merged because the API
expects user and assistant turns to alternate.
"""

import logging

import anthropic

from llm import LLMMessage, LLMRequest, LLMResponse, LLMUsage, ToolDefinition, call_with_retries
from messages import ToolCall

logger = logging.getLogger(__name__)


class AnthropicProvider:
    """LLMProvider using anthropic.AsyncAnthropic."""

    name = "anthropic"

    def __init__(self, config, client: anthropic.AsyncAnthropic = None):
        self.config = config
        self.model = config.model
        kwargs = {"timeout": config.timeout_seconds, "max_retries": 0}
        if config.api_key:
            kwargs["api_key"] = config.api_key
        if config.base_url:
            kwargs["base_url"] = config.base_url
        self.client = client or anthropic.AsyncAnthropic(**kwargs)

    def _convert_tools(self, tools: list[ToolDefinition] | None) -> list[dict] | None:
        if not tools:
            return None
        return [
            {"name": t.name, "description": t.description, "input_schema": t.parameters}
            for t in tools
        ]

    def _convert_messages(self, messages: list[LLMMessage]) -> tuple[str | None, list[dict]]:
        system_parts = []
        converted: list[dict] = []

        for msg in messages:
            if msg.role == "system":
                system_parts.append(msg.content)
                continue

            if msg.role == "tool":
                role = "user"
                blocks = [{
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.content,
                }]
            elif msg.role == "assistant":
                role = "assistant"
                blocks = [{"type": "text", "text": msg.content}] if msg.content else []
                for tc in msg.tool_calls or []:
                    blocks.append({
                        "type": "tool_use",
                        "id": tc.call_id,
                        "name": tc.tool_name,
                        "input": tc.parameters,
                    })
            else:
                role = "user"
                blocks = [{"type": "text", "text": msg.content}]

            if not blocks:
                continue
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})

        system = "\n\n".join(p for p in system_parts if p) or None
        return system, converted

    def _convert_response(self, response) -> LLMResponse:
        text_parts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(
                    tool_name=block.name,
                    parameters=dict(block.input or {}),
                    call_id=block.id,
                ))
        return LLMResponse(
            content="".join(text_parts),
            tool_calls=tool_calls or None,
            usage=LLMUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
            finish_reason=response.stop_reason,
        )

    async def complete(self, request: LLMRequest) -> LLMResponse:
        system, messages = self._convert_messages(request.messages)
        call_kwargs = {
            "model": request.model or self.model,
            "max_tokens": request.max_tokens or self.config.max_tokens,
            "temperature": self.config.temperature if request.temperature is None else request.temperature,
            "messages": messages,
        }
        if system:
            call_kwargs["system"] = system
        tools = self._convert_tools(request.tools)
        if tools:
            call_kwargs["tools"] = tools

        try:
            response = await call_with_retries(
                lambda: self.client.messages.create(**call_kwargs),
                max_retries=self.config.max_retries,
                label="anthropic",
            )
            return self._convert_response(response)
        except Exception as e:
            logger.error("Anthropic call failed: %s", e)
            return LLMResponse(error=f"{type(e).__name__}: {e}")
