"""
Agent Orchestration Loop

Turns each inbound UserMessage into zero or more tool executions and exactly
one AgentResponse.

Per message:
    1. Save the user turn to memory
    2. Resolve the conversation id
    3. Load the recent history window
    4. Build the LLM request: system prompt, history (minus the turn just
       saved), then the live user content
    5. Offer tool definitions unless tool calling is disabled
    6. Iterate LLM <-> tools, at most ``max_tool_iterations`` rounds, then make
       one last LLM call and take whatever it says
    7. Publish the AgentResponse
    8. Save the assistant turn, then each tool result in execution order

Every message is processed in its own task, so a slow conversation never holds
up the next inbound message. Failures are isolated per tool call and per
message; only bus errors escape a processing task.

Events (see utils/events.py):
    - message_start: {"message_id", "platform", "user_id"}
    - llm_call_end: {"iteration", "input_tokens", "output_tokens", "error"}
    - tool_start: {"name", "input"}
    - tool_end: {"name", "result", "success", "duration_ms"}
    - agent_response: {"message_id", "platform", "user_id", "content"}
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from bus import BusClosedError, MessageBus, Subscription
from config import DEFAULT_SYSTEM_PROMPT, AgentConfig
from llm import LLMMessage, LLMProvider, LLMRequest, LLMResponse, ToolDefinition
from memory import MemoryStore, StoredMessage, ToolCallInfo
from messages import (
    AgentResponse,
    ToolCall,
    ToolExecutionRequest,
    ToolResult,
    UserMessage,
    current_message,
)
from tools import ToolRegistry
from utils.events import EventEmitter

logger = logging.getLogger(__name__)

LLM_FAILURE_REPLY = "Sorry, I ran into a problem while working on that. Please try again in a moment."


class Agent(EventEmitter):
    """Bus-driven LLM/tool loop."""

    def __init__(
        self,
        bus: MessageBus,
        memory: MemoryStore,
        llm: LLMProvider,
        tools: ToolRegistry,
        config: AgentConfig = None,
        publish_timeout: float | None = None,
    ):
        self.bus = bus
        self.memory = memory
        self.llm = llm
        self.tools = tools
        self.config = config or AgentConfig()
        self.publish_timeout = publish_timeout

        self._running = False
        self._subscriptions: list[Subscription] = []
        self._consumer_tasks: list[asyncio.Task] = []
        self._processing: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._processing)

    async def start(self):
        """Subscribe to user messages and tool execution requests."""
        if self._running:
            return
        self._running = True

        user_messages = self.bus.subscribe(UserMessage)
        tool_requests = self.bus.subscribe(ToolExecutionRequest)
        self._subscriptions = [user_messages, tool_requests]
        self._consumer_tasks = [
            asyncio.create_task(self._consume(user_messages, self.process_message)),
            asyncio.create_task(self._consume(tool_requests, self.handle_tool_request)),
        ]
        logger.info(
            "[Agent] Started (history=%d, max_tool_iterations=%d, tools=%s)",
            self.config.history_limit,
            self.config.max_tool_iterations,
            "on" if self.config.enable_tool_calling else "off",
        )

    async def stop(self):
        """Stop accepting messages and wait for in-flight processing."""
        if not self._running:
            return
        self._running = False

        for subscription in self._subscriptions:
            subscription.close()
        await asyncio.gather(*self._consumer_tasks, return_exceptions=True)
        self._consumer_tasks = []
        self._subscriptions = []

        if self._processing:
            logger.info("[Agent] Waiting for %d in-flight message(s)", len(self._processing))
            _, pending = await asyncio.wait(
                set(self._processing), timeout=self.config.shutdown_timeout_seconds
            )
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("[Agent] Cancelled %d message(s) still running at shutdown", len(pending))
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("[Agent] Stopped")

    async def _consume(self, subscription: Subscription, handler: Callable[[Any], Awaitable[None]]):
        try:
            async for message in subscription:
                task = asyncio.create_task(self._run_isolated(handler, message))
                self._processing.add(task)
                task.add_done_callback(self._processing.discard)
        finally:
            subscription.close()

    async def _run_isolated(self, handler: Callable[[Any], Awaitable[None]], message: Any):
        token = current_message.set(message if isinstance(message, UserMessage) else None)
        try:
            await handler(message)
        except BusClosedError as e:
            logger.warning("[msg %s] Dropped reply, bus closed: %s", message.message_id[:8], e)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[msg %s] Processing failed", message.message_id[:8])
        finally:
            current_message.reset(token)

    # -------------------------------------------------------------------------
    # Per-message processing
    # -------------------------------------------------------------------------

    async def process_message(self, message: UserMessage) -> AgentResponse:
        """Run the full request/response cycle for one user message."""
        tag = message.message_id[:8]
        started = time.time()
        self.emit("message_start", {
            "message_id": message.message_id,
            "platform": message.platform,
            "user_id": message.user_id,
        })
        logger.info("[msg %s] From %s:%s (%d chars)", tag, message.platform, message.user_id, len(message.content))

        await self.memory.save_message(
            message.platform,
            message.user_id,
            StoredMessage(role="user", content=message.content, timestamp=message.timestamp),
        )
        conversation_id = await self.memory.get_or_create_conversation_id(message.platform, message.user_id)
        history = await self.memory.get_history(message.platform, message.user_id, self.config.history_limit)
        logger.debug("[msg %s] Conversation %s, %d turns of history", tag, conversation_id, len(history))

        request = self.build_request(message, history)
        executed: list[tuple[ToolCall, ToolResult]] = []
        final = await self._run_tool_loop(request, executed, tag)

        response = AgentResponse(
            platform=message.platform,
            user_id=message.user_id,
            content=self._reply_text(final, tag),
            tool_calls=final.tool_calls if not final.error else None,
        )
        await self.bus.publish(response, timeout=self.publish_timeout)
        self.emit("agent_response", {
            "message_id": message.message_id,
            "platform": message.platform,
            "user_id": message.user_id,
            "content": response.content,
        })

        await self.memory.save_message(
            message.platform,
            message.user_id,
            StoredMessage(
                role="assistant",
                content=response.content,
                tool_calls=[
                    ToolCallInfo(call.tool_name, call.parameters, call.call_id) for call, _ in executed
                ] or None,
            ),
        )
        for call, result in executed:
            await self.memory.save_message(
                message.platform,
                message.user_id,
                StoredMessage(role="tool", content=result.result, tool_name=result.tool_name, result=result.result),
            )

        logger.info(
            "[msg %s] Replied in %dms (%d tool call(s))", tag, int((time.time() - started) * 1000), len(executed)
        )
        return response

    def build_request(self, message: UserMessage, history: list[StoredMessage]) -> LLMRequest:
        """System prompt, prior turns, then the live user content."""
        messages = [LLMMessage(role="system", content=self.config.system_prompt or DEFAULT_SYSTEM_PROMPT)]
        # The newest stored turn is the message being answered
        for stored in history[:-1]:
            messages.append(self._history_turn(stored))
        messages.append(LLMMessage(role="user", content=message.content))

        tools = None
        if self.config.enable_tool_calling:
            tools = [ToolDefinition.from_schema(schema) for schema in self.tools.definitions()] or None
        return LLMRequest(messages=messages, tools=tools)

    @staticmethod
    def _history_turn(stored: StoredMessage) -> LLMMessage:
        if stored.role == "tool":
            # Stored results are not linked to live call ids; replay them as context
            return LLMMessage(
                role="assistant",
                content=f"[{stored.tool_name or 'tool'} result] {stored.result or stored.content}",
            )
        return LLMMessage(role=stored.role, content=stored.content)

    async def _run_tool_loop(
        self,
        request: LLMRequest,
        executed: list[tuple[ToolCall, ToolResult]],
        tag: str,
    ) -> LLMResponse:
        for iteration in range(1, self.config.max_tool_iterations + 1):
            response = await self._call_llm(request, iteration, tag)
            if response.error:
                return response
            if not response.has_tool_calls:
                return response

            logger.debug(
                "[msg %s] Iteration %d requested %s", tag, iteration, [c.tool_name for c in response.tool_calls]
            )
            for index, call in enumerate(response.tool_calls):
                result = await self._execute_tool_call(call, tag)
                # Text said alongside the calls belongs to the first turn only
                content = response.content if index == 0 else ""
                request.messages.append(LLMMessage(role="assistant", content=content, tool_calls=[call]))
                request.messages.append(LLMMessage(
                    role="tool",
                    content=result.result,
                    tool_call_id=call.call_id,
                    name=call.tool_name,
                ))
                executed.append((call, result))

        logger.warning(
            "[msg %s] Reached %d tool iterations, asking for a final answer",
            tag, self.config.max_tool_iterations,
        )
        return await self._call_llm(request, self.config.max_tool_iterations + 1, tag)

    async def _call_llm(self, request: LLMRequest, iteration: int, tag: str) -> LLMResponse:
        try:
            response = await self.llm.complete(request)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[msg %s] LLM provider raised", tag)
            response = LLMResponse(error=f"{type(e).__name__}: {e}")

        usage = response.usage
        self.emit("llm_call_end", {
            "iteration": iteration,
            "input_tokens": usage.input_tokens if usage else 0,
            "output_tokens": usage.output_tokens if usage else 0,
            "error": response.error,
        })
        return response

    async def _execute_tool_call(self, call: ToolCall, tag: str) -> ToolResult:
        self.emit("tool_start", {"name": call.tool_name, "input": call.parameters})
        start = time.time()
        try:
            outcome = await self.tools.execute(call.tool_name, call.parameters)
            result = ToolResult(tool_name=call.tool_name, success=outcome.success, result=outcome.text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[msg %s] Tool %s raised", tag, call.tool_name)
            result = ToolResult(tool_name=call.tool_name, success=False, result=f"Error: {e}")

        duration_ms = int((time.time() - start) * 1000)
        self.emit("tool_end", {
            "name": call.tool_name,
            "result": result.result,
            "success": result.success,
            "duration_ms": duration_ms,
        })
        if not result.success:
            logger.info("[msg %s] Tool %s failed: %.200s", tag, call.tool_name, result.result)
        return result

    @staticmethod
    def _reply_text(response: LLMResponse, tag: str) -> str:
        if response.error:
            logger.error("[msg %s] LLM error: %s", tag, response.error)
            return LLM_FAILURE_REPLY
        return response.content

    # -------------------------------------------------------------------------
    # Synthetic tool requests
    # -------------------------------------------------------------------------

    async def handle_tool_request(self, request: ToolExecutionRequest) -> ToolResult:
        """Run a tool outside of any LLM turn and publish the outcome."""
        tag = request.message_id[:8]
        logger.info("[msg %s] %s requested tool %s", tag, request.source, request.tool_name)

        self.emit("tool_start", {"name": request.tool_name, "input": request.parameters})
        outcome = await self.tools.execute(request.tool_name, request.parameters)
        self.emit("tool_end", {
            "name": request.tool_name,
            "result": outcome.text,
            "success": outcome.success,
            "duration_ms": outcome.duration_ms,
        })

        result = ToolResult(
            tool_name=request.tool_name,
            success=outcome.success,
            result=outcome.text,
            request_id=request.message_id,
        )
        await self.bus.publish(result, timeout=self.publish_timeout)

        if request.platform and request.user_id:
            if outcome.success:
                text = f"Scheduled tool '{request.tool_name}' finished:\n{outcome.result}"
            else:
                text = f"Scheduled tool '{request.tool_name}' failed: {outcome.error}"
            await self.bus.publish(
                AgentResponse(platform=request.platform, user_id=request.user_id, content=text),
                timeout=self.publish_timeout,
            )
        return result
