"""
Bus Message Types

Every value routed through the message bus is one of the dataclasses below.
Each concrete type carries a class-level ``topic`` tag; the bus keys its
queues by that tag and never looks at payload content.

Routed types:
    - UserMessage: inbound text from a chat platform
    - AgentResponse: outbound reply addressed to a platform+user
    - ToolResult: outcome of a tool execution
    - ToolExecutionRequest: synthetic "run this tool" event (scheduler)
    - SubagentCompletedMessage: a background task finished

Embedded (not routed):
    - ToolCall: a tool request inside an LLM response or conversation turn
"""

from __future__ import annotations

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from subagents import Subagent


class MessageTopic(str, Enum):
    """Routing tags, one per routed message type."""
    USER_MESSAGE = "user_message"
    AGENT_RESPONSE = "agent_response"
    TOOL_RESULT = "tool_result"
    TOOL_EXECUTION_REQUEST = "tool_execution_request"
    SUBAGENT_COMPLETED = "subagent_completed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Embedded Types
# =============================================================================

@dataclass
class ToolCall:
    """A tool invocation requested by the LLM."""
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict:
        return {
            "tool_name": self.tool_name,
            "parameters": self.parameters,
            "call_id": self.call_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        return cls(
            tool_name=data["tool_name"],
            parameters=data.get("parameters") or {},
            call_id=data.get("call_id") or f"call_{uuid.uuid4().hex[:12]}",
        )


# =============================================================================
# Routed Types
# =============================================================================

@dataclass(frozen=True)
class UserMessage:
    """Inbound text from a chat platform. Immutable once created."""
    topic: ClassVar[MessageTopic] = MessageTopic.USER_MESSAGE

    platform: str
    user_id: str
    content: str
    message_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "timestamp": self.timestamp.isoformat(),
            "platform": self.platform,
            "user_id": self.user_id,
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserMessage":
        return cls(
            platform=data["platform"],
            user_id=data["user_id"],
            content=data.get("content", ""),
            message_id=data.get("message_id") or new_id(),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else utc_now(),
        )


@dataclass
class AgentResponse:
    """Outbound reply, always addressed to a specific platform+user pair."""
    topic: ClassVar[MessageTopic] = MessageTopic.AGENT_RESPONSE

    platform: str
    user_id: str
    content: str
    tool_calls: list[ToolCall] | None = None
    message_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class ToolResult:
    """Outcome of one tool execution. ``result`` is the payload or an error text."""
    topic: ClassVar[MessageTopic] = MessageTopic.TOOL_RESULT

    tool_name: str
    success: bool
    result: str
    request_id: str | None = None
    message_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class ToolExecutionRequest:
    """Request to run a tool outside of an LLM turn."""
    topic: ClassVar[MessageTopic] = MessageTopic.TOOL_EXECUTION_REQUEST

    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    platform: str | None = None
    user_id: str | None = None
    source: str = "scheduler"
    message_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class SubagentCompletedMessage:
    """A background task reached a terminal state. Carries the full snapshot."""
    topic: ClassVar[MessageTopic] = MessageTopic.SUBAGENT_COMPLETED

    subagent: "Subagent"
    platform: str
    user_id: str
    message_id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utc_now)


ROUTED_TYPES = (
    UserMessage,
    AgentResponse,
    ToolResult,
    ToolExecutionRequest,
    SubagentCompletedMessage,
)


# The user message currently being processed by the agent, if any.
# Tools that act on behalf of "the current user" read this.
current_message: ContextVar[UserMessage | None] = ContextVar("current_message", default=None)
