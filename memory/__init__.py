"""
Conversation Memory for CoreBot

Per-user conversation history, append-only from the agent's point of view.

A conversation is identified by (platform, user_id) mapped to a conversation
id through a partition policy (one conversation per user per day by default).

Usage:
    from memory import StoredMessage
    from memory.store import FileMemoryStore

    store = FileMemoryStore("~/.corebot/memory")
    await store.save_message("telegram", "42", StoredMessage(role="user", content="hi"))
    history = await store.get_history("telegram", "42", limit=50)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

ROLES = ("user", "assistant", "tool")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ToolCallInfo:
    """A tool call as remembered in conversation history."""
    tool_name: str
    parameters: dict = field(default_factory=dict)
    call_id: str | None = None

    def to_dict(self) -> dict:
        return {"tool_name": self.tool_name, "parameters": self.parameters, "call_id": self.call_id}

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCallInfo":
        return cls(
            tool_name=data["tool_name"],
            parameters=data.get("parameters") or {},
            call_id=data.get("call_id"),
        )


@dataclass
class StoredMessage:
    """One turn of a conversation."""
    role: str
    content: str
    timestamp: datetime = field(default_factory=_now)
    tool_calls: list[ToolCallInfo] | None = None
    tool_name: str | None = None
    result: str | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Invalid role '{self.role}'. Expected one of {ROLES}")

    def to_dict(self) -> dict:
        data = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_name is not None:
            data["tool_name"] = self.tool_name
        if self.result is not None:
            data["result"] = self.result
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StoredMessage":
        tool_calls = data.get("tool_calls")
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else _now(),
            tool_calls=[ToolCallInfo.from_dict(tc) for tc in tool_calls] if tool_calls else None,
            tool_name=data.get("tool_name"),
            result=data.get("result"),
        )


@dataclass
class Conversation:
    """All stored turns of one conversation."""
    conversation_id: str
    platform: str
    user_id: str
    created_at: datetime = field(default_factory=_now)
    messages: list[StoredMessage] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "platform": self.platform,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Conversation":
        return cls(
            conversation_id=data["conversation_id"],
            platform=data["platform"],
            user_id=data["user_id"],
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _now(),
            messages=[StoredMessage.from_dict(m) for m in data.get("messages", [])],
        )


@runtime_checkable
class MemoryStore(Protocol):
    """What the agent needs from conversation storage.

    Implementations must be safe under concurrent calls and must never
    rewrite or drop stored turns.
    """

    async def save_message(self, platform: str, user_id: str, message: StoredMessage) -> None:
        ...

    async def get_history(self, platform: str, user_id: str, limit: int = 50) -> list[StoredMessage]:
        ...

    async def get_or_create_conversation_id(self, platform: str, user_id: str) -> str:
        ...


__all__ = ["StoredMessage", "ToolCallInfo", "Conversation", "MemoryStore", "ROLES"]
