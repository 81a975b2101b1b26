"""
Senders - Output channels for the bot.

Senders handle outbound delivery for one platform. Each sender implements a
simple protocol:
- name: str - Platform identifier, matches AgentResponse.platform
- capabilities: list[str] - What this sender supports
- send(to, content, **kwargs) - Deliver a message

The OutboundDispatcher (senders/dispatch.py) routes bus replies to the
sender registered for their platform.

Usage:
    from senders.telegram import TelegramSender
    dispatcher = OutboundDispatcher(bus, {"telegram": TelegramSender(config.platform("telegram"))})
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class Sender(Protocol):
    """Protocol for platform senders.

    Implement this to add a new output platform.
    """

    name: str
    capabilities: list[str]

    async def send(self, to: str, content: str, **kwargs) -> dict:
        """Send a message.

        Args:
            to: Platform user id (chat id, phone number, ...)
            content: Message text
            **kwargs: Platform-specific options

        Returns:
            {"sent": True, ...} on success
            {"error": "..."} on failure
        """
        ...


def split_message(content: str, limit: int) -> list[str]:
    """Split ``content`` into chunks of at most ``limit`` chars, preferring newlines."""
    if len(content) <= limit:
        return [content]
    chunks = []
    rest = content
    while len(rest) > limit:
        cut = rest.rfind("\n", 0, limit)
        if cut <= 0:
            cut = limit
        chunks.append(rest[:cut])
        rest = rest[cut:].lstrip("\n")
    if rest:
        chunks.append(rest)
    return chunks
