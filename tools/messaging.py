"""
Messaging Tool

send_message lets the model (or a scheduled task) post a message to any
platform+user. The reply goes out through the same outbound path as normal
agent responses.
"""

import logging

from messages import AgentResponse, current_message
from tools import ToolContext, tool, tool_error

logger = logging.getLogger(__name__)


@tool
async def send_message(message: str, context: ToolContext, platform: str = None, user_id: str = None) -> dict:
    """Send a message to a user on a chat platform.

    Defaults to the user who sent the message being answered.

    Args:
        message: Text to send
        platform: Platform name (e.g. "telegram", "whatsapp", "cli")
        user_id: Recipient id on that platform
    """
    bus = context.services.get("bus")
    if bus is None:
        return tool_error("Messaging is not available")

    origin = current_message.get()
    platform = platform or (origin.platform if origin else None)
    user_id = user_id or (origin.user_id if origin else None)
    if not platform or not user_id:
        return tool_error("platform and user_id are required outside of a conversation")
    if not message.strip():
        return tool_error("message cannot be empty")

    await bus.publish(AgentResponse(platform=platform, user_id=user_id, content=message))
    logger.info("send_message queued for %s:%s", platform, user_id)
    return {"sent": True, "platform": platform, "user_id": user_id}
