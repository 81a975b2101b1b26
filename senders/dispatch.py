"""
Outbound Dispatcher

Subscribes to AgentResponse and SubagentCompletedMessage and hands each one
to the sender registered for its platform. Subagent completions are turned
into a short text notification first.

A failed send is retried ``max_retries`` times with ``retry_delay`` seconds
between attempts, then logged and dropped. Nothing a sender does can stop
the dispatcher.
"""

import asyncio
import logging

from bus import MessageBus, Subscription
from messages import AgentResponse, SubagentCompletedMessage
from senders import Sender
from subagents import Subagent, SubagentState

logger = logging.getLogger(__name__)

RESULT_PREVIEW_CHARS = 1500


def format_subagent_notification(subagent: Subagent) -> str:
    """Human-readable text for a finished subagent."""
    label = f"Background task '{subagent.name}'"
    if subagent.state is SubagentState.COMPLETED:
        result = subagent.result or ""
        if len(result) > RESULT_PREVIEW_CHARS:
            result = result[:RESULT_PREVIEW_CHARS] + "\n... (truncated)"
        return f"{label} completed.\n{result}".rstrip()
    if subagent.state is SubagentState.CANCELLED:
        return f"{label} was cancelled."
    return f"{label} failed: {subagent.error or subagent.status_message or 'unknown error'}"


class OutboundDispatcher:
    """Routes replies from the bus to platform senders."""

    def __init__(
        self,
        bus: MessageBus,
        senders: dict[str, Sender] = None,
        max_retries: int = 2,
        retry_delay: float = 1.0,
    ):
        self.bus = bus
        self.senders: dict[str, Sender] = dict(senders or {})
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._subscriptions: list[Subscription] = []
        self._tasks: list[asyncio.Task] = []

    def register(self, sender: Sender, platform: str = None):
        self.senders[platform or sender.name] = sender

    async def start(self):
        responses = self.bus.subscribe(AgentResponse)
        completions = self.bus.subscribe(SubagentCompletedMessage)
        self._subscriptions = [responses, completions]
        self._tasks = [
            asyncio.create_task(self._consume(responses)),
            asyncio.create_task(self._consume(completions)),
        ]
        logger.info("Outbound dispatcher started for: %s", ", ".join(sorted(self.senders)) or "(no senders)")

    async def stop(self, drain_timeout: float = 5.0):
        """Stop delivering.

        After the bus is closed, replies already queued are still delivered
        (up to ``drain_timeout`` seconds). Otherwise queued replies are dropped.
        """
        if self._tasks and self.bus.closed:
            _, pending = await asyncio.wait(self._tasks, timeout=drain_timeout)
            if pending:
                logger.warning("Dropping undelivered replies after %.0fs", drain_timeout)
        for subscription in self._subscriptions:
            subscription.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._subscriptions = []

    async def _consume(self, subscription: Subscription):
        async for message in subscription:
            await self.deliver(message)

    async def deliver(self, message: AgentResponse | SubagentCompletedMessage) -> dict:
        """Send one bus message. Returns the sender's final result."""
        if isinstance(message, SubagentCompletedMessage):
            content = format_subagent_notification(message.subagent)
        else:
            content = message.content

        sender = self.senders.get(message.platform)
        if sender is None:
            logger.warning("No sender for platform '%s'; dropping reply to %s", message.platform, message.user_id)
            return {"error": f"No sender for platform '{message.platform}'"}

        result: dict = {}
        for attempt in range(self.max_retries + 1):
            try:
                result = await sender.send(message.user_id, content)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result = {"error": f"{type(e).__name__}: {e}"}
            if not result.get("error"):
                return result
            if attempt < self.max_retries:
                logger.info(
                    "Send to %s:%s failed (attempt %d), retrying: %s",
                    message.platform, message.user_id, attempt + 1, result["error"],
                )
                await asyncio.sleep(self.retry_delay)

        logger.error(
            "Giving up on %s:%s after %d attempt(s): %s",
            message.platform, message.user_id, self.max_retries + 1, result.get("error"),
        )
        return result
