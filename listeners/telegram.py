"""
Telegram Listener - Long-polls the Bot API for incoming text messages.

Each text message becomes a UserMessage with platform "telegram" and the
chat id as user_id, so replies go back to the same chat.

Config (platforms.telegram):
    bot_token: Bot API token (required)
    api_base: defaults to https://api.telegram.org
    poll_timeout: long-poll seconds per request (default 30)
    retry_delay_seconds: pause after a failed poll (default 5)
    allowed_user_ids: optional list; other chats are ignored
"""

import asyncio
import logging

import httpx

from bus import BusClosedError, MessageBus
from config import PlatformConfig
from messages import UserMessage

logger = logging.getLogger(__name__)


def parse_update(update: dict) -> UserMessage | None:
    """Turn one getUpdates entry into a UserMessage, or None if it has no text."""
    message = update.get("message") or update.get("edited_message")
    if not message or not message.get("text"):
        return None
    chat = message.get("chat") or {}
    if "id" not in chat:
        return None
    return UserMessage(platform="telegram", user_id=str(chat["id"]), content=message["text"])


class TelegramListener:
    """getUpdates loop with offset tracking."""

    def __init__(self, bus: MessageBus, config: PlatformConfig, client: httpx.AsyncClient = None):
        self.bus = bus
        self.token = config.get("bot_token")
        self.api_base = config.get("api_base", "https://api.telegram.org").rstrip("/")
        self.poll_timeout = int(config.get("poll_timeout", 30))
        self.retry_delay = float(config.get("retry_delay_seconds", 5))
        allowed = config.get("allowed_user_ids") or []
        self.allowed_user_ids = {str(u) for u in allowed}
        self.offset: int | None = None
        self._client = client

    @property
    def url(self) -> str:
        return f"{self.api_base}/bot{self.token}/getUpdates"

    async def poll_once(self, client: httpx.AsyncClient) -> int:
        """Fetch one batch of updates and publish them. Returns how many were published."""
        params = {"timeout": self.poll_timeout, "allowed_updates": '["message","edited_message"]'}
        if self.offset is not None:
            params["offset"] = self.offset

        response = await client.get(self.url, params=params, timeout=self.poll_timeout + 10)
        response.raise_for_status()
        data = response.json()
        if not data.get("ok"):
            raise RuntimeError(f"Telegram API error: {data.get('description', 'unknown')}")

        published = 0
        for update in data.get("result", []):
            # Acknowledge every update, even ones we skip
            self.offset = max(self.offset or 0, update["update_id"] + 1)
            message = parse_update(update)
            if message is None:
                continue
            if self.allowed_user_ids and message.user_id not in self.allowed_user_ids:
                logger.info("Ignoring Telegram chat %s (not in allowed_user_ids)", message.user_id)
                continue
            await self.bus.publish(message)
            published += 1
        return published

    async def run(self):
        if not self.token:
            logger.warning("Telegram listener disabled: bot_token not set")
            return

        logger.info("Telegram listener started")
        client = self._client or httpx.AsyncClient()
        try:
            while True:
                try:
                    count = await self.poll_once(client)
                    if count:
                        logger.debug("Telegram: published %d message(s)", count)
                except BusClosedError:
                    logger.info("Telegram listener stopping, bus closed")
                    return
                except (httpx.HTTPError, RuntimeError, ValueError) as e:
                    logger.error("Telegram poll failed: %s; retrying in %.0fs", e, self.retry_delay)
                    await asyncio.sleep(self.retry_delay)
        finally:
            if self._client is None:
                await client.aclose()


async def run_telegram_listener(bus: MessageBus, config: PlatformConfig):
    await TelegramListener(bus, config).run()
